#!/usr/bin/env python3
"""
KUBEDASH IDENTITY REGISTRY
--------------------------
The persisted, versioned record of every (namespace, name) ever given a
dashboard identity. This is the one piece of shared mutable state in the
system; every store implements compare-and-swap on the `generation`
counter so two reconcilers can never hand out the same numeric id.

On-disk format (YAML):

    generation: 4
    high_water: 2
    identities:
      internal/api: {uid: api-internal, id: 1}
      internal/worker: {uid: worker-internal, id: 2}

Author: KubeDash Team
Date: 2026-10-19
"""

import io
import os
import fcntl
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from kubedash.core.errors import AllocationError, RegistryConflict, GitLabError, GitLabConflict
from kubedash.core.models import DashboardIdentity

logger = logging.getLogger("kubedash.registry")


@dataclass
class IdentityRegistry:
    generation: int = 0
    high_water: int = 0
    identities: Dict[str, DashboardIdentity] = field(default_factory=dict)

    def copy(self) -> "IdentityRegistry":
        return IdentityRegistry(self.generation, self.high_water, dict(self.identities))

    def uid_owner(self, uid: str) -> Optional[str]:
        for key, ident in self.identities.items():
            if ident.uid == uid:
                return key
        return None

    def validate(self) -> "IdentityRegistry":
        """Rejects any registry that could lead to a colliding allocation."""
        seen_ids = {}
        seen_uids = {}
        for key, ident in self.identities.items():
            if ident.numeric_id < 1 or ident.numeric_id > self.high_water:
                raise AllocationError(
                    f"Registry entry {key} has id {ident.numeric_id} outside 1..{self.high_water}", key=key)
            if ident.numeric_id in seen_ids:
                raise AllocationError(
                    f"Registry id {ident.numeric_id} assigned to both {seen_ids[ident.numeric_id]} and {key}", key=key)
            if ident.uid in seen_uids:
                raise AllocationError(
                    f"Registry uid {ident.uid} assigned to both {seen_uids[ident.uid]} and {key}", key=key)
            seen_ids[ident.numeric_id] = key
            seen_uids[ident.uid] = key
        return self

    @classmethod
    def from_text(cls, text: str) -> "IdentityRegistry":
        try:
            data = YAML(typ="safe").load(text)
        except YAMLError as e:
            raise AllocationError(f"Registry is not valid YAML: {e}")
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise AllocationError("Registry must be a mapping")

        try:
            identities = {
                str(key): DashboardIdentity(uid=str(entry["uid"]), numeric_id=int(entry["id"]))
                for key, entry in (data.get("identities") or {}).items()
            }
            registry = cls(
                generation=int(data.get("generation", 0)),
                high_water=int(data.get("high_water", 0)),
                identities=identities,
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise AllocationError(f"Registry is malformed: {e}")
        return registry.validate()

    def to_text(self) -> str:
        yaml = YAML()
        yaml.default_flow_style = None
        doc: Dict[str, Any] = {
            "generation": self.generation,
            "high_water": self.high_water,
            "identities": {
                key: {"uid": ident.uid, "id": ident.numeric_id}
                for key, ident in sorted(self.identities.items(), key=lambda kv: kv[1].numeric_id)
            },
        }
        stream = io.StringIO()
        yaml.dump(doc, stream)
        return stream.getvalue()


@dataclass
class RegistrySnapshot:
    """A registry as read, plus the store-specific token needed to swap it."""
    registry: IdentityRegistry
    token: Optional[str] = None


class RegistryStore:
    """
    Persistence contract for the identity registry.

    `save` must fail with RegistryConflict when the stored generation is no
    longer the one in `expected`, and with AllocationError on any other
    read/write problem.
    """

    def load(self) -> RegistrySnapshot:
        raise NotImplementedError

    def save(self, registry: IdentityRegistry, expected: RegistrySnapshot) -> RegistrySnapshot:
        raise NotImplementedError


class MemoryRegistryStore(RegistryStore):
    """Process-local store. Used for dry runs (seeded from the real registry) and tests."""

    def __init__(self, registry: Optional[IdentityRegistry] = None):
        self._registry = (registry or IdentityRegistry()).copy()
        self._lock = threading.Lock()

    @property
    def registry(self) -> IdentityRegistry:
        return self._registry.copy()

    def load(self) -> RegistrySnapshot:
        with self._lock:
            return RegistrySnapshot(self._registry.copy())

    def save(self, registry: IdentityRegistry, expected: RegistrySnapshot) -> RegistrySnapshot:
        with self._lock:
            if self._registry.generation != expected.registry.generation:
                raise RegistryConflict(
                    f"Registry generation moved from {expected.registry.generation} to {self._registry.generation}")
            self._registry = registry.copy()
            return RegistrySnapshot(self._registry.copy())


class FileRegistryStore(RegistryStore):
    """
    Registry in a local YAML file. Writers take an exclusive advisory lock
    on a sibling `.lock` file, re-check the generation, then replace the
    file atomically.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")

    def _read(self) -> IdentityRegistry:
        if not self.path.exists():
            return IdentityRegistry()
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise AllocationError(f"Registry {self.path} unreadable: {e}")
        return IdentityRegistry.from_text(text)

    def load(self) -> RegistrySnapshot:
        return RegistrySnapshot(self._read())

    def save(self, registry: IdentityRegistry, expected: RegistrySnapshot) -> RegistrySnapshot:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.lock_path, "a") as lock:
                fcntl.flock(lock, fcntl.LOCK_EX)
                try:
                    current = self._read()
                    if current.generation != expected.registry.generation:
                        raise RegistryConflict(
                            f"Registry {self.path} generation moved from "
                            f"{expected.registry.generation} to {current.generation}")
                    self._atomic_write(registry.to_text())
                finally:
                    fcntl.flock(lock, fcntl.LOCK_UN)
        except OSError as e:
            raise AllocationError(f"Registry {self.path} unwritable: {e}")
        return RegistrySnapshot(registry.copy())

    def _atomic_write(self, content: str):
        temp_file = self.path.with_suffix(".kubedash.tmp")
        try:
            temp_file.write_text(content, encoding="utf-8")
            os.replace(temp_file, self.path)
        except OSError:
            if temp_file.exists():
                temp_file.unlink()
            raise


class RepositoryRegistryStore(RegistryStore):
    """
    Registry kept as a YAML file in the GitLab repository. The swap is a
    commit whose `last_commit_id` precondition makes GitLab reject it if
    another writer committed the file first.
    """

    def __init__(self, client, path: str):
        self.client = client
        self.path = path

    def load(self) -> RegistrySnapshot:
        try:
            found = self.client.get_file(self.path)
        except GitLabError as e:
            raise AllocationError(f"Registry {self.path} unreadable: {e.message}")
        if found is None:
            logger.info(f"No registry at {self.path}; starting empty")
            return RegistrySnapshot(IdentityRegistry())
        return RegistrySnapshot(IdentityRegistry.from_text(found.content), token=found.last_commit_id)

    def save(self, registry: IdentityRegistry, expected: RegistrySnapshot) -> RegistrySnapshot:
        action = {"file_path": self.path, "content": registry.to_text()}
        if expected.token:
            action.update(action="update", last_commit_id=expected.token)
        else:
            action["action"] = "create"

        message = f"kubedash: registry generation {registry.generation} (high water {registry.high_water})"
        try:
            commit_id = self.client.commit(message, [action])
        except GitLabConflict as e:
            raise RegistryConflict(f"Registry {self.path} changed concurrently: {e.message}")
        except GitLabError as e:
            raise AllocationError(f"Registry {self.path} unwritable: {e.message}")
        return RegistrySnapshot(registry.copy(), token=commit_id)
