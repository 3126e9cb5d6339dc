#!/usr/bin/env python3
"""
KUBEDASH IDENTITY ALLOCATOR
---------------------------
Maps each ServiceDescriptor to a stable (uid, numeric id) pair.

Batches are processed in (namespace, name) order so that independent
reconcilers fed the same discovery history converge on the same ids. New
ids are handed out from the registry's high-water mark through a
read-modify-write that is serialized in-process by a lock and across
processes by the store's compare-and-swap.

Author: KubeDash Team
Date: 2026-10-19
"""

import logging
import threading
from typing import Dict, Iterable, List, Tuple

from kubedash.core.errors import AllocationError, RegistryConflict
from kubedash.core.models import ServiceDescriptor, DashboardIdentity
from kubedash.identity.registry import RegistryStore, IdentityRegistry

logger = logging.getLogger("kubedash.allocator")

Key = Tuple[str, str]


class IdentityAllocator:

    def __init__(self, store: RegistryStore, max_attempts: int = 5):
        self.store = store
        self.max_attempts = max(1, max_attempts)
        self._lock = threading.Lock()
        self.last_allocated: List[str] = []

    def allocate(self, descriptor: ServiceDescriptor) -> DashboardIdentity:
        return self.allocate_batch([descriptor])[descriptor.key]

    def allocate_batch(self, descriptors: Iterable[ServiceDescriptor]) -> Dict[Key, DashboardIdentity]:
        """
        Resolves identities for every descriptor, persisting new ones before
        returning. Raises AllocationError if the registry cannot be read,
        written, or keeps losing the compare-and-swap.
        """
        ordered = sorted({d.key: d for d in descriptors}.values(), key=lambda d: d.key)

        with self._lock:
            for attempt in range(1, self.max_attempts + 1):
                snapshot = self.store.load()
                registry = snapshot.registry.copy()
                new_keys = self._assign(registry, ordered)

                if not new_keys:
                    self.last_allocated = []
                    return self._resolve(registry, ordered)

                registry.generation += 1
                try:
                    self.store.save(registry, snapshot)
                except RegistryConflict as e:
                    logger.warning(f"Registry conflict (attempt {attempt}/{self.max_attempts}): {e.message}")
                    continue

                for key in new_keys:
                    ident = registry.identities[key]
                    logger.info(f"Allocated {key} -> uid={ident.uid} id={ident.numeric_id}")
                self.last_allocated = new_keys
                return self._resolve(registry, ordered)

        raise AllocationError(f"Registry still contended after {self.max_attempts} attempts")

    @staticmethod
    def _assign(registry: IdentityRegistry, ordered: List[ServiceDescriptor]) -> List[str]:
        new_keys = []
        for descriptor in ordered:
            key = descriptor.registry_key
            if key in registry.identities:
                continue
            registry.high_water += 1
            numeric_id = registry.high_water
            uid = descriptor.uid
            owner = registry.uid_owner(uid)
            if owner is not None:
                # e.g. ("c", "a-b") and ("b-c", "a") both derive "a-b-c"
                disambiguated = f"{uid}-{numeric_id}"
                logger.warning(f"uid {uid} already held by {owner}; {key} gets {disambiguated}")
                uid = disambiguated
                if registry.uid_owner(uid) is not None:
                    raise AllocationError(f"Cannot derive a unique uid for {key}", key=key)
            registry.identities[key] = DashboardIdentity(uid=uid, numeric_id=numeric_id)
            new_keys.append(key)
        return new_keys

    @staticmethod
    def _resolve(registry: IdentityRegistry, ordered: List[ServiceDescriptor]) -> Dict[Key, DashboardIdentity]:
        return {d.key: registry.identities[d.registry_key] for d in ordered}
