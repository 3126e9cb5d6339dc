#!/usr/bin/env python3
"""
KUBEDASH CORE MODELS
--------------------
Defines the fundamental data structures that flow through a reconciliation
cycle: what was discovered, which identity it holds, what was rendered,
and what each sink was asked to do.

Author: KubeDash Team
Date: 2026-10-19
"""

import re
import time
import hashlib
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Tuple

from kubedash.core.errors import KubeDashError

# RFC 1123 label: lowercase alphanumerics and '-', alphanumeric at both ends
DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
DNS_LABEL_MAX = 63


def is_dns_label(value: Any) -> bool:
    return isinstance(value, str) and len(value) <= DNS_LABEL_MAX and bool(DNS_LABEL.match(value))


def sha256_hex(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ServiceDescriptor:
    """
    One monitored workload, rebuilt from live discovery every cycle.

    The (namespace, name) pair is the natural key; everything else a
    dashboard needs is derived from it.
    """
    namespace: str
    name: str
    template: Optional[str] = field(default=None, compare=False)  # per-service template override

    def __post_init__(self):
        for label, value in (("namespace", self.namespace), ("name", self.name)):
            if not is_dns_label(value):
                raise ValueError(f"Invalid {label} '{value}': must be a DNS label")

    @property
    def key(self) -> Tuple[str, str]:
        return (self.namespace, self.name)

    @property
    def registry_key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def uid(self) -> str:
        return f"{self.name}-{self.namespace}"

    @property
    def title(self) -> str:
        return f"{self.name.upper()} Dashboard"

    @property
    def selector_prefix(self) -> str:
        return f"{self.namespace}-{self.name}"


@dataclass(frozen=True)
class DashboardIdentity:
    uid: str
    numeric_id: int


@dataclass(frozen=True)
class DashboardDocument:
    """The rendered artifact for one descriptor. `content` is canonical JSON."""
    descriptor: ServiceDescriptor
    identity: DashboardIdentity
    title: str
    content: str

    @property
    def key(self) -> str:
        return self.identity.uid

    @property
    def uid(self) -> str:
        return self.identity.uid

    @property
    def numeric_id(self) -> int:
        return self.identity.numeric_id

    @property
    def digest(self) -> str:
        return sha256_hex(self.content)


@dataclass
class ErrorRecord:
    """Structured error entry: what failed, and against which key."""
    kind: str
    key: Optional[str]
    message: str

    @classmethod
    def from_exception(cls, exc: Exception, key: Optional[str] = None) -> "ErrorRecord":
        if isinstance(exc, KubeDashError):
            return cls(kind=exc.kind, key=exc.key or key, message=exc.message)
        return cls(kind=type(exc).__name__, key=key, message=str(exc))

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "key": self.key, "message": self.message}


@dataclass
class SyncPlan:
    """The diff between the desired set and one sink's live state."""
    to_create: List[str] = field(default_factory=list)
    to_update: List[str] = field(default_factory=list)
    to_delete: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    held: List[str] = field(default_factory=list)  # present in sink, render failed this cycle

    @property
    def operation_count(self) -> int:
        return len(self.to_create) + len(self.to_update) + len(self.to_delete)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "to_create": list(self.to_create),
            "to_update": list(self.to_update),
            "to_delete": list(self.to_delete),
            "unchanged": list(self.unchanged),
            "held": list(self.held),
        }


@dataclass
class TargetReport:
    name: str
    prune: bool
    plan: SyncPlan = field(default_factory=SyncPlan)
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    suppressed_deletes: List[str] = field(default_factory=list)
    errors: List[ErrorRecord] = field(default_factory=list)

    @property
    def applied_count(self) -> int:
        return len(self.created) + len(self.updated) + len(self.deleted)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "prune": self.prune,
            "plan": self.plan.to_dict(),
            "created": list(self.created),
            "updated": list(self.updated),
            "deleted": list(self.deleted),
            "suppressed_deletes": list(self.suppressed_deletes),
            "errors": [e.to_dict() for e in self.errors],
        }


@dataclass
class ReconciliationReport:
    """
    Outcome of one reconciliation cycle.

    Render errors alone still count as success; any sink error makes the cycle
    partial. A fatal error raised before the sink phase means nothing was
    written; a CycleTimeout during the sink phase may follow partial writes.
    """
    dry_run: bool = False
    discovered: int = 0
    identities: Dict[str, DashboardIdentity] = field(default_factory=dict)  # "namespace/name" -> identity
    new_identities: List[str] = field(default_factory=list)
    rendered: int = 0
    render_errors: List[ErrorRecord] = field(default_factory=list)
    targets: List[TargetReport] = field(default_factory=list)
    fatal: Optional[ErrorRecord] = None
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    EXIT_CODES = {"success": 0, "partial": 1, "fatal": 2}

    @property
    def status(self) -> str:
        if self.fatal is not None:
            return "fatal"
        if any(not t.ok for t in self.targets):
            return "partial"
        return "success"

    @property
    def exit_code(self) -> int:
        return self.EXIT_CODES[self.status]

    @property
    def operation_count(self) -> int:
        return sum(t.plan.operation_count for t in self.targets)

    def target(self, name: str) -> Optional[TargetReport]:
        for t in self.targets:
            if t.name == name:
                return t
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "dry_run": self.dry_run,
            "discovered": self.discovered,
            "rendered": self.rendered,
            "identities": {
                key: {"uid": ident.uid, "id": ident.numeric_id}
                for key, ident in sorted(self.identities.items())
            },
            "new_identities": list(self.new_identities),
            "render_errors": [e.to_dict() for e in self.render_errors],
            "targets": [t.to_dict() for t in self.targets],
            "fatal": self.fatal.to_dict() if self.fatal else None,
            "duration_seconds": round((self.finished_at or time.time()) - self.started_at, 3),
        }
