#!/usr/bin/env python3
"""
KUBEDASH CYCLE CONTEXT
----------------------
State carried through one reconciliation cycle. Created by the Reconciler,
filled phase by phase (discover -> allocate -> render), then handed to
every sink.

Author: KubeDash Team
Date: 2026-10-19
"""

from dataclasses import dataclass, field
from typing import Dict, List, Set, Tuple

from kubedash.core.models import ServiceDescriptor, DashboardIdentity, DashboardDocument, ErrorRecord
from kubedash.core.retry import Deadline


@dataclass
class CycleContext:
    deadline: Deadline
    dry_run: bool = False
    descriptors: List[ServiceDescriptor] = field(default_factory=list)        # sorted by (namespace, name)
    identities: Dict[Tuple[str, str], DashboardIdentity] = field(default_factory=dict)
    documents: Dict[str, DashboardDocument] = field(default_factory=dict)     # uid -> document
    held: Set[str] = field(default_factory=set)                               # uids whose render failed
    render_errors: List[ErrorRecord] = field(default_factory=list)
