#!/usr/bin/env python3
"""
KUBEDASH MANIFEST BUILDER & EXPORTER
------------------------------------
Both sinks publish the same object: a ConfigMap carrying the Grafana
sidecar's discovery label and the dashboard JSON. The cluster sink sends it
to the API as-is; the repository sink commits its YAML rendering, so a
GitOps controller applying the repository ends up with an identical object.

Author: KubeDash Team
Date: 2026-10-19
"""

import io
from dataclasses import dataclass
from typing import Dict, Any, Optional

from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap
from ruamel.yaml.scalarstring import LiteralScalarString

from kubedash.core.models import DashboardDocument

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "kubedash"
UID_ANNOTATION = "kubedash.io/uid"
ID_ANNOTATION = "kubedash.io/numeric-id"
SOURCE_ANNOTATION = "kubedash.io/source"


@dataclass
class MarkerPolicy:
    """The labels/annotations every published dashboard carries, whichever sink writes it."""
    namespace: str
    sidecar_label: str = "grafana_dashboard"
    sidecar_label_value: str = "1"
    name_prefix: str = "grafana-dashboard-"
    folder_annotation: Optional[str] = None
    folder: Optional[str] = None

    @property
    def managed_selector(self) -> str:
        return f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE},{self.sidecar_label}={self.sidecar_label_value}"

    def object_name(self, uid: str) -> str:
        return f"{self.name_prefix}{uid}"

    @staticmethod
    def data_key(uid: str) -> str:
        return f"{uid}.json"


def build_configmap(document: DashboardDocument, policy: MarkerPolicy) -> Dict[str, Any]:
    annotations = {
        UID_ANNOTATION: document.uid,
        ID_ANNOTATION: str(document.numeric_id),
        SOURCE_ANNOTATION: document.descriptor.registry_key,
    }
    if policy.folder_annotation and policy.folder:
        annotations[policy.folder_annotation] = policy.folder

    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {
            "name": policy.object_name(document.uid),
            "namespace": policy.namespace,
            "labels": {
                policy.sidecar_label: policy.sidecar_label_value,
                MANAGED_BY_LABEL: MANAGED_BY_VALUE,
            },
            "annotations": annotations,
        },
        "data": {policy.data_key(document.uid): document.content},
    }


class ManifestExporter:
    """
    The Reconstructor: converts ConfigMap dicts to stable YAML text.
    Output must be byte-stable across runs; the repository sink diffs on it.
    """

    def __init__(self):
        self.yaml = YAML(typ='rt')
        self.yaml.indent(mapping=2, sequence=4, offset=2)
        self.yaml.width = 4096
        self.preferred_order = ["apiVersion", "kind", "metadata", "data"]

    def _get_sorted_map(self, data: Any, top_level: bool = False) -> Any:
        if not isinstance(data, dict):
            # Multi-line payloads (the dashboard JSON) as literal blocks
            if isinstance(data, str) and "\n" in data:
                return LiteralScalarString(data)
            return data

        keys = list(data.keys())

        def sort_logic(key):
            if top_level and key in self.preferred_order:
                return (0, self.preferred_order.index(key), "")
            return (1, 0, str(key))

        sorted_map = CommentedMap()
        for key in sorted(keys, key=sort_logic):
            sorted_map[key] = self._get_sorted_map(data[key])
        return sorted_map

    def export(self, manifest: Dict[str, Any]) -> str:
        stream = io.StringIO()
        self.yaml.dump(self._get_sorted_map(manifest, top_level=True), stream)
        return stream.getvalue()
