#!/usr/bin/env python3
"""
KUBEDASH SERVICE DISCOVERY
--------------------------
Finds every workload opted into monitoring, across all namespaces the
credential can see, and normalizes it into a ServiceDescriptor.

Opt-in happens through the marker label (server-side filtered) and,
optionally, a marker annotation (client-side filtered, since the API cannot
select on annotations). A workload matched by both paths, or by several
kinds, is reported once.

Author: KubeDash Team
Date: 2026-10-19
"""

import logging
from typing import Dict, Any, Iterator, List, Optional, Set, Tuple

import urllib3
from kubernetes import client
from kubernetes.client.rest import ApiException

from kubedash.core.errors import DiscoveryError
from kubedash.core.models import ServiceDescriptor

logger = logging.getLogger("kubedash.discovery")

NAME_ANNOTATION = "grafana-dashboards/service-name"
TEMPLATE_ANNOTATION = "grafana-dashboards/template"

# Workload kind -> AppsV1Api cluster-wide list call
KIND_LISTERS = {
    "Deployment": "list_deployment_for_all_namespaces",
    "StatefulSet": "list_stateful_set_for_all_namespaces",
}

PAGE_SIZE = 500


class ServiceDiscovery:
    """Read-only view of the orchestrator's monitored workloads."""

    def __init__(self, apps_api: client.AppsV1Api,
                 marker_label: Optional[str] = "grafana-dashboards/enabled=true",
                 marker_annotation: Optional[str] = None,
                 kinds: Optional[List[str]] = None,
                 request_timeout: float = 10.0):
        self.apps_api = apps_api
        self.marker_label = marker_label
        self.marker_annotation = marker_annotation
        self.kinds = kinds or ["Deployment"]
        self.request_timeout = request_timeout

        if not marker_label and not marker_annotation:
            raise ValueError("A marker label or marker annotation is required")
        unknown = [k for k in self.kinds if k not in KIND_LISTERS]
        if unknown:
            raise ValueError(f"Unsupported workload kinds: {', '.join(unknown)}")

    def discover(self) -> Set[ServiceDescriptor]:
        """
        Returns the deduplicated set of descriptors. Raises DiscoveryError on
        any transport or authorization failure; a single unusable workload is
        logged and skipped.
        """
        found: Dict[Tuple[str, str], ServiceDescriptor] = {}
        skipped = 0

        for kind in self.kinds:
            for workload in self._marked_workloads(kind):
                descriptor = self._normalize(kind, workload)
                if descriptor is None:
                    skipped += 1
                    continue
                if descriptor.key in found:
                    logger.debug(f"Duplicate match for {descriptor.registry_key} ({kind}); keeping first")
                    continue
                found[descriptor.key] = descriptor

        logger.info(f"Discovered {len(found)} monitored service(s), skipped {skipped}")
        return set(found.values())

    def _marked_workloads(self, kind: str) -> Iterator[Any]:
        if self.marker_label:
            yield from self._list(kind, label_selector=self.marker_label)
        if self.marker_annotation:
            for workload in self._list(kind):
                annotations = (workload.metadata.annotations if workload.metadata else None) or {}
                if str(annotations.get(self.marker_annotation, "")).lower() == "true":
                    yield workload

    def _list(self, kind: str, label_selector: Optional[str] = None) -> Iterator[Any]:
        lister = getattr(self.apps_api, KIND_LISTERS[kind])
        token = None
        while True:
            kwargs: Dict[str, Any] = {"limit": PAGE_SIZE, "_request_timeout": self.request_timeout}
            if label_selector:
                kwargs["label_selector"] = label_selector
            if token:
                kwargs["_continue"] = token
            try:
                response = lister(**kwargs)
            except ApiException as e:
                raise DiscoveryError(f"Listing {kind}s failed: HTTP {e.status} {e.reason}")
            except urllib3.exceptions.HTTPError as e:
                raise DiscoveryError(f"Listing {kind}s failed: {e}")

            yield from (response.items or [])
            token = getattr(response.metadata, "_continue", None) if response.metadata else None
            if not token:
                return

    def _normalize(self, kind: str, workload: Any) -> Optional[ServiceDescriptor]:
        metadata = getattr(workload, "metadata", None)
        if metadata is None:
            logger.warning(f"Skipping {kind} without metadata")
            return None

        annotations = metadata.annotations or {}
        namespace = metadata.namespace
        name = annotations.get(NAME_ANNOTATION) or metadata.name
        if not namespace or not name:
            logger.warning(f"Skipping {kind} {namespace or '?'}/{metadata.name or '?'}: no derivable name or namespace")
            return None

        try:
            return ServiceDescriptor(
                namespace=namespace,
                name=name,
                template=annotations.get(TEMPLATE_ANNOTATION) or None,
            )
        except ValueError as e:
            logger.warning(f"Skipping {kind} {namespace}/{metadata.name}: {e}")
            return None
