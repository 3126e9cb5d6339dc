#!/usr/bin/env python3
"""
KUBEDASH ENGINE - The Reconciler
--------------------------------
Runs one reconciliation cycle: discover -> fetch templates -> allocate ->
render -> diff & apply per sink. Runs once per invocation; scheduling is
the CronJob's job.

Fatal phases (discovery, default template, allocation) abort before any
sink is touched. The deadline is also checked before every sink write; a
sink still running when it passes is abandoned and reported as a fatal
CycleTimeout, after whatever writes it had already made. Render failures
only drop the affected dashboard, and each sink is its own failure domain.

Author: KubeDash Team
Date: 2026-10-19
"""

import time
import logging
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Dict, List, Optional

from kubernetes import client

from kubedash.core.config import Settings
from kubedash.core.context import CycleContext
from kubedash.core.errors import KubeDashError, RenderError, CycleTimeout
from kubedash.core.kube import load_api_client
from kubedash.core.models import ReconciliationReport, TargetReport, ErrorRecord
from kubedash.core.retry import Deadline
from kubedash.discovery.discovery import ServiceDiscovery
from kubedash.identity.allocator import IdentityAllocator
from kubedash.identity.registry import (
    RegistryStore, MemoryRegistryStore, FileRegistryStore, RepositoryRegistryStore
)
from kubedash.rendering.renderer import DashboardRenderer
from kubedash.store.gitlab import GitLabClient
from kubedash.store.templates import TemplateStore
from kubedash.sync.manifest import MarkerPolicy
from kubedash.sync.targets import SyncTarget, ClusterTarget, RepositoryTarget

logger = logging.getLogger("kubedash.engine")


class Reconciler:
    """
    Principal orchestrator. Collaborators are injected so the same engine
    drives live clusters, dry runs and tests.
    """

    def __init__(self, discovery, registry_store: RegistryStore, template_source,
                 targets: List[SyncTarget], template_path: str = "templates/dashboard.json",
                 renderer: Optional[DashboardRenderer] = None, cycle_timeout: Optional[float] = 300.0,
                 render_workers: int = 4, allocation_attempts: int = 5):
        self.discovery = discovery
        self.registry_store = registry_store
        self.template_source = template_source
        self.template_path = template_path
        self.targets = targets
        self.renderer = renderer or DashboardRenderer()
        self.cycle_timeout = cycle_timeout
        self.render_workers = max(1, render_workers)
        self.allocation_attempts = allocation_attempts
        self.allocator = IdentityAllocator(registry_store, max_attempts=allocation_attempts)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Reconciler":
        """Wires the live collaborators: Kubernetes API, GitLab repository, both sinks."""
        settings.validate()
        api_client = load_api_client(settings.kubeconfig)
        gitlab = GitLabClient(settings.gitlab_url, settings.gitlab_token, settings.repository,
                              branch=settings.branch, timeout=settings.request_timeout)
        policy = MarkerPolicy(
            namespace=settings.cluster_namespace,
            sidecar_label=settings.sidecar_label,
            sidecar_label_value=settings.sidecar_label_value,
            name_prefix=settings.configmap_prefix,
            folder_annotation=settings.folder_annotation,
            folder=settings.folder,
        )
        discovery = ServiceDiscovery(
            client.AppsV1Api(api_client),
            marker_label=settings.marker_label,
            marker_annotation=settings.marker_annotation,
            kinds=settings.workload_kinds,
            request_timeout=settings.request_timeout,
        )
        if settings.registry_file:
            registry_store = FileRegistryStore(settings.registry_file)
        else:
            registry_store = RepositoryRegistryStore(gitlab, settings.registry_path)

        retry_opts = {"retry_attempts": settings.retry_attempts, "retry_backoff": settings.retry_backoff}
        targets = [
            ClusterTarget(client.CoreV1Api(api_client), policy, prune=settings.cluster_prune,
                          request_timeout=settings.request_timeout, **retry_opts),
            RepositoryTarget(gitlab, policy, settings.dashboard_path, prune=settings.repository_prune,
                             **retry_opts),
        ]
        return cls(discovery, registry_store, gitlab, targets,
                   template_path=settings.template_path,
                   cycle_timeout=settings.cycle_timeout,
                   render_workers=settings.render_workers,
                   allocation_attempts=settings.allocation_attempts)

    def reconcile(self, dry_run: bool = False) -> ReconciliationReport:
        """
        Performs one full cycle and returns its report. Fatal conditions are
        recorded in `report.fatal`, never raised.
        """
        report = ReconciliationReport(dry_run=dry_run)
        ctx = CycleContext(deadline=Deadline(self.cycle_timeout), dry_run=dry_run)

        try:
            # Phase 1: Discovery
            ctx.descriptors = sorted(self.discovery.discover(), key=lambda d: d.key)
            report.discovered = len(ctx.descriptors)
            ctx.deadline.check("discovery")

            # Phase 2: Templates (default is mandatory, overrides are per-service)
            templates = TemplateStore(self.template_source, self.template_path)
            template_failures = templates.collect(ctx.descriptors)
            ctx.deadline.check("template fetch")

            # Phase 3: Identity allocation, committed before anything is rendered
            allocator = self._allocator_for(ctx)
            ctx.identities = allocator.allocate_batch(ctx.descriptors)
            report.identities = {d.registry_key: ctx.identities[d.key] for d in ctx.descriptors}
            report.new_identities = list(allocator.last_allocated)
            ctx.deadline.check("allocation")

            # Phase 4: Rendering
            self._render(ctx, templates, template_failures)
            report.rendered = len(ctx.documents)
            report.render_errors = list(ctx.render_errors)
            ctx.deadline.check("rendering")

            # Phase 5: Sinks
            report.targets = self._sync_targets(ctx, report)

        except KubeDashError as e:
            if not e.fatal:
                raise
            logger.error(f"Cycle aborted ({e.kind}): {e}")
            report.fatal = ErrorRecord.from_exception(e)
        finally:
            report.finished_at = time.time()

        logger.info(f"Cycle finished: status={report.status} discovered={report.discovered} "
                    f"rendered={report.rendered} render_errors={len(report.render_errors)} "
                    f"operations={report.operation_count}")
        return report

    def _allocator_for(self, ctx: CycleContext) -> IdentityAllocator:
        if not ctx.dry_run:
            return self.allocator
        # Dry run: allocate against a private copy so nothing is persisted
        seeded = MemoryRegistryStore(self.registry_store.load().registry)
        return IdentityAllocator(seeded, max_attempts=self.allocation_attempts)

    def _render(self, ctx: CycleContext, templates: TemplateStore, template_failures: Dict[str, KubeDashError]):
        def render_one(descriptor):
            identity = ctx.identities[descriptor.key]
            path = descriptor.template or templates.default_path
            try:
                if path in template_failures:
                    raise RenderError(f"Template {path} unavailable: {template_failures[path].message}",
                                      key=identity.uid)
                return self.renderer.render(descriptor, identity, templates.for_descriptor(descriptor)), None
            except RenderError as e:
                return None, ErrorRecord.from_exception(e, key=identity.uid)

        with ThreadPoolExecutor(max_workers=self.render_workers) as pool:
            results = list(pool.map(render_one, ctx.descriptors))

        for descriptor, (document, error) in zip(ctx.descriptors, results):
            if error is not None:
                logger.warning(f"Render failed for {descriptor.registry_key}: {error.message}")
                ctx.render_errors.append(error)
                ctx.held.add(error.key)
            else:
                ctx.documents[document.key] = document

    def _sync_targets(self, ctx: CycleContext, report: ReconciliationReport) -> List[TargetReport]:
        if not self.targets:
            return []

        pool = ThreadPoolExecutor(max_workers=len(self.targets))
        try:
            futures = {
                pool.submit(target.sync, ctx.documents, ctx.held, ctx.deadline, ctx.dry_run): target
                for target in self.targets
            }
            done, _ = wait(futures, timeout=ctx.deadline.remaining())
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        reports = []
        for future, target in futures.items():
            if future not in done:
                error = CycleTimeout(f"{target.name} did not finish before the cycle deadline", key=target.name)
            else:
                try:
                    reports.append(future.result())
                    continue
                except KubeDashError as e:
                    error = e
                except Exception as e:
                    logger.exception(f"{target.name}: unexpected failure")
                    error = e

            reports.append(TargetReport(name=target.name, prune=target.prune,
                                        errors=[ErrorRecord.from_exception(error, key=target.name)]))
            if isinstance(error, CycleTimeout) and report.fatal is None:
                report.fatal = ErrorRecord.from_exception(error)
        return reports
