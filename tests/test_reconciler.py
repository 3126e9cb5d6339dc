#!/usr/bin/env python3
"""
KUBEDASH RECONCILER SUITE
-------------------------
End-to-end cycles against in-memory sinks:
1. Fresh discovery creates on both sinks with ordered identities
2. A second cycle is a no-op (idempotence)
3. Removal prunes the cluster but only reports on the append-only repository
4. One broken template does not block the other dashboards
5. One failing sink does not block the other
6. Fatal phases write nothing
7. A sink outliving the deadline is abandoned without blocking the report
"""

import threading

from kubedash.core.errors import DiscoveryError, GitLabError, AllocationError
from kubedash.core.models import ServiceDescriptor, DashboardIdentity
from kubedash.identity.registry import IdentityRegistry, MemoryRegistryStore, RegistrySnapshot, RegistryStore

from conftest import FakeDiscovery, FakeTemplateSource, MemoryTarget, TEMPLATE, TEMPLATE_PATH


def test_end_to_end_scenario(make_reconciler, descriptors, cluster, repository):
    discovery = FakeDiscovery(descriptors)
    reconciler = make_reconciler(discovery)

    # Cycle 1: both services are new
    first = reconciler.reconcile()
    assert first.status == "success"
    assert first.identities["internal/api"] == DashboardIdentity("api-internal", 1)
    assert first.identities["internal/worker"] == DashboardIdentity("worker-internal", 2)
    for name in ("cluster", "repository"):
        target = first.target(name)
        assert target.plan.to_create == ["api-internal", "worker-internal"]
        assert target.created == ["api-internal", "worker-internal"]

    # Cycle 2: nothing changed
    second = reconciler.reconcile()
    assert second.operation_count == 0
    assert second.new_identities == []
    for name in ("cluster", "repository"):
        assert second.target(name).plan.unchanged == ["api-internal", "worker-internal"]

    # Cycle 3: worker removed
    discovery.descriptors = {ServiceDescriptor("internal", "api")}
    third = reconciler.reconcile()
    cluster_report = third.target("cluster")
    repo_report = third.target("repository")

    assert cluster_report.plan.to_delete == ["worker-internal"]
    assert cluster_report.deleted == ["worker-internal"]
    assert "worker-internal" not in cluster.store

    assert repo_report.plan.to_delete == ["worker-internal"]
    assert repo_report.deleted == []
    assert repo_report.suppressed_deletes == ["worker-internal"]
    assert "worker-internal" in repository.store
    assert repository.deletes == []
    assert third.status == "success"


def test_identity_survives_removal_and_return(make_reconciler, descriptors, registry_store):
    discovery = FakeDiscovery(descriptors)
    reconciler = make_reconciler(discovery)
    reconciler.reconcile()

    discovery.descriptors = {ServiceDescriptor("internal", "api")}
    reconciler.reconcile()

    discovery.descriptors = descriptors | {ServiceDescriptor("billing", "ledger")}
    report = reconciler.reconcile()

    assert report.identities["internal/worker"] == DashboardIdentity("worker-internal", 2)
    assert report.identities["billing/ledger"] == DashboardIdentity("ledger-billing", 3)
    assert registry_store.registry.high_water == 3


def test_independent_instances_share_identity(descriptors, registry_store):
    from kubedash.core.engine import Reconciler

    first = Reconciler(FakeDiscovery(descriptors), registry_store, FakeTemplateSource(),
                       [MemoryTarget("cluster", prune=True)], template_path=TEMPLATE_PATH)
    second = Reconciler(FakeDiscovery(descriptors), registry_store, FakeTemplateSource(),
                        [MemoryTarget("cluster", prune=True)], template_path=TEMPLATE_PATH)

    assert first.reconcile().identities == second.reconcile().identities


def test_broken_override_template_is_isolated(make_reconciler, cluster):
    broken = TEMPLATE.replace("${dashboard.title}", "${dashboard.owner}")
    source = FakeTemplateSource({TEMPLATE_PATH: TEMPLATE, "templates/broken.json": broken})
    discovery = FakeDiscovery({
        ServiceDescriptor("internal", "api"),
        ServiceDescriptor("internal", "worker", template="templates/broken.json"),
    })

    report = make_reconciler(discovery, source=source).reconcile()

    assert report.status == "success"
    assert report.rendered == 1
    assert [(e.kind, e.key) for e in report.render_errors] == [("RenderError", "worker-internal")]
    assert report.target("cluster").created == ["api-internal"]
    assert list(cluster.store) == ["api-internal"]


def test_missing_override_template_is_isolated(make_reconciler):
    discovery = FakeDiscovery({
        ServiceDescriptor("internal", "api"),
        ServiceDescriptor("internal", "worker", template="templates/missing.json"),
    })

    report = make_reconciler(discovery).reconcile()

    assert report.rendered == 1
    assert report.render_errors[0].key == "worker-internal"
    assert "templates/missing.json" in report.render_errors[0].message


def test_render_failure_holds_existing_dashboard(make_reconciler, descriptors, cluster):
    discovery = FakeDiscovery(descriptors)
    source = FakeTemplateSource()
    reconciler = make_reconciler(discovery, source=source)
    reconciler.reconcile()

    # worker's template breaks after it was published: keep the published copy
    source.files["templates/broken.json"] = "{ not json"
    discovery.descriptors = {
        ServiceDescriptor("internal", "api"),
        ServiceDescriptor("internal", "worker", template="templates/broken.json"),
    }
    report = reconciler.reconcile()

    plan = report.target("cluster").plan
    assert plan.held == ["worker-internal"]
    assert plan.to_delete == []
    assert "worker-internal" in cluster.store


def test_failing_sink_does_not_block_other(make_reconciler, descriptors, repository):
    flaky = MemoryTarget("cluster", prune=True, fail_keys={"worker-internal"})
    report = make_reconciler(FakeDiscovery(descriptors), targets=[flaky, repository]).reconcile()

    assert report.status == "partial"
    assert report.exit_code == 1
    cluster_report = report.target("cluster")
    assert cluster_report.created == ["api-internal"]
    assert [(e.kind, e.key) for e in cluster_report.errors] == [("TargetError", "worker-internal")]
    assert report.target("repository").created == ["api-internal", "worker-internal"]


def test_unreachable_sink_is_reported(make_reconciler, descriptors, repository):
    down = MemoryTarget("cluster", prune=True, fail_list=True)
    report = make_reconciler(FakeDiscovery(descriptors), targets=[down, repository]).reconcile()

    assert report.status == "partial"
    assert report.target("cluster").errors[0].key == "cluster"
    assert len(repository.store) == 2


def test_discovery_failure_is_fatal(make_reconciler, cluster, registry_store):
    report = make_reconciler(FakeDiscovery(error=DiscoveryError("forbidden"))).reconcile()

    assert report.status == "fatal"
    assert report.exit_code == 2
    assert report.fatal.kind == "DiscoveryError"
    assert cluster.puts == []
    assert registry_store.registry.high_water == 0


def test_default_template_failure_is_fatal(make_reconciler, descriptors, cluster, registry_store):
    source = FakeTemplateSource(error=GitLabError("timeout"))
    report = make_reconciler(FakeDiscovery(descriptors), source=source).reconcile()

    assert report.fatal.kind == "TemplateError"
    assert cluster.puts == []
    assert registry_store.registry.identities == {}


class BrokenRegistryStore(RegistryStore):
    def load(self) -> RegistrySnapshot:
        raise AllocationError("registry unreadable")


def test_allocation_failure_is_fatal(descriptors):
    from kubedash.core.engine import Reconciler

    cluster = MemoryTarget("cluster", prune=True)
    reconciler = Reconciler(FakeDiscovery(descriptors), BrokenRegistryStore(), FakeTemplateSource(),
                            [cluster], template_path=TEMPLATE_PATH)
    report = reconciler.reconcile()

    assert report.fatal.kind == "AllocationError"
    assert cluster.puts == []


def test_dry_run_writes_nothing(make_reconciler, descriptors, cluster, repository, registry_store):
    report = make_reconciler(FakeDiscovery(descriptors)).reconcile(dry_run=True)

    assert report.dry_run is True
    assert report.identities["internal/api"] == DashboardIdentity("api-internal", 1)
    assert report.target("cluster").plan.to_create == ["api-internal", "worker-internal"]
    assert report.target("cluster").created == []
    assert cluster.store == {} and repository.store == {}
    assert registry_store.registry.high_water == 0


def test_dry_run_reports_suppressed_deletes(make_reconciler, descriptors, repository):
    discovery = FakeDiscovery(descriptors)
    reconciler = make_reconciler(discovery)
    reconciler.reconcile()

    discovery.descriptors = {ServiceDescriptor("internal", "api")}
    report = reconciler.reconcile(dry_run=True)

    assert report.target("repository").suppressed_deletes == ["worker-internal"]
    assert report.target("cluster").deleted == []


def test_expired_deadline_aborts_before_writes(make_reconciler, descriptors, cluster):
    report = make_reconciler(FakeDiscovery(descriptors), cycle_timeout=0).reconcile()

    assert report.fatal.kind == "CycleTimeout"
    assert cluster.puts == []


def test_preexisting_registry_is_authoritative(descriptors, cluster):
    from kubedash.core.engine import Reconciler

    seeded = IdentityRegistry(generation=3, high_water=7, identities={
        "internal/worker": DashboardIdentity("worker-internal", 7),
    })
    store = MemoryRegistryStore(seeded)
    reconciler = Reconciler(FakeDiscovery(descriptors), store, FakeTemplateSource(), [cluster],
                            template_path=TEMPLATE_PATH)
    report = reconciler.reconcile()

    assert report.identities["internal/worker"].numeric_id == 7
    assert report.identities["internal/api"].numeric_id == 8
    assert '"id": 7' in cluster.store["worker-internal"]


class StalledTarget(MemoryTarget):
    """Blocks in list() until released, so it is still running when the deadline passes."""

    def __init__(self, name, release):
        super().__init__(name, prune=False)
        self.release = release
        self.finished = threading.Event()

    def list(self):
        self.release.wait(5)
        return super().list()

    def sync(self, *args, **kwargs):
        try:
            return super().sync(*args, **kwargs)
        finally:
            self.finished.set()


def test_sink_running_past_deadline_is_fatal(make_reconciler, descriptors, cluster):
    release = threading.Event()
    stalled = StalledTarget("repository", release)
    try:
        report = make_reconciler(FakeDiscovery(descriptors), targets=[cluster, stalled],
                                 cycle_timeout=1.0).reconcile()
    finally:
        release.set()

    assert report.status == "fatal"
    assert report.exit_code == 2
    assert report.fatal.kind == "CycleTimeout"
    # the other sink finished in time and its writes stand
    assert report.target("cluster").created == ["api-internal", "worker-internal"]
    assert sorted(cluster.store) == ["api-internal", "worker-internal"]
    assert [(e.kind, e.key) for e in report.target("repository").errors] == [("CycleTimeout", "repository")]

    # once released, the abandoned sink stops at its next deadline check
    assert stalled.finished.wait(5)
    assert stalled.puts == []
