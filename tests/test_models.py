import pytest

from kubedash.core.errors import RenderError, CycleTimeout
from kubedash.core.models import (
    ServiceDescriptor, ErrorRecord, ReconciliationReport, TargetReport, SyncPlan
)
from kubedash.core.retry import Deadline, retry


def test_descriptor_derivations():
    d = ServiceDescriptor("payments", "checkout", template="templates/http.json")
    assert d.key == ("payments", "checkout")
    assert d.registry_key == "payments/checkout"
    assert d.uid == "checkout-payments"
    assert d.title == "CHECKOUT Dashboard"
    assert d.selector_prefix == "payments-checkout"


def test_descriptor_identity_ignores_template():
    assert ServiceDescriptor("a", "b", template="x.json") == ServiceDescriptor("a", "b")


@pytest.mark.parametrize("namespace, name", [
    ("", "api"),
    ("internal", "API"),
    ("internal", "-api"),
    ("internal", "a" * 64),
])
def test_descriptor_rejects_invalid_labels(namespace, name):
    with pytest.raises(ValueError):
        ServiceDescriptor(namespace, name)


def test_error_record_keeps_exception_key():
    record = ErrorRecord.from_exception(RenderError("bad json", key="api-internal"), key="other")
    assert (record.kind, record.key, record.message) == ("RenderError", "api-internal", "bad json")

    fallback = ErrorRecord.from_exception(RuntimeError("boom"), key="cluster")
    assert (fallback.kind, fallback.key) == ("RuntimeError", "cluster")


def test_report_status_and_exit_code():
    report = ReconciliationReport(render_errors=[ErrorRecord("RenderError", "x", "bad")])
    assert (report.status, report.exit_code) == ("success", 0)

    report.targets.append(TargetReport(name="cluster", prune=True,
                                       errors=[ErrorRecord("TargetError", "x", "down")]))
    assert (report.status, report.exit_code) == ("partial", 1)

    report.fatal = ErrorRecord("CycleTimeout", None, "late")
    assert (report.status, report.exit_code) == ("fatal", 2)


def test_report_serializes():
    report = ReconciliationReport(targets=[
        TargetReport(name="cluster", prune=True, plan=SyncPlan(to_create=["a"], unchanged=["b"]), created=["a"]),
    ])
    data = report.to_dict()

    assert data["status"] == "success"
    assert data["targets"][0]["plan"]["to_create"] == ["a"]
    assert data["fatal"] is None
    assert report.operation_count == 1


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_deadline():
    clock = FakeClock()
    deadline = Deadline(10, clock=clock)
    deadline.check("discovery")
    assert deadline.remaining() == 10

    clock.now += 10
    assert deadline.expired
    with pytest.raises(CycleTimeout):
        deadline.check("sync")


def test_retry_backs_off_then_succeeds():
    attempts, sleeps = [], []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise RenderError("transient")
        return "ok"

    assert retry(flaky, (RenderError,), attempts=3, backoff=0.5, sleep=sleeps.append) == "ok"
    assert sleeps == [0.5, 1.0]


def test_retry_gives_up_with_last_error():
    def broken():
        raise RenderError("still broken")

    with pytest.raises(RenderError):
        retry(broken, (RenderError,), attempts=2, backoff=0, sleep=lambda s: None)
