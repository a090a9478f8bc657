"""Tests for drift detection and remediation."""

from __future__ import annotations

import threading
from datetime import UTC, datetime
from pathlib import Path

from provctl.drift.detector import DriftDetector, format_remediation, format_report
from provctl.engine import Engine
from provctl.errors import ConfigError
from provctl.events.log import EventLog
from provctl.models import (
    Cluster,
    ClusterSpec,
    ControlPlaneSpec,
    DriftReport,
    DriftSummary,
    DriftType,
    NodePool,
    Phase,
    RemediationStatus,
    ResourceDrift,
    ResourceID,
    ResourceKind,
    Severity,
    State,
    TriggerReason,
    WorkerPoolSpec,
)
from provctl.providers.local import LocalProvider
from provctl.snapshot.manager import SnapshotManager
from provctl.state.store import MemoryStateManager

# --- Helpers ---


def _cluster(cid: str = "c1", version: str = "1.29", provider: str = "local") -> Cluster:
    return Cluster(
        id=cid,
        spec=ClusterSpec(provider=provider, control_plane=ControlPlaneSpec(version=version)),
    )


def _pool(cluster_id: str = "c1", name: str = "general", size: int = 2) -> NodePool:
    return NodePool(
        id=f"{cluster_id}/{name}",
        cluster_id=cluster_id,
        spec=WorkerPoolSpec(name=name, min_size=1, max_size=5, desired_size=size),
    )


def _desired(*cids: str) -> State:
    cids = cids or ("c1",)
    return State.of([_cluster(c) for c in cids], [_pool(c) for c in cids])


def _setup(tmp_path: Path, desired: State | None = None, with_snapshots: bool = False):
    desired = desired or _desired()
    provider = LocalProvider()
    engine = Engine(MemoryStateManager(), EventLog(tmp_path / "events.jsonl"))
    engine.register_provider(provider)
    engine.plan_and_apply(desired)
    snapshots = SnapshotManager(tmp_path / "snapshots", engine.state) if with_snapshots else None
    return DriftDetector(engine, snapshots=snapshots), provider, desired, snapshots


def _manual_drift(cid: str = "c1", drift_type: DriftType = DriftType.CONFIG_CHANGE,
                  remediatable: bool = False) -> ResourceDrift:
    return ResourceDrift(
        resource=ResourceID(provider="local", kind=ResourceKind.CLUSTER, id=cid),
        drift_type=drift_type,
        field="tags",
        expected={"env": "prod"},
        actual={},
        severity=Severity.LOW,
        remediatable=remediatable,
    )


def _report(drifts: list[ResourceDrift], desired: State | None = None) -> DriftReport:
    return DriftReport(
        detected_at=datetime.now(tz=UTC),
        has_drift=bool(drifts),
        drifts=drifts,
        summary=DriftSummary.from_drifts(drifts),
        desired=desired or State(),
    )


# --- Detection ---


class TestDetectDrift:
    def test_identical_state_has_no_drift(self, tmp_path: Path) -> None:
        detector, _, desired, _ = _setup(tmp_path)
        report = detector.detect_drift(desired)
        assert not report.has_drift
        assert report.drifts == []
        assert report.summary.total_drifts == 0

    def test_version_skew_is_high(self, tmp_path: Path) -> None:
        detector, provider, desired, _ = _setup(tmp_path)
        provider.set_cluster_version("c1", "1.28")

        report = detector.detect_drift(desired)
        assert report.has_drift
        assert len(report.drifts) == 1
        drift = report.drifts[0]
        assert drift.drift_type == DriftType.VERSION_SKEW
        assert drift.severity == Severity.HIGH
        assert drift.field == "controlPlane.version"
        assert drift.expected == "1.29"
        assert drift.actual == "1.28"
        assert drift.remediatable
        assert report.summary.high_count == 1

    def test_deleted_cluster_is_critical(self, tmp_path: Path) -> None:
        detector, provider, desired, _ = _setup(tmp_path)
        provider.remove_cluster("c1")

        report = detector.detect_drift(desired)
        assert len(report.drifts) == 1
        drift = report.drifts[0]
        assert drift.drift_type == DriftType.RESOURCE_DELETED
        assert drift.severity == Severity.CRITICAL
        assert drift.actual == "deleted"
        assert report.max_severity == Severity.CRITICAL

    def test_scale_change_is_medium(self, tmp_path: Path) -> None:
        detector, provider, desired, _ = _setup(tmp_path)
        provider.scale_node_pool("c1/general", 5)

        report = detector.detect_drift(desired)
        drift = report.drifts[0]
        assert drift.drift_type == DriftType.SCALE_CHANGE
        assert drift.severity == Severity.MEDIUM
        assert drift.resource.kind == ResourceKind.NODE_POOL
        assert (drift.expected, drift.actual) == (2, 5)

    def test_missing_pool_is_high(self, tmp_path: Path) -> None:
        detector, provider, desired, _ = _setup(tmp_path)
        provider.remove_node_pool("c1/general")

        report = detector.detect_drift(desired)
        drift = report.drifts[0]
        assert drift.drift_type == DriftType.RESOURCE_DELETED
        assert drift.severity == Severity.HIGH
        assert drift.resource.id == "c1/general"

    def test_inline_worker_pools_are_checked(self, tmp_path: Path) -> None:
        detector, _, _, _ = _setup(tmp_path, State.of([_cluster()]))
        cluster = _cluster()
        cluster.spec.worker_pools = [WorkerPoolSpec(name="general", desired_size=3)]

        report = detector.detect_drift(State.of([cluster]))
        assert [(d.resource.id, d.drift_type) for d in report.drifts] == [
            ("c1/general", DriftType.RESOURCE_DELETED),
        ]
        assert report.drifts[0].severity == Severity.HIGH
        assert "c1/general" in report.desired.node_pools

    def test_explicit_pool_wins_over_inline(self, tmp_path: Path) -> None:
        detector, _, desired, _ = _setup(tmp_path)
        desired = desired.copy_deep()
        desired.clusters["c1"].spec.worker_pools = [
            WorkerPoolSpec(name="general", desired_size=4),
        ]
        assert not detector.detect_drift(desired).has_drift

    def test_severity_override(self, tmp_path: Path) -> None:
        detector, provider, desired, _ = _setup(tmp_path)
        detector = DriftDetector(
            detector.engine,
            severities={(ResourceKind.CLUSTER, DriftType.VERSION_SKEW): Severity.LOW},
        )
        provider.set_cluster_version("c1", "1.28")
        assert detector.detect_drift(desired).drifts[0].severity == Severity.LOW

    def test_unregistered_provider_skipped(self, tmp_path: Path) -> None:
        detector, _, _, _ = _setup(tmp_path)
        desired = State.of([_cluster("c9", provider="aws")])
        report = detector.detect_drift(desired)
        assert not report.has_drift
        assert report.skipped_providers == ["aws"]

    def test_failing_provider_skipped(self, tmp_path: Path) -> None:
        detector, provider, desired, _ = _setup(tmp_path)
        provider.inject_failure("get_cluster")
        report = detector.detect_drift(desired)
        assert not report.has_drift
        assert report.skipped_providers == ["local"]

    def test_does_not_touch_persisted_state(self, tmp_path: Path) -> None:
        detector, provider, desired, _ = _setup(tmp_path)
        before = detector.engine.state.get_state()
        provider.set_cluster_version("c1", "1.28")
        detector.detect_drift(desired)
        assert detector.engine.state.get_state() == before


# --- Remediation ---


class TestRemediate:
    def test_version_skew_remediated(self, tmp_path: Path) -> None:
        detector, provider, desired, _ = _setup(tmp_path)
        provider.set_cluster_version("c1", "1.28")

        result = detector.remediate(detector.detect_drift(desired))
        assert result.success
        assert result.remediated == 1
        assert not detector.detect_drift(desired).has_drift

    def test_deleted_cluster_recreated(self, tmp_path: Path) -> None:
        detector, provider, desired, _ = _setup(tmp_path)
        provider.remove_cluster("c1")

        result = detector.remediate(detector.detect_drift(desired))
        assert result.remediated == 1
        assert provider.get_cluster("c1") is not None
        assert not detector.detect_drift(desired).has_drift

    def test_deleted_cluster_recreated_with_its_pools(self, tmp_path: Path) -> None:
        detector, provider, desired, _ = _setup(tmp_path)
        provider.delete_cluster("c1")

        result = detector.remediate(detector.detect_drift(desired))
        assert result.success
        assert result.remediated == 1

        live = provider.get_cluster("c1")
        assert live.spec.worker_pool("general").desired_size == 2
        assert detector.engine.plan(desired).is_empty()
        assert not detector.detect_drift(desired).has_drift

        persisted = detector.engine.state.get_state()
        assert persisted.node_pools["c1/general"].status.phase == Phase.RUNNING

    def test_deleted_inline_cluster_recreated_with_its_pools(self, tmp_path: Path) -> None:
        cluster = _cluster()
        cluster.spec.worker_pools = [WorkerPoolSpec(name="general", desired_size=3)]
        desired = State.of([cluster])
        detector, provider, _, _ = _setup(tmp_path, desired)
        provider.delete_cluster("c1")

        result = detector.remediate(detector.detect_drift(desired))
        assert result.remediated == 1
        assert provider.get_cluster("c1").spec.worker_pool("general").desired_size == 3
        assert not detector.detect_drift(desired).has_drift

    def test_scale_and_missing_pool_remediated(self, tmp_path: Path) -> None:
        desired = _desired("c1", "c2")
        detector, provider, _, _ = _setup(tmp_path, desired)
        provider.scale_node_pool("c1/general", 5)
        provider.remove_node_pool("c2/general")

        result = detector.remediate(detector.detect_drift(desired))
        assert result.remediated == 2
        assert not detector.detect_drift(desired).has_drift

    def test_per_item_failure_does_not_stop_others(self, tmp_path: Path) -> None:
        desired = _desired("c1", "c2")
        detector, provider, _, _ = _setup(tmp_path, desired)
        provider.set_cluster_version("c1", "1.28")
        provider.set_cluster_version("c2", "1.28")
        provider.inject_failure("update_cluster", resource_id="c1")

        result = detector.remediate(detector.detect_drift(desired))
        assert not result.success
        assert result.remediated == 1
        assert [o.drift.resource.id for o in result.failed] == ["c1"]
        assert "Injected failure" in result.failed[0].error

        remaining = detector.detect_drift(desired)
        assert [d.resource.id for d in remaining.drifts] == ["c1"]

    def test_non_remediatable_skipped(self, tmp_path: Path) -> None:
        detector, provider, _, _ = _setup(tmp_path)
        calls = len(provider.calls)
        result = detector.remediate(_report([_manual_drift()]))
        assert result.skipped == 1
        assert result.outcomes[0].status == RemediationStatus.SKIPPED
        assert len(provider.calls) == calls

    def test_missing_desired_resource_fails_item(self, tmp_path: Path) -> None:
        detector, _, _, _ = _setup(tmp_path)
        drift = _manual_drift("ghost", DriftType.VERSION_SKEW, remediatable=True)
        result = detector.remediate(_report([drift]))
        assert [o.status for o in result.outcomes] == [RemediationStatus.FAILED]
        assert "not in the desired state" in result.outcomes[0].error

    def test_snapshot_taken_before_remediation(self, tmp_path: Path) -> None:
        detector, provider, desired, snapshots = _setup(tmp_path, with_snapshots=True)
        provider.set_cluster_version("c1", "1.28")
        detector.remediate(detector.detect_drift(desired))

        infos = snapshots.list_snapshots()
        assert len(infos) == 1
        assert infos[0].trigger_reason == TriggerReason.DRIFT_REMEDIATE

    def test_no_snapshot_without_actionable_drift(self, tmp_path: Path) -> None:
        detector, _, _, snapshots = _setup(tmp_path, with_snapshots=True)
        detector.remediate(_report([_manual_drift()]))
        assert snapshots.list_snapshots() == []


# --- Watch ---


class TestWatch:
    def test_reports_until_stopped(self, tmp_path: Path) -> None:
        detector, provider, desired, _ = _setup(tmp_path)
        provider.set_cluster_version("c1", "1.28")
        stop = threading.Event()
        reports: list[DriftReport] = []

        def on_report(report: DriftReport) -> None:
            reports.append(report)
            stop.set()

        detector.watch(lambda: desired, 0, stop, on_report=on_report, auto_remediate=True)
        assert len(reports) == 1
        assert reports[0].has_drift
        assert not detector.detect_drift(desired).has_drift

    def test_cycle_errors_are_logged(self, tmp_path: Path) -> None:
        detector, _, _, _ = _setup(tmp_path)
        stop = threading.Event()
        attempts: list[int] = []

        def source() -> State:
            attempts.append(1)
            if len(attempts) >= 2:
                stop.set()
            raise ConfigError("bad desired state")

        detector.watch(source, 0, stop)
        assert len(attempts) == 2


# --- Formatting ---


class TestFormatting:
    def test_no_drift(self, tmp_path: Path) -> None:
        detector, _, desired, _ = _setup(tmp_path)
        text = format_report(detector.detect_drift(desired))
        assert "No drift detected" in text

    def test_drift_details(self, tmp_path: Path) -> None:
        detector, provider, desired, _ = _setup(tmp_path)
        provider.set_cluster_version("c1", "1.28")
        text = format_report(detector.detect_drift(desired))
        assert "Drift Detected at" in text
        assert "Total: 1 (Critical: 0, High: 1, Medium: 0, Low: 0)" in text
        assert "[HIGH] version_skew Cluster/c1" in text
        assert "Expected: 1.29" in text
        assert "Actual:   1.28" in text

    def test_skipped_providers_listed(self, tmp_path: Path) -> None:
        detector, _, _, _ = _setup(tmp_path)
        text = format_report(detector.detect_drift(State.of([_cluster(provider="gcp")])))
        assert "Skipped providers: gcp" in text

    def test_remediation_summary(self, tmp_path: Path) -> None:
        detector, _, _, _ = _setup(tmp_path)
        drift = _manual_drift("ghost", DriftType.VERSION_SKEW, remediatable=True)
        text = format_remediation(detector.remediate(_report([drift, _manual_drift()])))
        assert "Remediated: 0, Failed: 1, Skipped: 1" in text
        assert "FAILED local:Cluster/ghost" in text
