"""Drift detector: compares desired state against live provider state.

Detection never reads the persisted state: the point is to catch changes
made out-of-band, so every cluster is queried from its provider directly.
Detection is best-effort per provider; a provider whose queries fail is
logged and skipped for that run.

Remediation is best-effort per drift item. Each remediatable item becomes
a small plan applied through the reconciliation engine while holding the
state lock. A deleted cluster is recreated together with its desired node
pools. The result lists the outcome of every item.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from provctl.errors import ProvctlError, RemediationError
from provctl.models import (
    Action,
    ActionType,
    Cluster,
    CreateClusterPayload,
    CreateNodePoolPayload,
    DriftReport,
    DriftSummary,
    DriftType,
    NodePool,
    Plan,
    RemediationOutcome,
    RemediationResult,
    RemediationStatus,
    ResourceDrift,
    ResourceKind,
    Severity,
    State,
    TriggerReason,
    UpdateClusterPayload,
    UpdateNodePoolPayload,
)
from provctl.state.store import locked

if TYPE_CHECKING:
    from provctl.engine.engine import Engine
    from provctl.snapshot.manager import SnapshotManager

logger = logging.getLogger(__name__)

# Severity is fixed per (kind, drift type), not computed from magnitude.
DEFAULT_SEVERITY: dict[tuple[ResourceKind, DriftType], Severity] = {
    (ResourceKind.CLUSTER, DriftType.RESOURCE_DELETED): Severity.CRITICAL,
    (ResourceKind.CLUSTER, DriftType.VERSION_SKEW): Severity.HIGH,
    (ResourceKind.NODE_POOL, DriftType.RESOURCE_DELETED): Severity.HIGH,
    (ResourceKind.NODE_POOL, DriftType.SCALE_CHANGE): Severity.MEDIUM,
}


class DriftDetector:
    """Detects and remediates drift for the providers registered on an engine."""

    def __init__(
        self,
        engine: Engine,
        snapshots: SnapshotManager | None = None,
        severities: dict[tuple[ResourceKind, DriftType], Severity] | None = None,
        lock_timeout: float | None = None,
    ) -> None:
        self._engine = engine
        self._snapshots = snapshots
        self._severities = {**DEFAULT_SEVERITY, **(severities or {})}
        self._lock_timeout = lock_timeout

    @property
    def engine(self) -> Engine:
        return self._engine

    def detect_drift(self, desired: State) -> DriftReport:
        """Query every provider named by a desired cluster and classify differences."""
        logger.info("Starting drift detection for %d cluster(s)", len(desired.clusters))
        desired = desired.with_worker_pools()

        by_provider: dict[str, list[Cluster]] = {}
        for cid in sorted(desired.clusters):
            cluster = desired.clusters[cid]
            by_provider.setdefault(cluster.spec.provider, []).append(cluster)

        drifts: list[ResourceDrift] = []
        skipped: list[str] = []
        for name in sorted(by_provider):
            clusters = by_provider[name]
            if name not in self._engine.registry:
                logger.error("Skipping drift detection for unregistered provider %r", name)
                skipped.append(name)
                continue

            provider = self._engine.registry.resolve(name)
            try:
                live = {c.id: provider.get_cluster(c.id) for c in clusters}
            except Exception:
                logger.exception("Failed to query provider %r, skipping its resources", name)
                skipped.append(name)
                continue

            for cluster in clusters:
                drifts.extend(self._compare_cluster(desired, cluster, live[cluster.id]))

        report = DriftReport(
            detected_at=datetime.now(tz=UTC),
            has_drift=len(drifts) > 0,
            drifts=drifts,
            summary=DriftSummary.from_drifts(drifts),
            skipped_providers=skipped,
            desired=desired,
        )
        logger.info(
            "Drift detection complete: %d drift(s), %d remediatable, %d provider(s) skipped",
            report.summary.total_drifts, report.summary.remediable_count, len(skipped),
        )
        return report

    def _compare_cluster(
        self,
        desired: State,
        cluster: Cluster,
        live: Cluster | None,
    ) -> list[ResourceDrift]:
        rid = cluster.resource_id
        if live is None:
            return [self._drift(
                rid.kind, rid, DriftType.RESOURCE_DELETED, "cluster", "exists", "deleted",
            )]

        drifts: list[ResourceDrift] = []
        want_version = cluster.spec.control_plane.version
        have_version = live.spec.control_plane.version
        if want_version != have_version:
            drifts.append(self._drift(
                rid.kind, rid, DriftType.VERSION_SKEW,
                "controlPlane.version", want_version, have_version,
            ))

        for pool in desired.pools_for(cluster.id):
            pid = desired.pool_resource_id(pool)
            live_pool = live.spec.worker_pool(pool.spec.name)
            if live_pool is None:
                drifts.append(self._drift(
                    pid.kind, pid, DriftType.RESOURCE_DELETED, "nodePool", pool.spec.name, None,
                ))
            elif live_pool.desired_size != pool.spec.desired_size:
                drifts.append(self._drift(
                    pid.kind, pid, DriftType.SCALE_CHANGE,
                    "desiredSize", pool.spec.desired_size, live_pool.desired_size,
                ))
        return drifts

    def _drift(self, kind, resource, drift_type, field, expected, actual) -> ResourceDrift:
        return ResourceDrift(
            resource=resource,
            drift_type=drift_type,
            field=field,
            expected=expected,
            actual=actual,
            severity=self._severities.get((kind, drift_type), Severity.LOW),
            remediatable=drift_type in _REMEDIATIONS,
        )

    # --- Remediation ---

    def remediate(self, report: DriftReport) -> RemediationResult:
        """Resolve every remediatable drift in *report*, one item at a time.

        Never raises for a per-item failure; failing items are returned
        with status ``failed`` and the error that stopped them.
        """
        result = RemediationResult()
        actionable = [d for d in report.drifts if d.remediatable]
        logger.info(
            "Starting remediation: %d of %d drift(s) remediatable",
            len(actionable), len(report.drifts),
        )

        if actionable and self._snapshots is not None:
            self._snapshots.create_snapshot(
                "Automatic backup before drift remediation",
                TriggerReason.DRIFT_REMEDIATE,
            )

        for drift in report.drifts:
            if not drift.remediatable:
                logger.warning(
                    "Drift %s on %s (%s) is not remediatable, leaving it untouched",
                    drift.drift_type, drift.resource, drift.field,
                )
                result.outcomes.append(
                    RemediationOutcome(drift=drift, status=RemediationStatus.SKIPPED)
                )
                continue

            try:
                self._remediate_one(report.desired, drift)
            except RemediationError as exc:
                logger.error("Remediation failed for %s: %s", drift.resource, exc)
                result.outcomes.append(RemediationOutcome(
                    drift=drift, status=RemediationStatus.FAILED, error=str(exc),
                ))
                continue

            result.outcomes.append(
                RemediationOutcome(drift=drift, status=RemediationStatus.REMEDIATED)
            )

        logger.info(
            "Remediation complete: %d remediated, %d failed, %d skipped",
            result.remediated, len(result.failed), result.skipped,
        )
        return result

    def _remediate_one(self, desired: State, drift: ResourceDrift) -> None:
        build = _REMEDIATIONS.get(drift.drift_type)
        if build is None:
            raise RemediationError(
                f"No remediation for {drift.drift_type.value} drift", resource=drift.resource,
            )
        actions = build(desired, drift)
        try:
            with locked(self._engine.state, self._lock_timeout):
                self._engine.apply(Plan(actions=actions))
        except ProvctlError as exc:
            raise RemediationError(
                f"Failed to remediate {drift.drift_type.value}", resource=drift.resource, cause=exc,
            ) from exc

    def watch(
        self,
        desired_source: Callable[[], State],
        interval: float,
        stop_event: threading.Event,
        on_report: Callable[[DriftReport], object] | None = None,
        auto_remediate: bool = False,
    ) -> None:
        """Detect drift every *interval* seconds until *stop_event* is set."""
        while not stop_event.is_set():
            try:
                report = self.detect_drift(desired_source())
                if on_report is not None:
                    on_report(report)
                if auto_remediate and report.summary.remediable_count:
                    self.remediate(report)
            except ProvctlError:
                logger.exception("Drift watch cycle failed")
            stop_event.wait(interval)


def _desired_cluster(desired: State, drift: ResourceDrift) -> Cluster:
    cluster = desired.clusters.get(drift.resource.id)
    if cluster is None:
        raise RemediationError("Cluster is not in the desired state", resource=drift.resource)
    return cluster


def _desired_pool(desired: State, drift: ResourceDrift) -> NodePool:
    pool = desired.node_pools.get(drift.resource.id)
    if pool is None:
        raise RemediationError("Node pool is not in the desired state", resource=drift.resource)
    return pool


def _recreate(desired: State, drift: ResourceDrift) -> list[Action]:
    if drift.resource.kind != ResourceKind.CLUSTER:
        pool = _desired_pool(desired, drift)
        return [Action(
            type=ActionType.CREATE,
            resource=drift.resource,
            payload=CreateNodePoolPayload(node_pool=pool),
        )]

    # A deleted cluster takes its node pools with it.
    cluster = _desired_cluster(desired, drift)
    actions = [Action(
        type=ActionType.CREATE,
        resource=drift.resource,
        payload=CreateClusterPayload(cluster=cluster),
    )]
    for pool in desired.pools_for(cluster.id):
        actions.append(Action(
            type=ActionType.CREATE,
            resource=desired.pool_resource_id(pool),
            payload=CreateNodePoolPayload(node_pool=pool),
        ))
    return actions


def _update(desired: State, drift: ResourceDrift) -> list[Action]:
    if drift.resource.kind == ResourceKind.CLUSTER:
        payload: object = UpdateClusterPayload(
            cluster=_desired_cluster(desired, drift), changed_fields=[drift.field],
        )
    else:
        payload = UpdateNodePoolPayload(
            node_pool=_desired_pool(desired, drift), changed_fields=[drift.field],
        )
    return [Action(type=ActionType.UPDATE, resource=drift.resource, payload=payload)]


_REMEDIATIONS: dict[DriftType, Callable[[State, ResourceDrift], list[Action]]] = {
    DriftType.RESOURCE_DELETED: _recreate,
    DriftType.VERSION_SKEW: _update,
    DriftType.SCALE_CHANGE: _update,
}


def format_report(report: DriftReport) -> str:
    """Render a drift report as human-readable text."""
    if not report.has_drift:
        lines = ["No drift detected. Infrastructure matches the desired state."]
        if report.skipped_providers:
            lines.append(f"Skipped providers: {', '.join(report.skipped_providers)}")
        return "\n".join(lines)

    s = report.summary
    lines = [
        f"Drift Detected at {report.detected_at.strftime('%Y-%m-%d %H:%M:%S')} UTC",
        "",
        f"Total: {s.total_drifts} (Critical: {s.critical_count}, High: {s.high_count}, "
        f"Medium: {s.medium_count}, Low: {s.low_count})",
        f"Remediatable: {s.remediable_count}",
    ]
    if report.skipped_providers:
        lines.append(f"Skipped providers: {', '.join(report.skipped_providers)}")

    for drift in report.drifts:
        lines.append("")
        lines.append(
            f"[{drift.severity.value.upper()}] {drift.drift_type.value} "
            f"{drift.resource.kind.value}/{drift.resource.id}"
        )
        lines.append(f"  Field:    {drift.field}")
        lines.append(f"  Expected: {drift.expected}")
        lines.append(f"  Actual:   {drift.actual}")
    return "\n".join(lines)


def format_remediation(result: RemediationResult) -> str:
    """Render a remediation result as human-readable text."""
    lines = [
        f"Remediated: {result.remediated}, "
        f"Failed: {len(result.failed)}, Skipped: {result.skipped}",
    ]
    for outcome in result.failed:
        lines.append(f"  FAILED {outcome.drift.resource}: {outcome.error}")
    return "\n".join(lines)
