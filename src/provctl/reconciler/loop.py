"""Reconciler: the periodic driver for plan+apply cycles.

One cycle runs to completion before the next is eligible, so cycles never
overlap. Stopping is observed between cycles only; an in-flight apply
always finishes first.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

from provctl.errors import ProvctlError
from provctl.models import ApplyResult, DriftReport, Plan, State, TriggerReason

if TYPE_CHECKING:
    from provctl.drift.detector import DriftDetector
    from provctl.engine.engine import Engine
    from provctl.snapshot.manager import SnapshotManager

logger = logging.getLogger(__name__)


class Reconciler:
    """Drives the engine toward a desired state on a fixed interval.

    Args:
        engine: Engine that plans and applies.
        desired_source: Called at the start of every cycle to fetch the
            desired state, so edits to its source are picked up.
        interval: Seconds to wait between cycles.
        snapshots: If set, a ``pre_apply`` snapshot is taken before any
            cycle that has changes to apply.
        detector: If set, a drift pass runs after every cycle.
        auto_remediate: Remediate drift found by the drift pass.
    """

    def __init__(
        self,
        engine: Engine,
        desired_source: Callable[[], State],
        interval: float = 60.0,
        snapshots: SnapshotManager | None = None,
        detector: DriftDetector | None = None,
        auto_remediate: bool = False,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._engine = engine
        self._desired_source = desired_source
        self._interval = interval
        self._snapshots = snapshots
        self._detector = detector
        self._auto_remediate = auto_remediate
        self._cycle_lock = threading.Lock()
        self.cycles = 0
        self.failures = 0

    def reconcile_once(self) -> ApplyResult:
        """Run one plan+apply cycle under the state lock."""
        with self._cycle_lock:
            desired = self._desired_source()
            result = self._engine.plan_and_apply(desired, before_apply=self._snapshot)
            self.cycles += 1
            if result.applied:
                logger.info("Reconcile cycle applied %d action(s)", result.applied)

            if self._detector is not None:
                self._drift_pass(desired)
            return result

    def _snapshot(self, plan: Plan) -> None:
        if self._snapshots is None:
            return
        self._snapshots.create_snapshot(
            f"Automatic backup before applying {len(plan)} action(s)",
            TriggerReason.PRE_APPLY,
        )

    def _drift_pass(self, desired: State) -> DriftReport:
        assert self._detector is not None
        report = self._detector.detect_drift(desired)
        if report.has_drift:
            logger.warning("Drift detected: %d item(s)", report.summary.total_drifts)
            if self._auto_remediate:
                self._detector.remediate(report)
        return report

    def run(self, stop_event: threading.Event) -> None:
        """Run cycles until *stop_event* is set. Cycle errors are logged, not raised."""
        logger.info("Reconciler started, interval %.1fs", self._interval)
        while not stop_event.is_set():
            try:
                self.reconcile_once()
            except ProvctlError:
                self.failures += 1
                logger.exception("Reconcile cycle failed")
            stop_event.wait(self._interval)
        logger.info("Reconciler stopped after %d cycle(s)", self.cycles)
