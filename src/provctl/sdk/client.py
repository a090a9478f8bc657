"""Provctl SDK: the single public entry point.

Wires together every internal component (state store, event log, provider
registry, engine, snapshot manager, drift detector) behind one class.

Usage::

    from provctl import Provctl, load_desired_state

    ctl = Provctl(
        state_db="./provctl.db",
        event_log="./events.jsonl",
        snapshot_dir="./snapshots",
        providers={"local": {"type": "local", "path": "./local-cloud.json"}},
    )
    result = ctl.apply(load_desired_state("./clusters.yaml"))
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

from provctl.config import ProvctlConfig, ProviderConfig
from provctl.drift.detector import DriftDetector
from provctl.engine.engine import Engine
from provctl.engine.provider import CloudProvider
from provctl.engine.registry import ProviderRegistry
from provctl.errors import ConfigError
from provctl.events.log import EventLog
from provctl.models import (
    ApplyResult,
    DriftReport,
    Plan,
    RemediationResult,
    RetentionPolicy,
    State,
    TriggerReason,
)
from provctl.providers.aws import AwsEksProvider
from provctl.providers.local import LocalProvider
from provctl.reconciler.loop import Reconciler
from provctl.snapshot.manager import SnapshotManager
from provctl.state.store import SQLiteStateManager, locked

_AWS_OPTIONS = ("region", "profile", "endpoint_url", "role_arn", "node_role_arn", "subnet_ids")


def build_provider(config: ProviderConfig) -> CloudProvider:
    """Construct a provider from one ``providers`` config entry."""
    if config.type == "local":
        return LocalProvider(name=config.name, path=config.options.get("path"))
    if config.type == "aws":
        unknown = set(config.options) - set(_AWS_OPTIONS)
        if unknown:
            raise ConfigError(
                f"Unknown options for aws provider {config.name!r}: {', '.join(sorted(unknown))}"
            )
        return AwsEksProvider(name=config.name, **config.options)
    raise ConfigError(f"Unknown provider type {config.type!r} for provider {config.name!r}")


def build_providers(
    providers: list[CloudProvider] | dict[str, dict[str, Any]] | None,
) -> list[CloudProvider]:
    """Accept provider instances, or a name -> options mapping to build from."""
    if providers is None:
        return []
    if isinstance(providers, dict):
        built: list[CloudProvider] = []
        for name, options in sorted(providers.items()):
            options = dict(options or {})
            ptype = options.pop("type", "local")
            built.append(build_provider(ProviderConfig(name=name, type=ptype, options=options)))
        return built
    return list(providers)


class Provctl:
    """Public API for provctl.

    Opens the persisted state and event log, registers providers and
    exposes plan/apply, drift and snapshot operations.
    """

    def __init__(
        self,
        state_db: str | Path,
        event_log: str | Path,
        snapshot_dir: str | Path,
        providers: list[CloudProvider] | dict[str, dict[str, Any]] | None = None,
        actor: str = "provctl",
        retention: RetentionPolicy | None = None,
        snapshot_before_apply: bool = True,
    ) -> None:
        self.state = SQLiteStateManager(state_db)
        self.events = EventLog(event_log)
        self.registry = ProviderRegistry(build_providers(providers))
        self.engine = Engine(self.state, self.events, self.registry, actor=actor)
        self.snapshots = SnapshotManager(snapshot_dir, self.state, created_by=actor)
        self.detector = DriftDetector(self.engine, snapshots=self.snapshots)
        self.retention = retention or RetentionPolicy()
        self._snapshot_before_apply = snapshot_before_apply

    @classmethod
    def from_config(cls, config: ProvctlConfig) -> Provctl:
        return cls(
            state_db=config.state_db,
            event_log=config.event_log,
            snapshot_dir=config.snapshot_dir,
            providers=[build_provider(p) for p in config.provider_configs()],
            actor=config.actor,
            retention=config.retention,
            snapshot_before_apply=config.snapshot_before_apply,
        )

    # --- Plan / apply ---

    def plan(self, desired: State) -> Plan:
        return self.engine.plan(desired)

    def apply(self, desired: State) -> ApplyResult:
        """Converge the persisted state and the clouds onto *desired*."""
        return self.engine.plan_and_apply(desired, before_apply=self._before_apply)

    def create(self, resources: State) -> ApplyResult:
        """Add or update *resources* without touching anything else."""
        with locked(self.state):
            desired = self._persisted_desired()
            desired.clusters.update(resources.clusters)
            desired.node_pools.update(resources.node_pools)
            return self.apply(desired)

    def delete(self, cluster_ids: list[str]) -> ApplyResult:
        """Delete clusters, and their node pools, by id."""
        with locked(self.state):
            desired = self._persisted_desired()
            missing = [cid for cid in cluster_ids if cid not in desired.clusters]
            if missing:
                raise ConfigError(f"Unknown cluster id(s): {', '.join(missing)}")
            for cid in cluster_ids:
                for pool in desired.pools_for(cid):
                    del desired.node_pools[pool.id]
                del desired.clusters[cid]
            return self.apply(desired)

    def _persisted_desired(self) -> State:
        """The persisted state as a desired state.

        Its node pools are authoritative. Inline worker pool lists on the
        persisted clusters can be stale, so they are dropped before planning.
        """
        desired = self.state.get_state()
        for cluster in desired.clusters.values():
            cluster.spec.worker_pools = []
        return desired

    def _before_apply(self, plan: Plan) -> None:
        if not self._snapshot_before_apply:
            return
        trigger = TriggerReason.PRE_DELETE if plan.deletes else TriggerReason.PRE_APPLY
        self.snapshots.create_snapshot(
            f"Automatic backup before applying {len(plan)} action(s)", trigger,
        )

    # --- Drift ---

    def detect_drift(self, desired: State) -> DriftReport:
        return self.detector.detect_drift(desired)

    def remediate(self, report: DriftReport) -> RemediationResult:
        return self.detector.remediate(report)

    # --- Snapshots ---

    def prune_snapshots(self, policy: RetentionPolicy | None = None) -> list[str]:
        return self.snapshots.prune_snapshots(policy or self.retention)

    # --- Reconciler ---

    def reconciler(
        self,
        desired_source: Callable[[], State],
        interval: float = 60.0,
        auto_remediate: bool = False,
        detect_drift: bool = False,
    ) -> Reconciler:
        return Reconciler(
            self.engine,
            desired_source,
            interval=interval,
            snapshots=self.snapshots if self._snapshot_before_apply else None,
            detector=self.detector if detect_drift else None,
            auto_remediate=auto_remediate,
        )

    def close(self) -> None:
        self.state.close()
