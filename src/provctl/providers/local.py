"""LocalProvider: an in-process simulated cloud.

Keeps clusters and node pools in memory, optionally persisted to a JSON
file so that separate CLI invocations see the same "cloud". Used for dry
runs, demos and tests.

Creates are idempotent on the resource id: creating a resource that
already exists converges it onto the requested spec instead of failing,
so re-applying a partially applied plan is safe. Deletes of missing
resources are no-ops.

Out-of-band helpers (``set_cluster_version``, ``scale_node_pool``,
``remove_cluster``, ``remove_node_pool``) mutate the simulated cloud
behind the engine's back, which is what drift detection exists to catch.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from pydantic import ValidationError

from provctl.models import Cluster, NodePool, Plan, State
from provctl.planner.planner import generate_plan

logger = logging.getLogger(__name__)


class LocalProviderError(Exception):
    """Raised for simulated cloud failures and injected faults."""


class LocalProvider:
    """File-backed simulated cloud provider."""

    def __init__(self, name: str = "local", path: str | Path | None = None) -> None:
        self._name = name
        self._path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._faults: dict[tuple[str, str | None], Exception] = {}
        self.calls: list[tuple[str, str]] = []
        self._cloud = self._load()

    @property
    def name(self) -> str:
        return self._name

    @property
    def path(self) -> Path | None:
        return self._path

    # --- Persistence ---

    def _load(self) -> State:
        if self._path is None or not self._path.exists():
            return State()
        try:
            return State.model_validate_json(self._path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            raise LocalProviderError(f"Corrupt local cloud file {self._path}: {exc}") from exc

    def _save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(f".{self._path.name}.tmp")
        tmp.write_text(self._cloud.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(self._path)

    # --- Fault injection ---

    def inject_failure(
        self,
        operation: str,
        error: Exception | None = None,
        resource_id: str | None = None,
    ) -> None:
        """Make *operation* raise, for every resource or only *resource_id*."""
        self._faults[(operation, resource_id)] = error or LocalProviderError(
            f"Injected failure in {operation}"
        )

    def clear_failures(self) -> None:
        self._faults.clear()

    def _call(self, operation: str, resource_id: str) -> None:
        self.calls.append((operation, resource_id))
        fault = self._faults.get((operation, resource_id)) or self._faults.get((operation, None))
        if fault is not None:
            raise fault

    # --- Clusters ---

    def create_cluster(self, cluster: Cluster) -> Cluster:
        with self._lock:
            self._call("create_cluster", cluster.id)
            if cluster.id in self._cloud.clusters:
                logger.debug("Cluster %s already exists, converging", cluster.id)
            self._cloud.clusters[cluster.id] = cluster.model_copy(deep=True)
            self._save()
            return cluster.model_copy(deep=True)

    def update_cluster(self, cluster: Cluster) -> Cluster:
        with self._lock:
            self._call("update_cluster", cluster.id)
            if cluster.id not in self._cloud.clusters:
                raise LocalProviderError(f"Cluster {cluster.id} does not exist")
            self._cloud.clusters[cluster.id] = cluster.model_copy(deep=True)
            self._save()
            return cluster.model_copy(deep=True)

    def delete_cluster(self, cluster_id: str) -> None:
        with self._lock:
            self._call("delete_cluster", cluster_id)
            self._cloud.clusters.pop(cluster_id, None)
            for pid in [p.id for p in self._cloud.pools_for(cluster_id)]:
                del self._cloud.node_pools[pid]
            self._save()

    def get_cluster(self, cluster_id: str) -> Cluster | None:
        with self._lock:
            self._call("get_cluster", cluster_id)
            cluster = self._cloud.clusters.get(cluster_id)
            if cluster is None:
                return None
            live = cluster.model_copy(deep=True)
            live.spec.worker_pools = [
                p.spec.model_copy(deep=True) for p in self._cloud.pools_for(cluster_id)
            ]
            return live

    def list_clusters(self) -> list[Cluster]:
        with self._lock:
            return [self._cloud.clusters[cid].model_copy(deep=True)
                    for cid in sorted(self._cloud.clusters)]

    # --- Node pools ---

    def create_node_pool(self, pool: NodePool) -> NodePool:
        with self._lock:
            self._call("create_node_pool", pool.id)
            if pool.cluster_id not in self._cloud.clusters:
                raise LocalProviderError(
                    f"Cannot create node pool {pool.id}: cluster {pool.cluster_id} does not exist"
                )
            self._cloud.node_pools[pool.id] = pool.model_copy(deep=True)
            self._save()
            return pool.model_copy(deep=True)

    def update_node_pool(self, pool: NodePool) -> NodePool:
        with self._lock:
            self._call("update_node_pool", pool.id)
            if pool.id not in self._cloud.node_pools:
                raise LocalProviderError(f"Node pool {pool.id} does not exist")
            self._cloud.node_pools[pool.id] = pool.model_copy(deep=True)
            self._save()
            return pool.model_copy(deep=True)

    def delete_node_pool(self, cluster_id: str, pool_id: str) -> None:
        with self._lock:
            self._call("delete_node_pool", pool_id)
            self._cloud.node_pools.pop(pool_id, None)
            self._save()

    # --- Planning ---

    def reconcile(self, desired: State, actual: State) -> Plan:
        """Plan changes for the resources this provider owns."""
        return generate_plan(self._owned(desired), self._owned(actual))

    def _owned(self, state: State) -> State:
        clusters = [c for c in state.clusters.values() if c.spec.provider == self._name]
        pools = [p for p in state.node_pools.values() if state.pool_provider(p) == self._name]
        return State.of(clusters, pools)

    # --- Out-of-band changes ---

    def set_cluster_version(self, cluster_id: str, version: str) -> None:
        with self._lock:
            self._cloud.clusters[cluster_id].spec.control_plane.version = version
            self._save()

    def scale_node_pool(self, pool_id: str, desired_size: int) -> None:
        with self._lock:
            self._cloud.node_pools[pool_id].spec.desired_size = desired_size
            self._save()

    def remove_cluster(self, cluster_id: str) -> None:
        with self._lock:
            self._cloud.clusters.pop(cluster_id, None)
            for pid in [p.id for p in self._cloud.pools_for(cluster_id)]:
                del self._cloud.node_pools[pid]
            self._save()

    def remove_node_pool(self, pool_id: str) -> None:
        with self._lock:
            self._cloud.node_pools.pop(pool_id, None)
            self._save()
