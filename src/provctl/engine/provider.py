"""CloudProvider protocol.

The engine depends on providers purely as a capability interface. Any
object with these methods satisfies the protocol; no inheritance required.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from provctl.models import Cluster, NodePool, Plan, State


@runtime_checkable
class CloudProvider(Protocol):
    """Protocol for per-cloud provisioning backends.

    Resource ids are assigned by the caller and must be kept stable by the
    provider, so that re-applying a plan resolves to an update rather than
    a duplicate create.
    """

    @property
    def name(self) -> str:
        """Registry key, matched against ``ClusterSpec.provider``."""
        ...

    def create_cluster(self, cluster: Cluster) -> Cluster:
        """Create a cluster and return it as the provider now sees it."""
        ...

    def update_cluster(self, cluster: Cluster) -> Cluster:
        """Converge an existing cluster onto ``cluster.spec``."""
        ...

    def delete_cluster(self, cluster_id: str) -> None: ...

    def get_cluster(self, cluster_id: str) -> Cluster | None:
        """Live view of a cluster, or None if it does not exist.

        The returned spec's ``worker_pools`` reflect the live node pools.
        """
        ...

    def create_node_pool(self, pool: NodePool) -> NodePool: ...

    def update_node_pool(self, pool: NodePool) -> NodePool: ...

    def delete_node_pool(self, cluster_id: str, pool_id: str) -> None: ...

    def reconcile(self, desired: State, actual: State) -> Plan:
        """Plan the changes this provider would make for its own resources."""
        ...
