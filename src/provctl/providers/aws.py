"""AwsEksProvider: provisions clusters and node pools on Amazon EKS via boto3.

Clusters map onto EKS clusters named by the cluster id; node pools map onto
EKS managed node groups named by the pool's spec name. Falls back to
boto3's default credential chain unless a profile is given.

Requires: ``pip install provctl[aws]``
"""

from __future__ import annotations

import logging
from typing import Any

from provctl.models import (
    Cluster,
    ClusterSpec,
    ControlPlaneSpec,
    NodePool,
    Plan,
    SpotConfig,
    State,
    Taint,
    WorkerPoolSpec,
)
from provctl.planner.planner import generate_plan

logger = logging.getLogger(__name__)


def _check_boto3_available() -> None:
    """Raise ImportError with helpful message if boto3 is not installed."""
    try:
        import boto3  # noqa: F401
    except ImportError:
        raise ImportError(
            "The 'boto3' package is required for AwsEksProvider. "
            "Install it with: pip install provctl[aws]"
        ) from None


# Kubernetes taint effect -> EKS API enum.
_TAINT_EFFECTS: dict[str, str] = {
    "NoSchedule": "NO_SCHEDULE",
    "PreferNoSchedule": "PREFER_NO_SCHEDULE",
    "NoExecute": "NO_EXECUTE",
}
_TAINT_EFFECTS_REVERSE = {v: k for k, v in _TAINT_EFFECTS.items()}


def _is_not_found(exc: Exception) -> bool:
    response = getattr(exc, "response", None) or {}
    return response.get("Error", {}).get("Code") == "ResourceNotFoundException"


def nodegroup_name(pool_id: str) -> str:
    """EKS node group name for a node pool id of the form ``<cluster>/<pool>``."""
    return pool_id.rsplit("/", 1)[-1]


class AwsEksProvider:
    """CloudProvider backed by the EKS API.

    Pass ``client`` to use a pre-built EKS client (tests inject a mock);
    otherwise one is created lazily from a boto3 session.
    """

    def __init__(
        self,
        name: str = "aws",
        region: str | None = None,
        profile: str | None = None,
        endpoint_url: str | None = None,
        role_arn: str = "",
        node_role_arn: str = "",
        subnet_ids: list[str] | None = None,
        client: Any = None,
    ) -> None:
        if client is None:
            _check_boto3_available()
        self._name = name
        self._region = region
        self._profile = profile
        self._endpoint_url = endpoint_url
        self._role_arn = role_arn
        self._node_role_arn = node_role_arn or role_arn
        self._subnet_ids = list(subnet_ids or [])
        self._client = client

    @property
    def name(self) -> str:
        return self._name

    # --- Clusters ---

    def create_cluster(self, cluster: Cluster) -> Cluster:
        spec = cluster.spec
        role_arn = self._role_arn
        if spec.control_plane.identity is not None and spec.control_plane.identity.role_arn:
            role_arn = spec.control_plane.identity.role_arn

        kwargs: dict[str, Any] = {
            "name": cluster.id,
            "roleArn": role_arn,
            "resourcesVpcConfig": {
                "subnetIds": self._subnet_ids_for(spec),
                "endpointPrivateAccess": spec.network.private_cluster,
                "endpointPublicAccess": not spec.network.private_cluster,
            },
        }
        if spec.control_plane.version:
            kwargs["version"] = spec.control_plane.version
        if spec.tags:
            kwargs["tags"] = dict(spec.tags)

        logger.info("Creating EKS cluster %s", cluster.id)
        self._eks().create_cluster(**kwargs)
        return cluster

    def update_cluster(self, cluster: Cluster) -> Cluster:
        client = self._eks()
        current = client.describe_cluster(name=cluster.id)["cluster"]

        version = cluster.spec.control_plane.version
        if version and current.get("version") != version:
            logger.info(
                "Upgrading EKS cluster %s from %s to %s",
                cluster.id, current.get("version"), version,
            )
            client.update_cluster_version(name=cluster.id, version=version)

        if cluster.spec.tags and current.get("tags", {}) != cluster.spec.tags and current.get("arn"):
            client.tag_resource(resourceArn=current["arn"], tags=dict(cluster.spec.tags))
        return cluster

    def delete_cluster(self, cluster_id: str) -> None:
        logger.info("Deleting EKS cluster %s", cluster_id)
        try:
            self._eks().delete_cluster(name=cluster_id)
        except Exception as exc:
            if not _is_not_found(exc):
                raise
            logger.debug("EKS cluster %s already gone", cluster_id)

    def get_cluster(self, cluster_id: str) -> Cluster | None:
        client = self._eks()
        try:
            described = client.describe_cluster(name=cluster_id)["cluster"]
        except Exception as exc:
            if _is_not_found(exc):
                return None
            raise

        pools: list[WorkerPoolSpec] = []
        names = client.list_nodegroups(clusterName=cluster_id).get("nodegroups", [])
        for ng_name in sorted(names):
            ng = client.describe_nodegroup(
                clusterName=cluster_id, nodegroupName=ng_name,
            )["nodegroup"]
            pools.append(self._pool_spec_from_eks(ng))

        return Cluster(
            id=cluster_id,
            spec=ClusterSpec(
                provider=self._name,
                region=self._region or "",
                control_plane=ControlPlaneSpec(version=described.get("version", "")),
                worker_pools=pools,
                tags=described.get("tags", {}),
            ),
        )

    # --- Node pools ---

    def create_node_pool(self, pool: NodePool) -> NodePool:
        spec = pool.spec
        kwargs: dict[str, Any] = {
            "clusterName": pool.cluster_id,
            "nodegroupName": spec.name,
            "scalingConfig": self._scaling_config(spec),
            "subnets": list(self._subnet_ids),
            "nodeRole": self._node_role_arn,
            "capacityType": "SPOT" if spec.spot is not None and spec.spot.enabled else "ON_DEMAND",
        }
        if spec.instance_type:
            kwargs["instanceTypes"] = [spec.instance_type]
        if spec.labels:
            kwargs["labels"] = dict(spec.labels)
        if spec.taints:
            kwargs["taints"] = [
                {"key": t.key, "value": t.value, "effect": _TAINT_EFFECTS.get(t.effect, t.effect)}
                for t in spec.taints
            ]

        logger.info("Creating EKS node group %s/%s", pool.cluster_id, spec.name)
        self._eks().create_nodegroup(**kwargs)
        return pool

    def update_node_pool(self, pool: NodePool) -> NodePool:
        kwargs: dict[str, Any] = {
            "clusterName": pool.cluster_id,
            "nodegroupName": pool.spec.name,
            "scalingConfig": self._scaling_config(pool.spec),
        }
        if pool.spec.labels:
            kwargs["labels"] = {"addOrUpdateLabels": dict(pool.spec.labels)}

        logger.info("Updating EKS node group %s/%s", pool.cluster_id, pool.spec.name)
        self._eks().update_nodegroup_config(**kwargs)
        return pool

    def delete_node_pool(self, cluster_id: str, pool_id: str) -> None:
        name = nodegroup_name(pool_id)
        logger.info("Deleting EKS node group %s/%s", cluster_id, name)
        try:
            self._eks().delete_nodegroup(clusterName=cluster_id, nodegroupName=name)
        except Exception as exc:
            if not _is_not_found(exc):
                raise
            logger.debug("EKS node group %s/%s already gone", cluster_id, name)

    # --- Planning ---

    def reconcile(self, desired: State, actual: State) -> Plan:
        """Plan changes for the resources this provider owns."""
        return generate_plan(self._owned(desired), self._owned(actual))

    def _owned(self, state: State) -> State:
        clusters = [c for c in state.clusters.values() if c.spec.provider == self._name]
        pools = [p for p in state.node_pools.values() if state.pool_provider(p) == self._name]
        return State.of(clusters, pools)

    # --- Private: client setup ---

    def _eks(self) -> Any:
        if self._client is None:
            import boto3

            session_kwargs: dict[str, Any] = {}
            if self._region:
                session_kwargs["region_name"] = self._region
            if self._profile:
                session_kwargs["profile_name"] = self._profile
            session = boto3.Session(**session_kwargs)

            client_kwargs: dict[str, Any] = {}
            if self._endpoint_url:
                client_kwargs["endpoint_url"] = self._endpoint_url
            self._client = session.client("eks", **client_kwargs)
        return self._client

    # --- Private: request/response mapping ---

    def _subnet_ids_for(self, spec: ClusterSpec) -> list[str]:
        # Subnet names in the cluster network are taken as subnet ids when present.
        named = [s.name for s in spec.network.subnets if s.name.startswith("subnet-")]
        return named or list(self._subnet_ids)

    @staticmethod
    def _scaling_config(spec: WorkerPoolSpec) -> dict[str, int]:
        return {
            "minSize": spec.min_size,
            "maxSize": max(spec.max_size, 1),
            "desiredSize": spec.desired_size,
        }

    @staticmethod
    def _pool_spec_from_eks(ng: dict[str, Any]) -> WorkerPoolSpec:
        scaling = ng.get("scalingConfig", {})
        instance_types = ng.get("instanceTypes") or [""]
        return WorkerPoolSpec(
            name=ng["nodegroupName"],
            instance_type=instance_types[0],
            min_size=scaling.get("minSize", 0),
            max_size=scaling.get("maxSize", 0),
            desired_size=scaling.get("desiredSize", 0),
            spot=SpotConfig(enabled=True) if ng.get("capacityType") == "SPOT" else None,
            labels=ng.get("labels", {}),
            taints=[
                Taint(
                    key=t["key"],
                    value=t.get("value", ""),
                    effect=_TAINT_EFFECTS_REVERSE.get(t["effect"], t["effect"]),
                )
                for t in ng.get("taints", [])
            ],
        )
