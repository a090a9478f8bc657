"""Tests for AwsEksProvider.

All EKS calls go to a MagicMock client, so no real AWS account is needed.
"""

from __future__ import annotations

import sys
from contextlib import contextmanager
from unittest.mock import MagicMock, patch

import pytest

from provctl.engine import CloudProvider
from provctl.models import (
    Cluster,
    ClusterSpec,
    ControlPlaneSpec,
    NetworkSpec,
    NodePool,
    SpotConfig,
    Subnet,
    Taint,
    WorkerPoolSpec,
)
from provctl.providers.aws import AwsEksProvider, _check_boto3_available, nodegroup_name

# --- Helpers ---


class _ClientError(Exception):
    """Stand-in for botocore's ClientError, which carries a response dict."""

    def __init__(self, code: str) -> None:
        super().__init__(code)
        self.response = {"Error": {"Code": code, "Message": code}}


@contextmanager
def _mock_boto3_modules():
    """Context manager that injects mock boto3 into sys.modules."""
    mock_boto3 = MagicMock()
    with patch.dict(sys.modules, {"boto3": mock_boto3}):
        yield mock_boto3


def _provider(client: MagicMock | None = None) -> tuple[AwsEksProvider, MagicMock]:
    client = client or MagicMock()
    provider = AwsEksProvider(
        name="aws",
        region="us-east-1",
        role_arn="arn:aws:iam::123:role/eks",
        subnet_ids=["subnet-a", "subnet-b"],
        client=client,
    )
    return provider, client


def _cluster(version: str = "1.29", **tags: str) -> Cluster:
    return Cluster(
        id="prod",
        spec=ClusterSpec(
            provider="aws",
            control_plane=ControlPlaneSpec(version=version),
            tags=tags,
        ),
    )


def _pool(**overrides) -> NodePool:
    spec = {"name": "gpu", "instance_type": "g5.xlarge", "min_size": 0, "max_size": 0,
            "desired_size": 0, **overrides}
    return NodePool(id="prod/gpu", cluster_id="prod", spec=WorkerPoolSpec(**spec))


# --- boto3 availability ---


class TestBoto3Check:
    def test_missing_boto3_raises(self) -> None:
        with patch.dict(sys.modules, {"boto3": None}):
            with pytest.raises(ImportError, match="pip install provctl\\[aws\\]"):
                _check_boto3_available()

    def test_injected_client_skips_check(self) -> None:
        with patch.dict(sys.modules, {"boto3": None}):
            provider, _ = _provider()
        assert provider.name == "aws"

    def test_lazy_client_from_session(self) -> None:
        with _mock_boto3_modules() as boto3:
            provider = AwsEksProvider(region="eu-west-1", profile="ops",
                                      endpoint_url="http://localhost:4566")
            provider.delete_cluster("prod")

        boto3.Session.assert_called_once_with(region_name="eu-west-1", profile_name="ops")
        boto3.Session.return_value.client.assert_called_once_with(
            "eks", endpoint_url="http://localhost:4566",
        )

    def test_satisfies_protocol(self) -> None:
        provider, _ = _provider()
        assert isinstance(provider, CloudProvider)


# --- Clusters ---


class TestClusters:
    def test_create_cluster(self) -> None:
        provider, client = _provider()
        provider.create_cluster(_cluster(env="prod"))
        client.create_cluster.assert_called_once_with(
            name="prod",
            roleArn="arn:aws:iam::123:role/eks",
            resourcesVpcConfig={
                "subnetIds": ["subnet-a", "subnet-b"],
                "endpointPrivateAccess": False,
                "endpointPublicAccess": True,
            },
            version="1.29",
            tags={"env": "prod"},
        )

    def test_create_uses_spec_subnets_and_private_endpoint(self) -> None:
        provider, client = _provider()
        cluster = _cluster()
        cluster.spec.network = NetworkSpec(
            private_cluster=True,
            subnets=[Subnet(name="subnet-x", cidr="10.0.0.0/24")],
        )
        provider.create_cluster(cluster)
        vpc = client.create_cluster.call_args.kwargs["resourcesVpcConfig"]
        assert vpc["subnetIds"] == ["subnet-x"]
        assert vpc["endpointPrivateAccess"] is True
        assert vpc["endpointPublicAccess"] is False

    def test_update_upgrades_version_only_when_changed(self) -> None:
        provider, client = _provider()
        client.describe_cluster.return_value = {"cluster": {"version": "1.28"}}
        provider.update_cluster(_cluster("1.29"))
        client.update_cluster_version.assert_called_once_with(name="prod", version="1.29")

        client.reset_mock()
        client.describe_cluster.return_value = {"cluster": {"version": "1.29"}}
        provider.update_cluster(_cluster("1.29"))
        client.update_cluster_version.assert_not_called()

    def test_update_retags(self) -> None:
        provider, client = _provider()
        client.describe_cluster.return_value = {
            "cluster": {"version": "1.29", "arn": "arn:eks:prod", "tags": {"env": "dev"}},
        }
        provider.update_cluster(_cluster("1.29", env="prod"))
        client.tag_resource.assert_called_once_with(
            resourceArn="arn:eks:prod", tags={"env": "prod"},
        )

    def test_delete_ignores_not_found(self) -> None:
        provider, client = _provider()
        client.delete_cluster.side_effect = _ClientError("ResourceNotFoundException")
        provider.delete_cluster("prod")

    def test_delete_propagates_other_errors(self) -> None:
        provider, client = _provider()
        client.delete_cluster.side_effect = _ClientError("AccessDeniedException")
        with pytest.raises(_ClientError):
            provider.delete_cluster("prod")

    def test_get_missing_cluster(self) -> None:
        provider, client = _provider()
        client.describe_cluster.side_effect = _ClientError("ResourceNotFoundException")
        assert provider.get_cluster("prod") is None

    def test_get_cluster_with_nodegroups(self) -> None:
        provider, client = _provider()
        client.describe_cluster.return_value = {
            "cluster": {"version": "1.28", "tags": {"env": "prod"}},
        }
        client.list_nodegroups.return_value = {"nodegroups": ["gpu"]}
        client.describe_nodegroup.return_value = {"nodegroup": {
            "nodegroupName": "gpu",
            "instanceTypes": ["g5.xlarge"],
            "scalingConfig": {"minSize": 0, "maxSize": 4, "desiredSize": 2},
            "capacityType": "SPOT",
            "labels": {"accel": "nvidia"},
            "taints": [{"key": "gpu", "value": "true", "effect": "NO_SCHEDULE"}],
        }}

        live = provider.get_cluster("prod")
        assert live.spec.provider == "aws"
        assert live.spec.control_plane.version == "1.28"
        pool = live.spec.worker_pool("gpu")
        assert pool.desired_size == 2
        assert pool.instance_type == "g5.xlarge"
        assert pool.spot.enabled
        assert pool.taints == [Taint(key="gpu", value="true", effect="NoSchedule")]


# --- Node pools ---


class TestNodePools:
    def test_create_nodegroup(self) -> None:
        provider, client = _provider()
        pool = _pool(
            min_size=1, max_size=4, desired_size=2,
            spot=SpotConfig(enabled=True),
            labels={"accel": "nvidia"},
            taints=[Taint(key="gpu", value="true", effect="NoSchedule")],
        )
        provider.create_node_pool(pool)
        client.create_nodegroup.assert_called_once_with(
            clusterName="prod",
            nodegroupName="gpu",
            scalingConfig={"minSize": 1, "maxSize": 4, "desiredSize": 2},
            subnets=["subnet-a", "subnet-b"],
            nodeRole="arn:aws:iam::123:role/eks",
            capacityType="SPOT",
            instanceTypes=["g5.xlarge"],
            labels={"accel": "nvidia"},
            taints=[{"key": "gpu", "value": "true", "effect": "NO_SCHEDULE"}],
        )

    def test_max_size_at_least_one(self) -> None:
        provider, client = _provider()
        provider.create_node_pool(_pool())
        scaling = client.create_nodegroup.call_args.kwargs["scalingConfig"]
        assert scaling["maxSize"] == 1
        assert client.create_nodegroup.call_args.kwargs["capacityType"] == "ON_DEMAND"

    def test_update_nodegroup(self) -> None:
        provider, client = _provider()
        provider.update_node_pool(_pool(max_size=5, desired_size=3, labels={"a": "b"}))
        client.update_nodegroup_config.assert_called_once_with(
            clusterName="prod",
            nodegroupName="gpu",
            scalingConfig={"minSize": 0, "maxSize": 5, "desiredSize": 3},
            labels={"addOrUpdateLabels": {"a": "b"}},
        )

    def test_delete_nodegroup_uses_pool_name(self) -> None:
        provider, client = _provider()
        provider.delete_node_pool("prod", "prod/gpu")
        client.delete_nodegroup.assert_called_once_with(clusterName="prod", nodegroupName="gpu")

    def test_delete_nodegroup_ignores_not_found(self) -> None:
        provider, client = _provider()
        client.delete_nodegroup.side_effect = _ClientError("ResourceNotFoundException")
        provider.delete_node_pool("prod", "prod/gpu")

    def test_nodegroup_name(self) -> None:
        assert nodegroup_name("prod/gpu") == "gpu"
        assert nodegroup_name("gpu") == "gpu"
