"""Tests for the desired-state loader."""

from pathlib import Path

import pytest

from provctl.errors import ConfigError
from provctl.loader import load_desired_state, parse_desired_state, pool_id

_CLUSTERS_YAML = """\
clusters:
  - id: prod
    name: Production
    spec:
      provider: aws
      region: us-east-1
      control_plane:
        version: "1.29"
        count: 3
      worker_pools:
        - name: general
          instance_type: m5.large
          min_size: 2
          max_size: 6
          desired_size: 3
        - name: gpu
          desired_size: 1
          taints:
            - key: nvidia.com/gpu
              effect: NoSchedule
      tags:
        env: prod
  - id: dev
    spec:
      provider: local
node_pools:
  - id: dev/batch
    cluster_id: dev
    spec:
      name: batch
      desired_size: 2
"""


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "clusters.yaml"
    path.write_text(text, encoding="utf-8")
    return path


class TestLoadDesiredState:
    def test_loads_clusters_and_pools(self, tmp_path: Path):
        state = load_desired_state(_write(tmp_path, _CLUSTERS_YAML))
        assert set(state.clusters) == {"prod", "dev"}
        assert set(state.node_pools) == {"prod/general", "prod/gpu", "dev/batch"}

        prod = state.clusters["prod"]
        assert prod.metadata.name == "Production"
        assert prod.spec.control_plane.version == "1.29"
        assert prod.spec.tags == {"env": "prod"}

    def test_worker_pools_become_node_pools(self, tmp_path: Path):
        state = load_desired_state(_write(tmp_path, _CLUSTERS_YAML))
        gpu = state.node_pools["prod/gpu"]
        assert gpu.cluster_id == "prod"
        assert gpu.metadata.name == "gpu"
        assert gpu.spec.taints[0].effect == "NoSchedule"
        assert state.pool_provider(gpu) == "aws"

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not found"):
            load_desired_state(tmp_path / "nope.yaml")

    def test_empty_file_is_empty_state(self, tmp_path: Path):
        assert load_desired_state(_write(tmp_path, "")).is_empty()

    def test_invalid_yaml(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_desired_state(_write(tmp_path, "clusters: [unclosed\n"))

    def test_top_level_must_be_mapping(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="Expected a mapping"):
            load_desired_state(_write(tmp_path, "- a\n- b\n"))

    def test_json_is_accepted(self, tmp_path: Path):
        path = tmp_path / "clusters.json"
        path.write_text('{"clusters": [{"id": "c1", "spec": {"provider": "local"}}]}',
                        encoding="utf-8")
        assert set(load_desired_state(path).clusters) == {"c1"}


class TestParseDesiredState:
    def test_invalid_cluster(self):
        with pytest.raises(ConfigError, match="Invalid cluster at index 0"):
            parse_desired_state({"clusters": [{"id": "c1"}]})

    def test_invalid_node_pool(self):
        raw = {
            "clusters": [{"id": "c1", "spec": {"provider": "local"}}],
            "node_pools": [{"id": "c1/x", "cluster_id": "c1", "spec": {"desired_size": -1}}],
        }
        with pytest.raises(ConfigError, match="Invalid node pool at index 0"):
            parse_desired_state(raw)

    def test_duplicate_cluster_id(self):
        cluster = {"id": "c1", "spec": {"provider": "local"}}
        with pytest.raises(ConfigError, match="Duplicate cluster id"):
            parse_desired_state({"clusters": [cluster, cluster]})

    def test_unknown_cluster_reference(self):
        raw = {"node_pools": [{"id": "x/p", "cluster_id": "x", "spec": {"name": "p"}}]}
        with pytest.raises(ConfigError, match="unknown cluster 'x'"):
            parse_desired_state(raw)

    def test_clusters_must_be_list(self):
        with pytest.raises(ConfigError, match="'clusters' must be a list"):
            parse_desired_state({"clusters": {"c1": {}}})

    def test_explicit_pool_wins_over_worker_pool(self):
        raw = {
            "clusters": [{
                "id": "c1",
                "spec": {"provider": "local", "worker_pools": [{"name": "p", "desired_size": 1}]},
            }],
            "node_pools": [{"id": pool_id("c1", "p"), "cluster_id": "c1",
                            "spec": {"name": "p", "desired_size": 5}}],
        }
        state = parse_desired_state(raw)
        assert state.node_pools["c1/p"].spec.desired_size == 5

    def test_pool_id(self):
        assert pool_id("prod", "gpu") == "prod/gpu"
