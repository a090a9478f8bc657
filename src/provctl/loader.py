"""Desired-state loader.

Loads and validates a desired state from a YAML (or JSON) file with a
top-level ``clusters`` list and an optional ``node_pools`` list. Every
worker pool declared inline on a cluster also becomes a node pool with
id ``<cluster id>/<pool name>``, unless an explicit node pool entry of
the same cluster already uses that id or pool name.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from provctl.errors import ConfigError
from provctl.models import Cluster, NodePool, State, pool_id

__all__ = ["load_desired_state", "parse_desired_state", "pool_id"]


def load_desired_state(path: str | Path) -> State:
    """Load a desired state from *path*.

    Raises:
        ConfigError: If the file cannot be read, parsed, or validated.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Desired state file not found: {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}", cause=e) from e

    if raw is None:
        return State()
    if not isinstance(raw, dict):
        raise ConfigError(f"Expected a mapping at the top of {path}, got {type(raw).__name__}")

    return parse_desired_state(raw, source=str(path))


def parse_desired_state(raw: dict[str, Any], source: str = "<input>") -> State:
    """Build a State from already-parsed desired-state data."""
    clusters: dict[str, Cluster] = {}
    for i, entry in enumerate(_as_list(raw, "clusters", source)):
        try:
            cluster = Cluster.model_validate(_with_name(entry))
        except (ValidationError, TypeError) as e:
            raise ConfigError(f"Invalid cluster at index {i} in {source}", cause=e) from e
        if cluster.id in clusters:
            raise ConfigError(f"Duplicate cluster id {cluster.id!r} in {source}")
        clusters[cluster.id] = cluster

    node_pools: dict[str, NodePool] = {}
    for i, entry in enumerate(_as_list(raw, "node_pools", source)):
        try:
            pool = NodePool.model_validate(_with_name(entry))
        except (ValidationError, TypeError) as e:
            raise ConfigError(f"Invalid node pool at index {i} in {source}", cause=e) from e
        if pool.id in node_pools:
            raise ConfigError(f"Duplicate node pool id {pool.id!r} in {source}")
        if pool.cluster_id not in clusters:
            raise ConfigError(
                f"Node pool {pool.id!r} at index {i} in {source} references "
                f"unknown cluster {pool.cluster_id!r}"
            )
        node_pools[pool.id] = pool

    return State(clusters=clusters, node_pools=node_pools).with_worker_pools()


def _as_list(raw: dict[str, Any], key: str, source: str) -> list[Any]:
    value = raw.get(key) or []
    if not isinstance(value, list):
        raise ConfigError(f"'{key}' must be a list in {source}")
    return value


def _with_name(entry: Any) -> Any:
    """Accept a top-level ``name`` as shorthand for ``metadata.name``."""
    if not isinstance(entry, dict) or "name" not in entry:
        return entry
    entry = dict(entry)
    metadata = dict(entry.get("metadata") or {})
    metadata.setdefault("name", entry.pop("name"))
    entry["metadata"] = metadata
    return entry
