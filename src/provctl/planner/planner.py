"""Planner: diffs desired state against actual state into a Plan.

Pure and side-effect free. For each resource kind independently:

1. ids in desired but not actual  -> Create
2. ids in both where a tracked field differs -> Update
3. ids in actual but not desired  -> Delete

Ordering is deterministic: creates before updates before deletes so that
no dependency is deleted while another action still references it.
Clusters are created/updated before node pools; node pools are deleted
before clusters. Within a group, actions are sorted by id.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from provctl.models import (
    Action,
    ActionType,
    Cluster,
    CreateClusterPayload,
    CreateNodePoolPayload,
    DeleteClusterPayload,
    DeleteNodePoolPayload,
    NodePool,
    Plan,
    ResourceKind,
    State,
    UpdateClusterPayload,
    UpdateNodePoolPayload,
)


@dataclass(frozen=True)
class FieldComparator:
    """A tracked mutable field: a display path plus a getter over the resource."""

    path: str
    getter: Callable[[Any], Any]

    def differs(self, desired: Any, actual: Any) -> bool:
        return self.getter(desired) != self.getter(actual)


def _dump(value: Any) -> Any:
    if isinstance(value, list):
        return [v.model_dump(mode="json") for v in value]
    return value


DEFAULT_CLUSTER_FIELDS: tuple[FieldComparator, ...] = (
    FieldComparator("controlPlane.version", lambda c: c.spec.control_plane.version),
    FieldComparator("controlPlane.count", lambda c: c.spec.control_plane.count),
    FieldComparator("tags", lambda c: c.spec.tags),
)

DEFAULT_NODE_POOL_FIELDS: tuple[FieldComparator, ...] = (
    FieldComparator("desiredSize", lambda p: p.spec.desired_size),
    FieldComparator("minSize", lambda p: p.spec.min_size),
    FieldComparator("maxSize", lambda p: p.spec.max_size),
    FieldComparator("labels", lambda p: p.spec.labels),
    FieldComparator("taints", lambda p: _dump(p.spec.taints)),
)

DEFAULT_COMPARATORS: dict[ResourceKind, tuple[FieldComparator, ...]] = {
    ResourceKind.CLUSTER: DEFAULT_CLUSTER_FIELDS,
    ResourceKind.NODE_POOL: DEFAULT_NODE_POOL_FIELDS,
}


def changed_fields(
    desired: Any,
    actual: Any,
    comparators: tuple[FieldComparator, ...],
) -> list[str]:
    """Return the paths of every tracked field that differs."""
    return [c.path for c in comparators if c.differs(desired, actual)]


def generate_plan(
    desired: State,
    actual: State,
    comparators: dict[ResourceKind, tuple[FieldComparator, ...]] | None = None,
) -> Plan:
    """Compute the ordered action plan that moves *actual* toward *desired*.

    Worker pools declared inline on desired clusters are planned as node
    pools (see ``State.with_worker_pools``).
    """
    fields = {**DEFAULT_COMPARATORS, **(comparators or {})}
    desired = desired.with_worker_pools()

    cluster_creates: list[Action] = []
    cluster_updates: list[Action] = []
    cluster_deletes: list[Action] = []
    for cid in sorted(desired.clusters.keys() | actual.clusters.keys()):
        want = desired.clusters.get(cid)
        have = actual.clusters.get(cid)
        if want is not None and have is None:
            cluster_creates.append(_cluster_action(ActionType.CREATE, want))
        elif want is not None and have is not None:
            changes = changed_fields(want, have, fields[ResourceKind.CLUSTER])
            if changes:
                cluster_updates.append(_cluster_action(ActionType.UPDATE, want, changes))
        elif have is not None:
            cluster_deletes.append(_cluster_action(ActionType.DELETE, have))

    pool_creates: list[Action] = []
    pool_updates: list[Action] = []
    pool_deletes: list[Action] = []
    for pid in sorted(desired.node_pools.keys() | actual.node_pools.keys()):
        want_pool = desired.node_pools.get(pid)
        have_pool = actual.node_pools.get(pid)
        if want_pool is not None and have_pool is None:
            pool_creates.append(_pool_action(ActionType.CREATE, want_pool, desired))
        elif want_pool is not None and have_pool is not None:
            changes = changed_fields(want_pool, have_pool, fields[ResourceKind.NODE_POOL])
            if changes:
                pool_updates.append(
                    _pool_action(ActionType.UPDATE, want_pool, desired, changes)
                )
        elif have_pool is not None:
            pool_deletes.append(_pool_action(ActionType.DELETE, have_pool, actual))

    return Plan(actions=[
        *cluster_creates,
        *pool_creates,
        *cluster_updates,
        *pool_updates,
        *pool_deletes,
        *cluster_deletes,
    ])


def _cluster_action(
    action_type: ActionType,
    cluster: Cluster,
    changes: list[str] | None = None,
) -> Action:
    if action_type == ActionType.CREATE:
        payload: Any = CreateClusterPayload(cluster=cluster)
    elif action_type == ActionType.UPDATE:
        payload = UpdateClusterPayload(cluster=cluster, changed_fields=changes or [])
    else:
        payload = DeleteClusterPayload()
    return Action(type=action_type, resource=cluster.resource_id, payload=payload)


def _pool_action(
    action_type: ActionType,
    pool: NodePool,
    state: State,
    changes: list[str] | None = None,
) -> Action:
    if action_type == ActionType.CREATE:
        payload: Any = CreateNodePoolPayload(node_pool=pool)
    elif action_type == ActionType.UPDATE:
        payload = UpdateNodePoolPayload(node_pool=pool, changed_fields=changes or [])
    else:
        payload = DeleteNodePoolPayload(cluster_id=pool.cluster_id)
    return Action(type=action_type, resource=state.pool_resource_id(pool), payload=payload)


_SYMBOLS = {
    ActionType.CREATE: "+",
    ActionType.UPDATE: "~",
    ActionType.DELETE: "-",
}


def format_plan(plan: Plan) -> str:
    """Render a plan as human-readable text."""
    lines = ["Infrastructure Plan:", ""]
    for action in plan.actions:
        symbol = _SYMBOLS.get(action.type)
        if symbol is None:
            continue
        res = action.resource
        line = f"  {symbol} {res.kind.value} {res.name or res.id} ({res.id})"
        changes = getattr(action.payload, "changed_fields", None)
        if changes:
            line += f" [{', '.join(changes)}]"
        lines.append(line)

    if plan.is_empty():
        lines.append("  No changes. Infrastructure matches the desired state.")

    lines.append("")
    lines.append(
        f"Plan: {len(plan.creates)} to create, "
        f"{len(plan.updates)} to update, "
        f"{len(plan.deletes)} to delete"
    )
    return "\n".join(lines)
