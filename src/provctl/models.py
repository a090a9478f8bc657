"""Core data models for provctl.

Defines the schemas for:
- Resource identity (ResourceID) and lifecycle status
- Cluster and node pool specs (the declarative intent)
- State (the desired or actual set of managed resources)
- Actions and plans (what the planner produces)
- Events (the append-only audit trail)
- Drift reports and remediation outcomes
- Snapshots, restore change-sets and retention policies
"""

from __future__ import annotations

import enum
from datetime import UTC, datetime, timedelta
from typing import Annotated, Any, Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

# --- Enums ---


class ResourceKind(enum.StrEnum):
    CLUSTER = "Cluster"
    NODE_POOL = "NodePool"


class Phase(enum.StrEnum):
    PENDING = "Pending"
    PROVISIONING = "Provisioning"
    RUNNING = "Running"
    UPDATING = "Updating"
    DELETING = "Deleting"
    FAILED = "Failed"


class ConditionType(enum.StrEnum):
    READY = "Ready"
    NETWORK_READY = "NetworkReady"
    CONTROL_PLANE_READY = "ControlPlaneReady"
    NODES_READY = "NodesReady"


class ControlPlaneType(enum.StrEnum):
    MANAGED = "managed"
    SELF_MANAGED = "self-managed"


class ActionType(enum.StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "noop"


class EventType(enum.StrEnum):
    CREATED = "Created"
    UPDATED = "Updated"
    DELETED = "Deleted"
    FAILED = "Failed"


class DriftType(enum.StrEnum):
    CONFIG_CHANGE = "config_change"
    VERSION_SKEW = "version_skew"
    SCALE_CHANGE = "scale_change"
    NETWORK_CHANGE = "network_change"
    SECURITY_CHANGE = "security_change"
    RESOURCE_DELETED = "resource_deleted"
    RESOURCE_ADDED = "resource_added"


class Severity(enum.StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Numeric rank, higher is more severe."""
        return _SEVERITY_RANK[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank >= other.rank


_SEVERITY_RANK: dict[str, int] = {
    "low": 0,
    "medium": 1,
    "high": 2,
    "critical": 3,
}


class TriggerReason(enum.StrEnum):
    MANUAL = "manual"
    PRE_UPGRADE = "pre_upgrade"
    PRE_DELETE = "pre_delete"
    PRE_APPLY = "pre_apply"
    PRE_RESTORE = "pre_restore"
    SCHEDULED = "scheduled"
    DRIFT_REMEDIATE = "drift_remediate"


class ChangeAction(enum.StrEnum):
    ADD = "add"
    MODIFY = "modify"
    REMOVE = "remove"


class RemediationStatus(enum.StrEnum):
    REMEDIATED = "remediated"
    FAILED = "failed"
    SKIPPED = "skipped"


# --- Identity and status ---


class ResourceID(BaseModel):
    """Unique key for a managed entity. No two live resources share (kind, id)."""

    model_config = ConfigDict(frozen=True)

    provider: str = ""
    kind: ResourceKind
    id: str
    name: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return (self.kind.value, self.id)

    def __str__(self) -> str:
        prefix = f"{self.provider}:" if self.provider else ""
        return f"{prefix}{self.kind.value}/{self.id}"


class ResourceMetadata(BaseModel):
    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Condition(BaseModel):
    type: ConditionType
    status: bool
    last_transition_time: datetime
    reason: str = ""
    message: str = ""


# Allowed lifecycle moves. A successful delete removes the resource rather
# than entering a phase of its own.
PHASE_TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.PENDING: frozenset({
        Phase.PROVISIONING, Phase.UPDATING, Phase.DELETING, Phase.FAILED,
    }),
    Phase.PROVISIONING: frozenset({Phase.RUNNING, Phase.FAILED}),
    Phase.UPDATING: frozenset({Phase.RUNNING, Phase.FAILED}),
    Phase.DELETING: frozenset({Phase.FAILED}),
    Phase.RUNNING: frozenset({Phase.UPDATING, Phase.DELETING}),
    Phase.FAILED: frozenset({Phase.PROVISIONING, Phase.UPDATING, Phase.DELETING}),
}


class InvalidTransitionError(ValueError):
    """Raised when a status change is not an allowed lifecycle move."""


class ResourceStatus(BaseModel):
    """Lifecycle status, set only by the reconciliation engine."""

    phase: Phase = Phase.PENDING
    conditions: list[Condition] = Field(default_factory=list)
    message: str = ""
    properties: dict[str, str] = Field(default_factory=dict)

    def can_transition(self, phase: Phase) -> bool:
        return phase in PHASE_TRANSITIONS[self.phase]

    def transition(
        self,
        phase: Phase,
        message: str = "",
        now: datetime | None = None,
    ) -> ResourceStatus:
        """Return a new status in *phase*, or raise InvalidTransitionError."""
        if not self.can_transition(phase):
            raise InvalidTransitionError(
                f"Cannot move from {self.phase.value} to {phase.value}"
            )
        now = now or datetime.now(tz=UTC)
        ready = Condition(
            type=ConditionType.READY,
            status=phase == Phase.RUNNING,
            last_transition_time=now,
            reason=phase.value,
            message=message,
        )
        conditions = [c for c in self.conditions if c.type != ConditionType.READY]
        conditions.append(ready)
        return self.model_copy(update={
            "phase": phase,
            "message": message,
            "conditions": conditions,
        })


# --- Specs ---


class Subnet(BaseModel):
    name: str
    cidr: str
    availability_zone: str = ""
    public: bool = False


class NetworkSpec(BaseModel):
    vpc_cidr: str = ""
    availability_zones: list[str] = Field(default_factory=list)
    subnets: list[Subnet] = Field(default_factory=list)
    nat_gateway: bool = False
    private_cluster: bool = False


class IdentitySpec(BaseModel):
    type: str
    service_accounts: list[str] = Field(default_factory=list)
    role_arn: str = ""


class ControlPlaneSpec(BaseModel):
    type: ControlPlaneType = ControlPlaneType.MANAGED
    version: str = ""
    instance_type: str = ""
    count: int = Field(default=0, ge=0)
    ha: bool = False
    identity: IdentitySpec | None = None
    config: dict[str, Any] = Field(default_factory=dict)


class SpotConfig(BaseModel):
    enabled: bool = False
    max_price: float = 0.0


class Taint(BaseModel):
    key: str
    value: str = ""
    effect: str


class WorkerPoolSpec(BaseModel):
    name: str
    instance_type: str = ""
    min_size: int = Field(default=0, ge=0)
    max_size: int = Field(default=0, ge=0)
    desired_size: int = Field(default=0, ge=0)
    spot: SpotConfig | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    taints: list[Taint] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)


class ClusterSpec(BaseModel):
    provider: str
    region: str = ""
    network: NetworkSpec = Field(default_factory=NetworkSpec)
    control_plane: ControlPlaneSpec = Field(default_factory=ControlPlaneSpec)
    worker_pools: list[WorkerPoolSpec] = Field(default_factory=list)
    tags: dict[str, str] = Field(default_factory=dict)
    config: dict[str, Any] = Field(default_factory=dict)

    def worker_pool(self, name: str) -> WorkerPoolSpec | None:
        return next((p for p in self.worker_pools if p.name == name), None)


# --- Resources ---


class Cluster(BaseModel):
    id: str = Field(..., min_length=1)
    metadata: ResourceMetadata = Field(default_factory=ResourceMetadata)
    spec: ClusterSpec
    status: ResourceStatus = Field(default_factory=ResourceStatus)

    @property
    def resource_id(self) -> ResourceID:
        return ResourceID(
            provider=self.spec.provider,
            kind=ResourceKind.CLUSTER,
            id=self.id,
            name=self.metadata.name,
        )


class NodePool(BaseModel):
    id: str = Field(..., min_length=1)
    cluster_id: str
    provider: str = ""
    metadata: ResourceMetadata = Field(default_factory=ResourceMetadata)
    spec: WorkerPoolSpec
    status: ResourceStatus = Field(default_factory=ResourceStatus)


class State(BaseModel):
    """A complete set of managed resources.

    Used both for the caller's desired state and the persisted (or
    live-queried) actual state. Map keys always equal the resource's id.
    """

    clusters: dict[str, Cluster] = Field(default_factory=dict)
    node_pools: dict[str, NodePool] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _keys_match_ids(self) -> State:
        for key, cluster in self.clusters.items():
            if key != cluster.id:
                raise ValueError(f"Cluster key {key!r} does not match id {cluster.id!r}")
        for key, pool in self.node_pools.items():
            if key != pool.id:
                raise ValueError(f"NodePool key {key!r} does not match id {pool.id!r}")
        return self

    @classmethod
    def of(
        cls,
        clusters: list[Cluster] | None = None,
        node_pools: list[NodePool] | None = None,
    ) -> State:
        """Build a State from resource lists, keyed by id."""
        return cls(
            clusters={c.id: c for c in clusters or []},
            node_pools={p.id: p for p in node_pools or []},
        )

    def copy_deep(self) -> State:
        return self.model_copy(deep=True)

    def is_empty(self) -> bool:
        return not self.clusters and not self.node_pools

    def pool_provider(self, pool: NodePool) -> str:
        """Provider for *pool*: its own, else its cluster's."""
        if pool.provider:
            return pool.provider
        cluster = self.clusters.get(pool.cluster_id)
        return cluster.spec.provider if cluster is not None else ""

    def pool_resource_id(self, pool: NodePool) -> ResourceID:
        return ResourceID(
            provider=self.pool_provider(pool),
            kind=ResourceKind.NODE_POOL,
            id=pool.id,
            name=pool.metadata.name or pool.spec.name,
        )

    def pools_for(self, cluster_id: str) -> list[NodePool]:
        return sorted(
            (p for p in self.node_pools.values() if p.cluster_id == cluster_id),
            key=lambda p: p.id,
        )

    def with_worker_pools(self) -> State:
        """Return a copy where every inline worker pool is also a node pool.

        A pool declared on ``ClusterSpec.worker_pools`` becomes a node pool
        with id ``<cluster id>/<pool name>``. An explicit node pool wins when
        it already uses that id or carries the same pool name for the cluster.
        """
        expanded = self.copy_deep()
        for cid in sorted(expanded.clusters):
            cluster = expanded.clusters[cid]
            names = {p.spec.name for p in expanded.pools_for(cid)}
            for wp in cluster.spec.worker_pools:
                pid = pool_id(cid, wp.name)
                if pid in expanded.node_pools or wp.name in names:
                    continue
                expanded.node_pools[pid] = NodePool(
                    id=pid,
                    cluster_id=cid,
                    metadata=ResourceMetadata(name=wp.name),
                    spec=wp.model_copy(deep=True),
                )
        return expanded


def pool_id(cluster_id: str, pool_name: str) -> str:
    return f"{cluster_id}/{pool_name}"


# --- Actions and plans ---


class CreateClusterPayload(BaseModel):
    op: Literal["create_cluster"] = "create_cluster"
    cluster: Cluster


class UpdateClusterPayload(BaseModel):
    op: Literal["update_cluster"] = "update_cluster"
    cluster: Cluster
    changed_fields: list[str] = Field(default_factory=list)


class DeleteClusterPayload(BaseModel):
    op: Literal["delete_cluster"] = "delete_cluster"


class CreateNodePoolPayload(BaseModel):
    op: Literal["create_node_pool"] = "create_node_pool"
    node_pool: NodePool


class UpdateNodePoolPayload(BaseModel):
    op: Literal["update_node_pool"] = "update_node_pool"
    node_pool: NodePool
    changed_fields: list[str] = Field(default_factory=list)


class DeleteNodePoolPayload(BaseModel):
    op: Literal["delete_node_pool"] = "delete_node_pool"
    cluster_id: str


class NoopPayload(BaseModel):
    op: Literal["noop"] = "noop"


ActionPayload = Annotated[
    CreateClusterPayload
    | UpdateClusterPayload
    | DeleteClusterPayload
    | CreateNodePoolPayload
    | UpdateNodePoolPayload
    | DeleteNodePoolPayload
    | NoopPayload,
    Field(discriminator="op"),
]

_PAYLOAD_OPS: dict[tuple[ActionType, ResourceKind], str] = {
    (ActionType.CREATE, ResourceKind.CLUSTER): "create_cluster",
    (ActionType.UPDATE, ResourceKind.CLUSTER): "update_cluster",
    (ActionType.DELETE, ResourceKind.CLUSTER): "delete_cluster",
    (ActionType.CREATE, ResourceKind.NODE_POOL): "create_node_pool",
    (ActionType.UPDATE, ResourceKind.NODE_POOL): "update_node_pool",
    (ActionType.DELETE, ResourceKind.NODE_POOL): "delete_node_pool",
}


class Action(BaseModel):
    """The unit of change. Produced by the planner, consumed by the engine."""

    type: ActionType
    resource: ResourceID
    payload: ActionPayload = Field(default_factory=NoopPayload)

    @model_validator(mode="after")
    def _payload_matches_type(self) -> Action:
        if self.type == ActionType.NOOP:
            expected = "noop"
        else:
            expected = _PAYLOAD_OPS[(self.type, self.resource.kind)]
        if self.payload.op != expected:
            raise ValueError(
                f"{self.type.value} {self.resource.kind.value} action requires "
                f"a {expected!r} payload, got {self.payload.op!r}"
            )
        return self


class Plan(BaseModel):
    """Ordered sequence of actions. At most one action per resource."""

    actions: list[Action] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_resources(self) -> Plan:
        seen: set[tuple[str, str]] = set()
        for action in self.actions:
            key = action.resource.key
            if key in seen:
                raise ValueError(f"Duplicate action for {action.resource}")
            seen.add(key)
        return self

    def __len__(self) -> int:
        return len(self.actions)

    def is_empty(self) -> bool:
        return not any(a.type != ActionType.NOOP for a in self.actions)

    def _of_type(self, action_type: ActionType) -> list[Action]:
        return [a for a in self.actions if a.type == action_type]

    @property
    def creates(self) -> list[Action]:
        return self._of_type(ActionType.CREATE)

    @property
    def updates(self) -> list[Action]:
        return self._of_type(ActionType.UPDATE)

    @property
    def deletes(self) -> list[Action]:
        return self._of_type(ActionType.DELETE)


# --- Events ---


class ResourceEventPayload(BaseModel):
    """Carries the resource as it was recorded after a create or update."""

    op: Literal["resource"] = "resource"
    cluster: Cluster | None = None
    node_pool: NodePool | None = None


class DeletedEventPayload(BaseModel):
    op: Literal["deleted"] = "deleted"
    cluster_id: str = ""


class FailureEventPayload(BaseModel):
    op: Literal["failure"] = "failure"
    action: ActionType
    error: str
    phase: Phase = Phase.FAILED


EventPayload = Annotated[
    ResourceEventPayload | DeletedEventPayload | FailureEventPayload,
    Field(discriminator="op"),
]

_EVENT_TYPES: dict[ActionType, EventType] = {
    ActionType.CREATE: EventType.CREATED,
    ActionType.UPDATE: EventType.UPDATED,
    ActionType.DELETE: EventType.DELETED,
}


def event_type_for(action_type: ActionType) -> EventType:
    """Map an action type to the event type recorded when it succeeds."""
    try:
        return _EVENT_TYPES[action_type]
    except KeyError:
        raise ValueError(f"No event type for {action_type.value} actions") from None


class Event(BaseModel):
    """A single entry in the append-only audit trail."""

    id: UUID = Field(default_factory=uuid4)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
    type: EventType
    resource: ResourceID
    actor: str = "provctl"
    payload: EventPayload
    prev_hash: str = ""
    entry_hash: str = ""


# --- Drift ---


class ResourceDrift(BaseModel):
    resource: ResourceID
    drift_type: DriftType
    field: str
    expected: Any = None
    actual: Any = None
    severity: Severity
    remediatable: bool = False


class DriftSummary(BaseModel):
    total_drifts: int = 0
    critical_count: int = 0
    high_count: int = 0
    medium_count: int = 0
    low_count: int = 0
    remediable_count: int = 0

    @classmethod
    def from_drifts(cls, drifts: list[ResourceDrift]) -> DriftSummary:
        counts = {s: 0 for s in Severity}
        for drift in drifts:
            counts[drift.severity] += 1
        return cls(
            total_drifts=len(drifts),
            critical_count=counts[Severity.CRITICAL],
            high_count=counts[Severity.HIGH],
            medium_count=counts[Severity.MEDIUM],
            low_count=counts[Severity.LOW],
            remediable_count=sum(1 for d in drifts if d.remediatable),
        )


class DriftReport(BaseModel):
    """A diagnosis, recomputed every detection cycle and never persisted as state."""

    detected_at: datetime
    has_drift: bool
    drifts: list[ResourceDrift] = Field(default_factory=list)
    summary: DriftSummary = Field(default_factory=DriftSummary)
    skipped_providers: list[str] = Field(default_factory=list)
    desired: State = Field(default_factory=State, exclude=True, repr=False)

    @property
    def max_severity(self) -> Severity | None:
        return max((d.severity for d in self.drifts), default=None)


class RemediationOutcome(BaseModel):
    drift: ResourceDrift
    status: RemediationStatus
    error: str | None = None


class RemediationResult(BaseModel):
    outcomes: list[RemediationOutcome] = Field(default_factory=list)

    def _count(self, status: RemediationStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def remediated(self) -> int:
        return self._count(RemediationStatus.REMEDIATED)

    @property
    def failed(self) -> list[RemediationOutcome]:
        return [o for o in self.outcomes if o.status == RemediationStatus.FAILED]

    @property
    def skipped(self) -> int:
        return self._count(RemediationStatus.SKIPPED)

    @property
    def success(self) -> bool:
        return not self.failed


# --- Snapshots ---


class SnapshotMetadata(BaseModel):
    version: str = "1.0"
    created_by: str = "provctl"
    trigger_reason: TriggerReason = TriggerReason.MANUAL
    cluster_count: int = 0
    node_pool_count: int = 0
    tags: dict[str, str] = Field(default_factory=dict)


class Snapshot(BaseModel):
    """An immutable, checksummed copy of the persisted state."""

    id: str
    created_at: datetime
    description: str = ""
    state: State
    metadata: SnapshotMetadata = Field(default_factory=SnapshotMetadata)
    checksum: str


class SnapshotInfo(BaseModel):
    id: str
    created_at: datetime
    description: str = ""
    trigger_reason: TriggerReason
    cluster_count: int = 0
    node_pool_count: int = 0
    size_bytes: int = 0
    intact: bool = True


class RestoreChange(BaseModel):
    action: ChangeAction
    resource: ResourceID
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None


class RestoreResult(BaseModel):
    snapshot_id: str
    backup_id: str | None = None
    restored_at: datetime
    dry_run: bool
    success: bool
    changes: list[RestoreChange] = Field(default_factory=list)


class RetentionPolicy(BaseModel):
    """Declarative pruning rule. Unset fields do not constrain."""

    max_age: timedelta | None = None
    max_count: int | None = Field(default=None, ge=0)


# --- Apply results ---


class ApplyResult(BaseModel):
    """Outcome of a committed plan: one event per dispatched action."""

    plan: Plan = Field(default_factory=Plan)
    events: list[Event] = Field(default_factory=list)

    @property
    def applied(self) -> int:
        return len(self.events)
