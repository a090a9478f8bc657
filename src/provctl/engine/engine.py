"""Reconciliation engine: applies plans against cloud providers.

The engine is the only component that mutates the persisted state, and the
only component that sets resource status. Each ``apply`` runs inside a
single state transaction:

  1. Open a transaction on the state manager
  2. For each action, in plan order:
     a. Resolve the provider from the registry
     b. Move the resource into its in-progress phase
     c. Dispatch the provider call
     d. Record the outcome on the working copy and buffer an event
  3. Flush the buffered events in one append
  4. Commit the working copy

Apply is fail-fast: the first provider error aborts the plan, the
transaction is rolled back, and one ``Failed`` event is recorded for the
offending resource. Persisted state keeps its last committed value.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TypeVar

from provctl.engine.provider import CloudProvider
from provctl.engine.registry import ProviderRegistry
from provctl.errors import (
    ApplyError,
    ProviderNotFoundError,
    ProvctlError,
    TransactionError,
)
from provctl.events.log import EventStore
from provctl.models import (
    Action,
    ActionType,
    ApplyResult,
    Cluster,
    CreateClusterPayload,
    CreateNodePoolPayload,
    DeletedEventPayload,
    DeleteNodePoolPayload,
    Event,
    EventType,
    FailureEventPayload,
    NodePool,
    Phase,
    Plan,
    ResourceEventPayload,
    ResourceKind,
    ResourceStatus,
    State,
    UpdateClusterPayload,
    UpdateNodePoolPayload,
    event_type_for,
)
from provctl.planner.planner import generate_plan
from provctl.state.store import StateManager, Transaction, locked

logger = logging.getLogger(__name__)

_R = TypeVar("_R", Cluster, NodePool)

_IN_PROGRESS = {
    ActionType.CREATE: Phase.PROVISIONING,
    ActionType.UPDATE: Phase.UPDATING,
    ActionType.DELETE: Phase.DELETING,
}


def _advance(status: ResourceStatus, phase: Phase, message: str = "") -> ResourceStatus:
    """Move *status* to *phase*. Phases with no path there restart from Pending."""
    if not status.can_transition(phase):
        logger.debug("Resetting status from %s before moving to %s", status.phase, phase)
        status = ResourceStatus()
    return status.transition(phase, message)


class Engine:
    """Applies plans produced by the planner.

    Owns the provider registry; the state manager and event store are
    injected so the engine can run against any persistence backend.
    """

    def __init__(
        self,
        state: StateManager,
        events: EventStore,
        registry: ProviderRegistry | None = None,
        actor: str = "provctl",
    ) -> None:
        self._state = state
        self._events = events
        self._registry = registry or ProviderRegistry()
        self._actor = actor

    @property
    def state(self) -> StateManager:
        return self._state

    @property
    def events(self) -> EventStore:
        return self._events

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    @property
    def actor(self) -> str:
        return self._actor

    def register_provider(self, provider: CloudProvider) -> None:
        self._registry.register(provider)

    def provider(self, name: str) -> CloudProvider:
        return self._registry.resolve(name)

    def plan(self, desired: State) -> Plan:
        """Diff *desired* against the persisted state."""
        return generate_plan(desired, self._state.get_state())

    def plan_and_apply(
        self,
        desired: State,
        before_apply: Callable[[Plan], object] | None = None,
        lock_timeout: float | None = None,
    ) -> ApplyResult:
        """Plan and apply while holding the state lock.

        *before_apply* runs with the computed plan after planning and before
        any provider call, and only when the plan has work to do.
        """
        with locked(self._state, lock_timeout):
            plan = generate_plan(desired, self._state.get_state())
            if plan.is_empty():
                logger.info("No changes to apply")
                return ApplyResult(plan=plan)
            if before_apply is not None:
                before_apply(plan)
            return self.apply(plan)

    def apply(self, plan: Plan) -> ApplyResult:
        """Execute every action of *plan* inside one state transaction.

        Raises:
            ProviderNotFoundError: An action names an unregistered provider.
            ApplyError: A provider call failed; nothing was committed.
            TransactionError: The events or state could not be persisted.
        """
        try:
            events = self._apply(plan)
        except ApplyError as exc:
            self._record_failure(exc)
            raise

        logger.info("Applied plan: %d action(s), %d event(s)", len(plan), len(events))
        return ApplyResult(plan=plan, events=events)

    def _apply(self, plan: Plan) -> list[Event]:
        pending: list[Event] = []
        with self._state.begin_transaction() as tx:
            for action in plan.actions:
                if action.type == ActionType.NOOP:
                    continue
                pending.append(self._dispatch(tx, action))

            try:
                recorded = self._events.record_events(pending)
            except ProvctlError as exc:
                raise TransactionError("Failed to record events", cause=exc) from exc

            tx.commit()
        return recorded

    def _dispatch(self, tx: Transaction, action: Action) -> Event:
        resource = action.resource
        provider = self._registry.resolve(resource.provider, resource)
        logger.info("Dispatching %s %s to provider %s", action.type, resource, provider.name)

        try:
            if resource.kind == ResourceKind.CLUSTER:
                payload = self._apply_cluster(tx.state, provider, action)
            else:
                payload = self._apply_node_pool(tx.state, provider, action)
        except (ProviderNotFoundError, ApplyError):
            raise
        except Exception as exc:
            raise ApplyError(
                f"Failed to {action.type.value} {resource.kind.value}",
                resource=resource,
                cause=exc,
                action=action.type,
            ) from exc

        return Event(
            type=event_type_for(action.type),
            resource=resource,
            actor=self._actor,
            payload=payload,
        )

    def _apply_cluster(
        self,
        state: State,
        provider: CloudProvider,
        action: Action,
    ) -> ResourceEventPayload | DeletedEventPayload:
        cid = action.resource.id
        current = state.clusters.get(cid)
        base = current.status if current is not None else ResourceStatus()
        status = _advance(base, _IN_PROGRESS[action.type])

        if action.type == ActionType.DELETE:
            provider.delete_cluster(cid)
            state.clusters.pop(cid, None)
            return DeletedEventPayload()

        assert isinstance(action.payload, CreateClusterPayload | UpdateClusterPayload)
        request = action.payload.cluster.model_copy(update={"status": status})
        if action.type == ActionType.CREATE:
            live = provider.create_cluster(request)
        else:
            live = provider.update_cluster(request)

        stored = self._stamp(live, cid, status, current)
        state.clusters[cid] = stored
        return ResourceEventPayload(cluster=stored)

    def _apply_node_pool(
        self,
        state: State,
        provider: CloudProvider,
        action: Action,
    ) -> ResourceEventPayload | DeletedEventPayload:
        pid = action.resource.id
        current = state.node_pools.get(pid)
        base = current.status if current is not None else ResourceStatus()
        status = _advance(base, _IN_PROGRESS[action.type])

        if action.type == ActionType.DELETE:
            assert isinstance(action.payload, DeleteNodePoolPayload)
            provider.delete_node_pool(action.payload.cluster_id, pid)
            state.node_pools.pop(pid, None)
            return DeletedEventPayload(cluster_id=action.payload.cluster_id)

        assert isinstance(action.payload, CreateNodePoolPayload | UpdateNodePoolPayload)
        request = action.payload.node_pool.model_copy(update={"status": status})
        if action.type == ActionType.CREATE:
            live = provider.create_node_pool(request)
        else:
            live = provider.update_node_pool(request)

        stored = self._stamp(live, pid, status, current)
        state.node_pools[pid] = stored
        return ResourceEventPayload(node_pool=stored)

    @staticmethod
    def _stamp(
        live: _R,
        resource_id: str,
        status: ResourceStatus,
        current: _R | None,
    ) -> _R:
        """Pin the id, set Running status and timestamps on a provider result."""
        now = datetime.now(tz=UTC)
        created = current.metadata.created_at if current is not None else None
        metadata = live.metadata.model_copy(update={
            "created_at": created or live.metadata.created_at or now,
            "updated_at": now,
        })
        return live.model_copy(update={
            "id": resource_id,
            "metadata": metadata,
            "status": status.transition(Phase.RUNNING, now=now),
        })

    def _record_failure(self, exc: ApplyError) -> None:
        if exc.resource is None:
            return
        action = exc.action or ActionType.NOOP
        event = Event(
            type=EventType.FAILED,
            resource=exc.resource,
            actor=self._actor,
            payload=FailureEventPayload(action=action, error=str(exc.cause or exc)),
        )
        try:
            self._events.record_event(event)
        except ProvctlError:
            logger.exception("Failed to record failure event for %s", exc.resource)
