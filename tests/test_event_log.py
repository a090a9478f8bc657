"""Tests for the hash-chained event log."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from provctl.errors import SerializationError
from provctl.events.log import GENESIS_HASH, EventLog, EventStore, verify_log
from provctl.models import (
    ActionType,
    Cluster,
    ClusterSpec,
    ControlPlaneSpec,
    DeletedEventPayload,
    Event,
    EventType,
    FailureEventPayload,
    NodePool,
    ResourceEventPayload,
    ResourceID,
    ResourceKind,
    WorkerPoolSpec,
)

# --- Helpers ---


def _cluster(cid: str = "c1", version: str = "1.29") -> Cluster:
    return Cluster(
        id=cid,
        spec=ClusterSpec(provider="local", control_plane=ControlPlaneSpec(version=version)),
    )


def _created(cid: str = "c1", version: str = "1.29") -> Event:
    cluster = _cluster(cid, version)
    return Event(
        type=EventType.CREATED,
        resource=cluster.resource_id,
        payload=ResourceEventPayload(cluster=cluster),
    )


def _updated(cid: str, version: str) -> Event:
    cluster = _cluster(cid, version)
    return Event(
        type=EventType.UPDATED,
        resource=cluster.resource_id,
        payload=ResourceEventPayload(cluster=cluster),
    )


def _deleted(cid: str) -> Event:
    return Event(
        type=EventType.DELETED,
        resource=ResourceID(provider="local", kind=ResourceKind.CLUSTER, id=cid),
        payload=DeletedEventPayload(),
    )


def _pool_created(cluster_id: str = "c1", name: str = "general") -> Event:
    pool = NodePool(
        id=f"{cluster_id}/{name}",
        cluster_id=cluster_id,
        spec=WorkerPoolSpec(name=name, desired_size=2),
    )
    return Event(
        type=EventType.CREATED,
        resource=ResourceID(provider="local", kind=ResourceKind.NODE_POOL, id=pool.id),
        payload=ResourceEventPayload(node_pool=pool),
    )


# --- Recording ---


class TestEventLog:
    def test_satisfies_protocol(self, tmp_path: Path) -> None:
        assert isinstance(EventLog(tmp_path / "events.jsonl"), EventStore)

    def test_first_event_chains_from_genesis(self, tmp_path: Path) -> None:
        log = EventLog(tmp_path / "events.jsonl")
        recorded = log.record_event(_created())
        assert recorded.prev_hash == GENESIS_HASH
        assert len(recorded.entry_hash) == 64
        assert log.prev_hash == recorded.entry_hash

    def test_batch_chains_in_order(self, tmp_path: Path) -> None:
        log = EventLog(tmp_path / "events.jsonl")
        recorded = log.record_events([_created("a"), _created("b"), _created("c")])
        assert recorded[1].prev_hash == recorded[0].entry_hash
        assert recorded[2].prev_hash == recorded[1].entry_hash
        assert len(log.read_events()) == 3

    def test_empty_batch_writes_nothing(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        assert EventLog(path).record_events([]) == []
        assert not path.exists()

    def test_does_not_mutate_input(self, tmp_path: Path) -> None:
        event = _created()
        EventLog(tmp_path / "events.jsonl").record_event(event)
        assert event.entry_hash == ""

    def test_reopen_continues_chain(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        first = EventLog(path).record_event(_created("a"))
        second = EventLog(path).record_event(_created("b"))
        assert second.prev_hash == first.entry_hash
        assert verify_log(path) == (True, [])

    def test_corrupt_last_line_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        path.write_text("{not json\n", encoding="utf-8")
        with pytest.raises(SerializationError, match="Corrupt event log"):
            EventLog(path)

    def test_write_failure_keeps_chain_head(self, tmp_path: Path) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("", encoding="utf-8")
        log = EventLog(blocker / "events.jsonl")
        with pytest.raises(SerializationError):
            log.record_event(_created())
        assert log.prev_hash == GENESIS_HASH

    def test_round_trips_payload_types(self, tmp_path: Path) -> None:
        log = EventLog(tmp_path / "events.jsonl")
        failure = Event(
            type=EventType.FAILED,
            resource=_cluster().resource_id,
            payload=FailureEventPayload(action=ActionType.CREATE, error="quota exceeded"),
        )
        log.record_events([_created(), _deleted("c1"), failure])
        events = log.read_events()
        assert isinstance(events[0].payload, ResourceEventPayload)
        assert isinstance(events[1].payload, DeletedEventPayload)
        assert isinstance(events[2].payload, FailureEventPayload)
        assert events[2].payload.error == "quota exceeded"


# --- Queries ---


class TestGetEvents:
    def test_filters_by_kind_and_id(self, tmp_path: Path) -> None:
        log = EventLog(tmp_path / "events.jsonl")
        log.record_events([_created("a"), _created("b"), _updated("a", "1.30"), _pool_created("a")])
        events = log.get_events(ResourceID(kind=ResourceKind.CLUSTER, id="a"))
        assert [e.type for e in events] == [EventType.CREATED, EventType.UPDATED]

    def test_missing_log_is_empty(self, tmp_path: Path) -> None:
        log = EventLog(tmp_path / "events.jsonl")
        assert log.get_events(ResourceID(kind=ResourceKind.CLUSTER, id="a")) == []


class TestReplayEvents:
    def test_folds_into_state(self, tmp_path: Path) -> None:
        log = EventLog(tmp_path / "events.jsonl")
        log.record_events([
            _created("a"),
            _created("b"),
            _pool_created("a"),
            _updated("a", "1.30"),
            _deleted("b"),
        ])
        state = log.replay_events()
        assert set(state.clusters) == {"a"}
        assert state.clusters["a"].spec.control_plane.version == "1.30"
        assert set(state.node_pools) == {"a/general"}

    def test_since_skips_earlier_events(self, tmp_path: Path) -> None:
        log = EventLog(tmp_path / "events.jsonl")
        recorded = log.record_events([_created("a"), _created("b")])
        state = log.replay_events(since=recorded[0])
        assert set(state.clusters) == {"b"}

    def test_failed_events_change_nothing(self, tmp_path: Path) -> None:
        log = EventLog(tmp_path / "events.jsonl")
        log.record_event(Event(
            type=EventType.FAILED,
            resource=_cluster().resource_id,
            payload=FailureEventPayload(action=ActionType.CREATE, error="boom"),
        ))
        assert log.replay_events().is_empty()


# --- verify_log ---


class TestVerifyLog:
    def test_missing_log_is_valid(self, tmp_path: Path) -> None:
        assert verify_log(tmp_path / "nope.jsonl") == (True, [])

    def test_intact_chain(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        EventLog(path).record_events([_created("a"), _created("b")])
        assert verify_log(path) == (True, [])

    def test_tampered_entry_detected(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        EventLog(path).record_events([_created("a"), _created("b")])
        lines = path.read_text(encoding="utf-8").splitlines()
        entry = json.loads(lines[0])
        entry["actor"] = "mallory"
        lines[0] = json.dumps(entry, sort_keys=True)
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")

        valid, errors = verify_log(path)
        assert not valid
        assert any("hash mismatch" in e for e in errors)

    def test_deleted_entry_breaks_chain(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        EventLog(path).record_events([_created("a"), _created("b"), _created("c")])
        lines = path.read_text(encoding="utf-8").splitlines()
        path.write_text("\n".join([lines[0], lines[2]]) + "\n", encoding="utf-8")

        valid, errors = verify_log(path)
        assert not valid
        assert any("chain broken" in e for e in errors)
