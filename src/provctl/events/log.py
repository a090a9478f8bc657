"""Hash-chained append-only event log.

Each entry is a JSON line containing the event data plus:
- prev_hash: SHA-256 of the previous entry (or "0"*64 for the first)
- entry_hash: SHA-256 of this entry's content (computed before writing)

This creates a tamper-evident chain: modifying or deleting any entry
breaks the chain and is detectable via verify_log().

The log is the audit trail of the reconciliation engine. It can also be
replayed into a State, but that replay is diagnostic only: snapshots are
the authoritative way to reconstruct state.
"""

from __future__ import annotations

import hashlib
import json
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

from provctl.errors import SerializationError
from provctl.models import (
    DeletedEventPayload,
    Event,
    EventType,
    ResourceEventPayload,
    ResourceID,
    ResourceKind,
    State,
)

GENESIS_HASH = "0" * 64


@runtime_checkable
class EventStore(Protocol):
    """Protocol for audit event storage backends."""

    def record_event(self, event: Event) -> Event: ...

    def record_events(self, events: list[Event]) -> list[Event]: ...

    def get_events(self, resource: ResourceID) -> list[Event]: ...

    def replay_events(self, since: Event | None = None) -> State: ...


def _hash_entry(data: dict) -> str:
    payload_bytes = json.dumps(data, sort_keys=True).encode("utf-8")
    return hashlib.sha256(payload_bytes).hexdigest()


class EventLog:
    """Append-only, hash-chained JSON-lines event store.

    Thread-safe via a lock on write operations.
    """

    def __init__(self, log_path: str | Path) -> None:
        self._path = Path(log_path)
        self._lock = threading.Lock()
        self._prev_hash = self._read_last_hash()

    def _read_last_hash(self) -> str:
        """Read the hash of the last entry, or return genesis hash."""
        if not self._path.exists() or self._path.stat().st_size == 0:
            return GENESIS_HASH

        last_line = ""
        with self._path.open("r", encoding="utf-8") as f:
            for line in f:
                stripped = line.strip()
                if stripped:
                    last_line = stripped

        if not last_line:
            return GENESIS_HASH

        try:
            entry = json.loads(last_line)
            return entry.get("entry_hash", GENESIS_HASH)
        except json.JSONDecodeError as exc:
            raise SerializationError(
                f"Corrupt event log, last line is not valid JSON: {self._path}"
            ) from exc

    @property
    def path(self) -> Path:
        return self._path

    @property
    def prev_hash(self) -> str:
        return self._prev_hash

    def record_event(self, event: Event) -> Event:
        """Append a single event. Returns it with its chain hashes set."""
        return self.record_events([event])[0]

    def record_events(self, events: list[Event]) -> list[Event]:
        """Append a batch of events with one write.

        Either every event in the batch lands in the log or none does;
        the in-memory chain head only advances after the write succeeds.
        """
        if not events:
            return []

        with self._lock:
            prev_hash = self._prev_hash
            chained: list[Event] = []
            lines: list[str] = []
            for event in events:
                event = event.model_copy(update={"prev_hash": prev_hash, "entry_hash": ""})
                hash_payload = event.model_dump(mode="json", exclude={"entry_hash"})
                event.entry_hash = _hash_entry(hash_payload)
                lines.append(json.dumps(event.model_dump(mode="json"), sort_keys=True))
                chained.append(event)
                prev_hash = event.entry_hash

            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as f:
                    f.write("\n".join(lines) + "\n")
            except OSError as exc:
                raise SerializationError(f"Failed to write event log {self._path}", cause=exc) from exc

            self._prev_hash = prev_hash

        return chained

    def read_events(self) -> list[Event]:
        """Read all events from the log file."""
        if not self._path.exists():
            return []

        events: list[Event] = []
        with self._path.open("r", encoding="utf-8") as f:
            for i, line in enumerate(f):
                stripped = line.strip()
                if not stripped:
                    continue
                try:
                    events.append(Event.model_validate_json(stripped))
                except ValueError as e:
                    raise SerializationError(
                        f"Corrupt entry at line {i + 1} in {self._path}", cause=e,
                    ) from e

        return events

    def get_events(self, resource: ResourceID) -> list[Event]:
        """Return all events for a resource, matched on (kind, id)."""
        return [e for e in self.read_events() if e.resource.key == resource.key]

    def replay_events(self, since: Event | None = None) -> State:
        """Fold events into a State.

        With *since*, only events recorded after that event are replayed,
        on top of an empty state. Failed events carry no state change.
        """
        events = self.read_events()
        if since is not None:
            ids = [e.id for e in events]
            start = ids.index(since.id) + 1 if since.id in ids else 0
            events = events[start:]

        state = State()
        for event in events:
            _apply_event(state, event)
        return state


def _apply_event(state: State, event: Event) -> None:
    payload = event.payload
    if event.type in (EventType.CREATED, EventType.UPDATED):
        assert isinstance(payload, ResourceEventPayload)
        if payload.cluster is not None:
            state.clusters[payload.cluster.id] = payload.cluster
        if payload.node_pool is not None:
            state.node_pools[payload.node_pool.id] = payload.node_pool
    elif event.type == EventType.DELETED:
        assert isinstance(payload, DeletedEventPayload)
        if event.resource.kind == ResourceKind.CLUSTER:
            state.clusters.pop(event.resource.id, None)
        else:
            state.node_pools.pop(event.resource.id, None)


def verify_log(log_path: str | Path) -> tuple[bool, list[str]]:
    """Verify the integrity of a hash-chained event log.

    Returns (is_valid, list_of_errors).
    An empty error list means the log is intact.
    """
    log_path = Path(log_path)
    if not log_path.exists():
        return True, []

    errors: list[str] = []
    prev_hash = GENESIS_HASH
    line_num = 0

    with log_path.open("r", encoding="utf-8") as f:
        for line in f:
            stripped = line.strip()
            if not stripped:
                continue
            line_num += 1

            try:
                data = json.loads(stripped)
            except json.JSONDecodeError as e:
                errors.append(f"Line {line_num}: invalid JSON: {e}")
                continue

            stored_prev = data.get("prev_hash", "")
            if stored_prev != prev_hash:
                errors.append(
                    f"Line {line_num}: chain broken, "
                    f"expected prev_hash {prev_hash[:16]}..., "
                    f"got {stored_prev[:16]}..."
                )

            stored_hash = data.get("entry_hash", "")
            verify_data = {k: v for k, v in data.items() if k != "entry_hash"}
            recomputed = _hash_entry(verify_data)

            if stored_hash != recomputed:
                errors.append(
                    f"Line {line_num}: hash mismatch, "
                    f"stored {stored_hash[:16]}..., "
                    f"computed {recomputed[:16]}..."
                )

            prev_hash = stored_hash

    return len(errors) == 0, errors
