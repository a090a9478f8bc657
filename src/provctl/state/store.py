"""Persisted state managers and scoped transactions.

The persisted State is the only mutable shared resource in provctl. Writers
go through a :class:`Transaction`, which works on a private copy of the state
and guarantees commit-or-rollback on every exit path::

    with manager.begin_transaction() as tx:
        tx.state.clusters[cluster.id] = cluster
        tx.commit()

Leaving the ``with`` block without calling ``commit()`` (including via an
exception) rolls the transaction back and leaves persisted state untouched.

``lock()`` / ``unlock()`` provide advisory mutual exclusion for the full
read-compare-write span of plan+apply and snapshot restore. The lock lives in
the manager instance, so it only excludes threads of one process; see
:class:`BaseStateManager`.
"""

from __future__ import annotations

import abc
import json
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType
from typing import Protocol, runtime_checkable

from pydantic import ValidationError

from provctl.errors import SerializationError, StateLockError, TransactionError
from provctl.models import Cluster, NodePool, State
from provctl.state.database import Database

logger = logging.getLogger(__name__)


@runtime_checkable
class StateManager(Protocol):
    """Protocol for persisted state backends."""

    def get_state(self) -> State: ...

    def save_state(self, state: State) -> None: ...

    def begin_transaction(self) -> Transaction: ...

    def lock(self, timeout: float | None = None) -> None: ...

    def unlock(self) -> None: ...


class Transaction:
    """A scoped, single-use write to a state manager."""

    def __init__(self, manager: BaseStateManager, base: State) -> None:
        self._manager = manager
        self._state = base.copy_deep()
        self._active = True
        self._committed = False

    @property
    def state(self) -> State:
        """The working copy. Mutations are invisible until commit."""
        return self._state

    @property
    def active(self) -> bool:
        return self._active

    @property
    def committed(self) -> bool:
        return self._committed

    def stage(self, state: State) -> None:
        """Replace the working copy wholesale."""
        self._require_active()
        self._state = state.copy_deep()

    def commit(self) -> None:
        self._require_active()
        try:
            self._manager.save_state(self._state)
        except Exception as exc:
            self._active = False
            raise TransactionError("Failed to commit state transaction", cause=exc) from exc
        self._active = False
        self._committed = True

    def rollback(self) -> None:
        if not self._active:
            return
        self._active = False
        logger.warning("State transaction rolled back")

    def _require_active(self) -> None:
        if not self._active:
            raise TransactionError("Transaction is no longer active")

    def __enter__(self) -> Transaction:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._active:
            self.rollback()


class BaseStateManager(abc.ABC):
    """Shared lock and transaction plumbing for state managers.

    The lock is a re-entrant in-process lock held by the manager instance.
    It serializes threads that share this manager, but two provctl processes
    (or two managers opened on the same database) do not exclude each other:
    run one writer, such as ``reconcile``, per state database.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()

    @abc.abstractmethod
    def get_state(self) -> State: ...

    @abc.abstractmethod
    def save_state(self, state: State) -> None: ...

    def begin_transaction(self) -> Transaction:
        return Transaction(self, self.get_state())

    def lock(self, timeout: float | None = None) -> None:
        acquired = self._lock.acquire(timeout=-1 if timeout is None else timeout)
        if not acquired:
            raise StateLockError(f"Timed out after {timeout}s waiting for the state lock")

    def unlock(self) -> None:
        try:
            self._lock.release()
        except RuntimeError as exc:
            raise StateLockError("State lock is not held by this thread", cause=exc) from exc


@contextmanager
def locked(manager: StateManager, timeout: float | None = None) -> Iterator[StateManager]:
    """Hold the advisory state lock for the duration of the block."""
    manager.lock(timeout)
    try:
        yield manager
    finally:
        manager.unlock()


class MemoryStateManager(BaseStateManager):
    """In-process state manager. Every read and write is a deep copy."""

    def __init__(self, state: State | None = None) -> None:
        super().__init__()
        self._state = (state or State()).copy_deep()

    def get_state(self) -> State:
        return self._state.copy_deep()

    def save_state(self, state: State) -> None:
        self._state = state.copy_deep()


class SQLiteStateManager(BaseStateManager):
    """State manager backed by a SQLite database.

    ``save_state`` replaces the full contents of the clusters and node pool
    tables in one database transaction, so a reader never observes a
    partially written state.
    """

    def __init__(self, db_path: str | Path) -> None:
        super().__init__()
        self._db = Database(db_path)

    @property
    def path(self) -> str:
        return self._db.path

    def get_state(self) -> State:
        try:
            cluster_rows = self._db.fetchall("SELECT id, body FROM clusters ORDER BY id")
            pool_rows = self._db.fetchall("SELECT id, body FROM node_pools ORDER BY id")
        except Exception as exc:
            raise SerializationError(f"Failed to read state from {self.path}", cause=exc) from exc

        try:
            clusters = [Cluster.model_validate_json(row["body"]) for row in cluster_rows]
            pools = [NodePool.model_validate_json(row["body"]) for row in pool_rows]
            return State.of(clusters, pools)
        except ValidationError as exc:
            raise SerializationError(f"Corrupt state row in {self.path}", cause=exc) from exc

    def save_state(self, state: State) -> None:
        now = datetime.now(tz=UTC).isoformat()
        try:
            cluster_rows = [
                (c.id, c.spec.provider, c.model_dump_json(), now)
                for c in state.clusters.values()
            ]
            pool_rows = [
                (p.id, p.cluster_id, p.model_dump_json(), now)
                for p in state.node_pools.values()
            ]
        except (TypeError, ValueError) as exc:
            raise SerializationError("Failed to serialize state", cause=exc) from exc

        with self._db.transaction() as conn:
            conn.execute("DELETE FROM node_pools")
            conn.execute("DELETE FROM clusters")
            conn.executemany(
                "INSERT INTO clusters (id, provider, body, updated_at) VALUES (?, ?, ?, ?)",
                cluster_rows,
            )
            conn.executemany(
                "INSERT INTO node_pools (id, cluster_id, body, updated_at) VALUES (?, ?, ?, ?)",
                pool_rows,
            )

    def close(self) -> None:
        self._db.close()


def dump_state(state: State) -> str:
    """Canonical JSON for a state: sorted keys, no insignificant whitespace."""
    return json.dumps(state.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
