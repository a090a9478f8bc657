"""Snapshot manager: point-in-time, checksummed copies of the persisted state.

Each snapshot is one JSON document stored as ``<snapshot_dir>/<id>.json``.
Files are written to a temporary name and moved into place, and an existing
snapshot file is never overwritten: snapshots are immutable once written
and only disappear through explicit deletion or retention pruning.

Restores verify the checksum first and always take a ``pre_restore`` backup
of the current state, so every non-dry-run restore can itself be undone.
"""

from __future__ import annotations

import hashlib
import logging
import re
import secrets
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from provctl.errors import (
    IntegrityError,
    SerializationError,
    SnapshotError,
    SnapshotNotFoundError,
)
from provctl.models import (
    ChangeAction,
    RestoreChange,
    RestoreResult,
    RetentionPolicy,
    Snapshot,
    SnapshotInfo,
    SnapshotMetadata,
    State,
    TriggerReason,
)
from provctl.state.store import StateManager, dump_state, locked

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT_VERSION = "1.0"

_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def compute_checksum(state: State) -> str:
    """Collision-resistant content hash of a state's canonical JSON."""
    digest = hashlib.sha256(dump_state(state).encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


def new_snapshot_id(now: datetime) -> str:
    return f"snapshot-{now.strftime('%Y%m%d-%H%M%S')}-{secrets.token_hex(3)}"


class SnapshotManager:
    """Creates, verifies, lists, restores and prunes state snapshots."""

    def __init__(
        self,
        snapshot_dir: str | Path,
        state: StateManager,
        version: str = SNAPSHOT_FORMAT_VERSION,
        created_by: str = "provctl",
        clock: Callable[[], datetime] | None = None,
        lock_timeout: float | None = None,
    ) -> None:
        self._dir = Path(snapshot_dir)
        self._state = state
        self._version = version
        self._created_by = created_by
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._lock_timeout = lock_timeout

    @property
    def snapshot_dir(self) -> Path:
        return self._dir

    # --- Create / load ---

    def create_snapshot(
        self,
        description: str = "",
        trigger_reason: TriggerReason = TriggerReason.MANUAL,
        tags: dict[str, str] | None = None,
    ) -> Snapshot:
        """Capture the current persisted state and write it to disk."""
        snapshot = self._build(self._state.get_state(), description, trigger_reason, tags)
        self._write(snapshot)
        logger.info(
            "Created snapshot %s (%s): %d cluster(s), %d node pool(s)",
            snapshot.id, trigger_reason, snapshot.metadata.cluster_count,
            snapshot.metadata.node_pool_count,
        )
        return snapshot

    def _build(
        self,
        state: State,
        description: str,
        trigger_reason: TriggerReason,
        tags: dict[str, str] | None = None,
    ) -> Snapshot:
        now = self._clock()
        state = state.copy_deep()
        return Snapshot(
            id=new_snapshot_id(now),
            created_at=now,
            description=description,
            state=state,
            metadata=SnapshotMetadata(
                version=self._version,
                created_by=self._created_by,
                trigger_reason=trigger_reason,
                cluster_count=len(state.clusters),
                node_pool_count=len(state.node_pools),
                tags=dict(tags or {}),
            ),
            checksum=compute_checksum(state),
        )

    def _path(self, snapshot_id: str) -> Path:
        if not _ID_PATTERN.match(snapshot_id):
            raise SnapshotNotFoundError(f"Invalid snapshot id: {snapshot_id!r}")
        return self._dir / f"{snapshot_id}.json"

    def _write(self, snapshot: Snapshot) -> None:
        path = self._path(snapshot.id)
        if path.exists():
            raise SnapshotError(f"Snapshot already exists: {snapshot.id}")

        tmp = path.with_name(f".{path.name}.tmp")
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            tmp.write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise SerializationError(f"Failed to write snapshot {snapshot.id}", cause=exc) from exc

    def load_snapshot(self, snapshot_id: str) -> Snapshot:
        """Read a snapshot from disk.

        Raises:
            SnapshotNotFoundError: No snapshot with that id exists.
            SerializationError: The file exists but cannot be parsed.
        """
        path = self._path(snapshot_id)
        if not path.exists():
            raise SnapshotNotFoundError(f"Snapshot not found: {snapshot_id}")
        try:
            return Snapshot.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            raise SerializationError(f"Failed to read snapshot {snapshot_id}", cause=exc) from exc

    def verify_snapshot(self, snapshot_id: str) -> bool:
        """True if the stored checksum matches the snapshot's state."""
        snapshot = self.load_snapshot(snapshot_id)
        return snapshot.checksum == compute_checksum(snapshot.state)

    # --- List / delete / prune ---

    def list_snapshots(self) -> list[SnapshotInfo]:
        """All readable snapshots, newest first. Corrupt files are skipped."""
        if not self._dir.exists():
            return []

        infos: list[SnapshotInfo] = []
        for path in self._dir.glob("*.json"):
            try:
                snapshot = Snapshot.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, ValidationError) as exc:
                logger.warning("Skipping unreadable snapshot file %s: %s", path, exc)
                continue
            infos.append(SnapshotInfo(
                id=snapshot.id,
                created_at=snapshot.created_at,
                description=snapshot.description,
                trigger_reason=snapshot.metadata.trigger_reason,
                cluster_count=snapshot.metadata.cluster_count,
                node_pool_count=snapshot.metadata.node_pool_count,
                size_bytes=path.stat().st_size,
                intact=snapshot.checksum == compute_checksum(snapshot.state),
            ))

        infos.sort(key=lambda i: (i.created_at, i.id), reverse=True)
        return infos

    def delete_snapshot(self, snapshot_id: str) -> None:
        path = self._path(snapshot_id)
        if not path.exists():
            raise SnapshotNotFoundError(f"Snapshot not found: {snapshot_id}")
        try:
            path.unlink()
        except OSError as exc:
            raise SerializationError(f"Failed to delete snapshot {snapshot_id}", cause=exc) from exc
        logger.info("Deleted snapshot %s", snapshot_id)

    def prune_snapshots(self, policy: RetentionPolicy) -> list[str]:
        """Delete snapshots outside *policy* and return their ids.

        The policy is evaluated once against the full newest-first list, so
        ``max_count`` always keeps exactly the N most recent snapshots.
        """
        snapshots = self.list_snapshots()
        now = self._clock()

        marked: list[str] = []
        for index, info in enumerate(snapshots):
            too_old = policy.max_age is not None and now - info.created_at > policy.max_age
            too_many = policy.max_count is not None and index >= policy.max_count
            if too_old or too_many:
                marked.append(info.id)

        for snapshot_id in marked:
            self.delete_snapshot(snapshot_id)

        if marked:
            logger.info("Pruned %d snapshot(s), %d kept", len(marked), len(snapshots) - len(marked))
        return marked

    # --- Restore ---

    def restore_snapshot(self, snapshot_id: str, dry_run: bool = False) -> RestoreResult:
        """Restore the persisted state from a snapshot.

        A dry run only computes the change-set. A real restore first
        backs up the current state with trigger reason ``pre_restore``.

        Raises:
            IntegrityError: The snapshot's checksum does not match its content.
        """
        snapshot = self.load_snapshot(snapshot_id)
        if snapshot.checksum != compute_checksum(snapshot.state):
            raise IntegrityError(f"Checksum mismatch for snapshot {snapshot_id}")

        with locked(self._state, self._lock_timeout):
            current = self._state.get_state()
            changes = compute_changes(current, snapshot.state)

            if dry_run:
                return RestoreResult(
                    snapshot_id=snapshot_id,
                    restored_at=self._clock(),
                    dry_run=True,
                    success=True,
                    changes=changes,
                )

            backup = self._build(
                current,
                f"Automatic backup before restoring {snapshot_id}",
                TriggerReason.PRE_RESTORE,
            )
            self._write(backup)

            with self._state.begin_transaction() as tx:
                tx.stage(snapshot.state)
                tx.commit()

        logger.info(
            "Restored snapshot %s (%d change(s)), backup %s",
            snapshot_id, len(changes), backup.id,
        )
        return RestoreResult(
            snapshot_id=snapshot_id,
            backup_id=backup.id,
            restored_at=self._clock(),
            dry_run=False,
            success=True,
            changes=changes,
        )


def compute_changes(current: State, target: State) -> list[RestoreChange]:
    """Change-set that turns *current* into *target*, clusters then node pools."""
    changes: list[RestoreChange] = []

    for cid in sorted(current.clusters.keys() | target.clusters.keys()):
        before = current.clusters.get(cid)
        after = target.clusters.get(cid)
        rid = (after or before).resource_id
        change = _classify(
            rid,
            before.spec.model_dump(mode="json") if before is not None else None,
            after.spec.model_dump(mode="json") if after is not None else None,
        )
        if change is not None:
            changes.append(change)

    for pid in sorted(current.node_pools.keys() | target.node_pools.keys()):
        before_pool = current.node_pools.get(pid)
        after_pool = target.node_pools.get(pid)
        if after_pool is not None:
            rid = target.pool_resource_id(after_pool)
        else:
            rid = current.pool_resource_id(before_pool)
        change = _classify(
            rid,
            before_pool.spec.model_dump(mode="json") if before_pool is not None else None,
            after_pool.spec.model_dump(mode="json") if after_pool is not None else None,
        )
        if change is not None:
            changes.append(change)

    return changes


def _classify(resource, before, after) -> RestoreChange | None:
    if before is None:
        return RestoreChange(action=ChangeAction.ADD, resource=resource, after=after)
    if after is None:
        return RestoreChange(action=ChangeAction.REMOVE, resource=resource, before=before)
    if before != after:
        return RestoreChange(
            action=ChangeAction.MODIFY, resource=resource, before=before, after=after,
        )
    return None


_CHANGE_SYMBOLS = {
    ChangeAction.ADD: "+",
    ChangeAction.MODIFY: "~",
    ChangeAction.REMOVE: "-",
}


def format_restore_result(result: RestoreResult) -> str:
    """Render a restore result as human-readable text."""
    if result.dry_run:
        lines = [f"DRY RUN: restore of snapshot {result.snapshot_id}"]
    elif result.success:
        lines = [f"Restored snapshot {result.snapshot_id}"]
        if result.backup_id:
            lines.append(f"Backup created: {result.backup_id}")
    else:
        lines = [f"Restore of snapshot {result.snapshot_id} failed"]

    counts = {action: 0 for action in ChangeAction}
    for change in result.changes:
        counts[change.action] += 1
        lines.append(
            f"  {_CHANGE_SYMBOLS[change.action]} "
            f"{change.resource.kind.value}/{change.resource.id}"
        )

    lines.append("")
    lines.append(
        f"Changes: {counts[ChangeAction.ADD]} to add, "
        f"{counts[ChangeAction.MODIFY]} to modify, "
        f"{counts[ChangeAction.REMOVE]} to remove"
    )
    return "\n".join(lines)
