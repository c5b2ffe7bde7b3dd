"""Per-session undo stack and rollback points.

The undo stack holds the operations of one session that can still be
reversed, newest on top.  Unlike the journal it is mutable: rolling an
operation back removes it from the stack.  Pushes must arrive in operation-id
order, so the stack always mirrors reverse-chronological order.

A :class:`RollbackPoint` records the stack depth at the time it was created
plus a backup of every file the session has touched so far.  When rollback
pops the stack below a point's depth, that point can no longer be reached
and is dropped.

The stack can be persisted as JSON so a session that crashed can be resumed
and rolled back by a later process.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from maintenance_safety.backup.store import Backup, BackupStore
from maintenance_safety.emergency.stop_signal import CancellationToken
from maintenance_safety.journal.journal import ROLLBACK_POINT_CREATED, OperationJournal
from maintenance_safety.operations.models import Operation, OperationKind

logger = logging.getLogger(__name__)

_FILE_KINDS = frozenset(
    {OperationKind.FILE_CREATE, OperationKind.FILE_MODIFY, OperationKind.FILE_DELETE}
)


@dataclass(frozen=True)
class RollbackPoint:
    """A named checkpoint in a session's undo stack.

    Attributes
    ----------
    point_id:
        Unique identifier within the session.
    name:
        Caller-supplied label.
    created_at:
        UTC creation time.
    journal_offset:
        Undo stack depth when the point was created.
    backup_ref:
        Backup of the touched files at that moment, or None when the
        session had touched no files yet.
    """

    point_id: str
    name: str
    created_at: datetime
    journal_offset: int
    backup_ref: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "point_id": self.point_id,
            "name": self.name,
            "created_at": self.created_at.isoformat(),
            "journal_offset": self.journal_offset,
            "backup_ref": self.backup_ref,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> RollbackPoint:
        return cls(
            point_id=str(data["point_id"]),
            name=str(data["name"]),
            created_at=datetime.fromisoformat(str(data["created_at"])),
            journal_offset=int(data["journal_offset"]),  # type: ignore[arg-type]
            backup_ref=data.get("backup_ref") or None,  # type: ignore[arg-type]
        )


class UndoStack:
    """LIFO of reversible operations for one session.

    Parameters
    ----------
    session_id:
        Owning session.
    backup_store:
        Store used to snapshot touched files when a point is marked.
    journal:
        Journal that receives point-creation events.
    persist_path:
        Optional JSON file the stack is saved to after every change.
    """

    def __init__(
        self,
        session_id: str,
        backup_store: BackupStore,
        journal: OperationJournal,
        persist_path: Path | None = None,
    ) -> None:
        self._session_id = session_id
        self._store = backup_store
        self._journal = journal
        self._persist_path = persist_path
        self._entries: list[Operation] = []
        self._points: list[RollbackPoint] = []
        self._touched: list[str] = []
        self._point_counter: int = 0
        self._last_point_backup: str | None = None

    # ------------------------------------------------------------------
    # Stack operations
    # ------------------------------------------------------------------

    def push(self, operation: Operation) -> None:
        """Push *operation* on top of the stack.

        Raises
        ------
        ValueError:
            When the operation belongs to another session or its id is not
            greater than the current top's id.
        """
        if operation.session_id != self._session_id:
            raise ValueError(
                f"Operation from session {operation.session_id!r} pushed onto "
                f"undo stack of {self._session_id!r}"
            )
        top = self.peek()
        if top is not None and operation.operation_id <= top.operation_id:
            raise ValueError(
                f"Operation {operation.operation_id} is not newer than stack top "
                f"{top.operation_id}"
            )
        self._entries.append(operation)
        if operation.kind in _FILE_KINDS and operation.target not in self._touched:
            self._touched.append(operation.target)
        self._save()

    def pop(self) -> Operation | None:
        """Remove and return the newest operation, or None when empty.

        Rollback points that sit above the new depth are dropped.
        """
        if not self._entries:
            return None
        operation = self._entries.pop()
        depth = len(self._entries)
        stale = [p for p in self._points if p.journal_offset > depth]
        if stale:
            self._points = [p for p in self._points if p.journal_offset <= depth]
            for point in stale:
                logger.info(
                    "Rollback point %s (%s) dropped: stack popped below it",
                    point.point_id,
                    point.name,
                )
        self._save()
        return operation

    def peek(self) -> Operation | None:
        """Return the newest operation without removing it."""
        return self._entries[-1] if self._entries else None

    @property
    def depth(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> list[Operation]:
        """All operations, oldest first."""
        return list(self._entries)

    def top(self, n: int) -> list[Operation]:
        """The *n* newest operations, newest first."""
        if n <= 0:
            return []
        return list(reversed(self._entries[-n:]))

    @property
    def touched_paths(self) -> list[str]:
        """File targets touched since the session began, first-touch order."""
        return list(self._touched)

    @property
    def session_id(self) -> str:
        return self._session_id

    # ------------------------------------------------------------------
    # Rollback points
    # ------------------------------------------------------------------

    def mark_point(
        self, name: str, token: CancellationToken | None = None
    ) -> RollbackPoint:
        """Record the current depth and snapshot every touched file.

        When an earlier point's backup exists and covers the same root, the
        snapshot is incremental against it; otherwise a full backup of the
        touched files that currently exist is taken.

        Raises
        ------
        BackupCreationError:
            The snapshot could not be written; no point is recorded.
        """
        backup = self._snapshot_touched(token)
        self._point_counter += 1
        point = RollbackPoint(
            point_id=f"{self._session_id}-rp{self._point_counter}",
            name=name,
            created_at=datetime.now(tz=timezone.utc),
            journal_offset=len(self._entries),
            backup_ref=backup.backup_id if backup else None,
        )
        self._points.append(point)
        if backup is not None:
            self._last_point_backup = backup.backup_id
        self._save()
        self._journal.log_event(
            self._session_id,
            ROLLBACK_POINT_CREATED,
            point_id=point.point_id,
            name=name,
            journal_offset=point.journal_offset,
            backup_ref=point.backup_ref,
        )
        logger.info(
            "Rollback point %s (%s) created at depth %d",
            point.point_id,
            name,
            point.journal_offset,
        )
        return point

    def _snapshot_touched(self, token: CancellationToken | None) -> Backup | None:
        if not self._touched:
            return None
        paths = [Path(p) for p in self._touched]
        base = self._usable_base(paths)
        if base is not None:
            return self._store.create_incremental_backup(base, paths, token=token)
        existing = [p for p in paths if p.exists()]
        if not existing:
            return None
        return self._store.create_full_backup(existing, token=token)

    def _usable_base(self, paths: list[Path]) -> Backup | None:
        if self._last_point_backup is None:
            return None
        try:
            base = self._store.get(self._last_point_backup)
        except KeyError:
            return None
        if base.corrupted:
            return None
        for path in paths:
            try:
                path.absolute().relative_to(base.root_path)
            except ValueError:
                return None
        return base

    def get_point(self, point_ref: str) -> RollbackPoint:
        """Look up a point by id, or by name (newest wins).

        Raises
        ------
        KeyError:
            When no live point matches.
        """
        for point in reversed(self._points):
            if point.point_id == point_ref:
                return point
        for point in reversed(self._points):
            if point.name == point_ref:
                return point
        raise KeyError(f"Unknown rollback point: {point_ref}")

    def discard_point(self, point_id: str) -> None:
        """Forget the point with *point_id* (no error when absent)."""
        self._points = [p for p in self._points if p.point_id != point_id]
        self._save()

    def points(self) -> list[RollbackPoint]:
        """Live rollback points, oldest first."""
        return list(self._points)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, object]:
        return {
            "session_id": self._session_id,
            "entries": [op.to_dict() for op in self._entries],
            "points": [p.to_dict() for p in self._points],
            "touched": list(self._touched),
            "point_counter": self._point_counter,
            "last_point_backup": self._last_point_backup,
        }

    def _save(self) -> None:
        if self._persist_path is None:
            return
        self._persist_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._persist_path.with_name(self._persist_path.name + ".tmp")
        tmp.write_text(json.dumps(self.to_dict(), indent=2) + "\n", encoding="utf-8")
        os.replace(tmp, self._persist_path)

    @classmethod
    def load(
        cls,
        session_id: str,
        backup_store: BackupStore,
        journal: OperationJournal,
        persist_path: Path,
    ) -> UndoStack:
        """Load a persisted stack, or return an empty one bound to *persist_path*."""
        stack = cls(session_id, backup_store, journal, persist_path)
        if not persist_path.is_file():
            return stack
        data = json.loads(persist_path.read_text(encoding="utf-8"))
        if data.get("session_id") != session_id:
            raise ValueError(
                f"Persisted undo stack {persist_path} belongs to {data.get('session_id')!r}"
            )
        stack._entries = [Operation.from_dict(item) for item in data.get("entries", [])]
        stack._points = [RollbackPoint.from_dict(item) for item in data.get("points", [])]
        stack._touched = list(data.get("touched", []))
        stack._point_counter = int(data.get("point_counter", 0))
        stack._last_point_backup = data.get("last_point_backup") or None
        logger.info(
            "Resumed undo stack for session %s (%d entries, %d points)",
            session_id,
            len(stack._entries),
            len(stack._points),
        )
        return stack

    def delete_persisted(self) -> None:
        """Remove the persisted file, if any."""
        if self._persist_path is not None:
            self._persist_path.unlink(missing_ok=True)


__all__ = [
    "RollbackPoint",
    "UndoStack",
]
