"""Append-only JSONL operation journal.

The journal is the audit trail of everything the engine did: every tracked
operation and every safety event (emergency stops, rollback steps, process
escalation) is appended as one JSON record per line.  Nothing is ever
rewritten or removed, independently of what happens to the mutable undo
stack.

Two record types share the file::

    {"record": "operation", "timestamp": ..., "session_id": ..., "operation": {...}}
    {"record": "event", "timestamp": ..., "session_id": ..., "event": "SAFETY_ERROR", ...}

Appends take a :class:`threading.Lock` and an exclusive ``flock`` so that the
worker process and an external controller can both write safely.

Example
-------
>>> journal = OperationJournal(Path("/var/lib/maint/journal.jsonl"))
>>> journal.append(operation)
>>> journal.query("sess-1", {"kind": "file_delete"})
[Operation(...)]
"""
from __future__ import annotations

import fcntl
import json
import logging
import os
import threading
from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path

from maintenance_safety.operations.models import Operation

logger = logging.getLogger(__name__)

RECORD_OPERATION: str = "operation"
RECORD_EVENT: str = "event"

SAFETY_ERROR: str = "SAFETY_ERROR"
STOP_RESET: str = "STOP_RESET"
ROLLBACK_STEP: str = "ROLLBACK_STEP"
ROLLBACK_COMPLETED: str = "ROLLBACK_COMPLETED"
ROLLBACK_POINT_CREATED: str = "ROLLBACK_POINT_CREATED"
PROCESS_TERMINATED: str = "PROCESS_TERMINATED"
PROCESS_KILLED: str = "PROCESS_KILLED"
SESSION_STARTED: str = "SESSION_STARTED"
SESSION_ENDED: str = "SESSION_ENDED"


def _normalise(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


class OperationJournal:
    """Append-only journal of operations and safety events.

    Parameters
    ----------
    journal_path:
        Path to the ``.jsonl`` file.  Parent directories are created on the
        first write.
    """

    def __init__(self, journal_path: Path) -> None:
        self._path = journal_path
        self._lock = threading.Lock()

    @property
    def journal_path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Write API
    # ------------------------------------------------------------------

    def append(self, operation: Operation) -> None:
        """Append *operation* to the journal."""
        self._write(
            {
                "record": RECORD_OPERATION,
                "timestamp": operation.timestamp.isoformat(),
                "session_id": operation.session_id,
                "operation": operation.to_dict(),
            }
        )

    def log_event(self, session_id: str, event: str, **fields: object) -> None:
        """Append a safety event record.

        ``record``, ``timestamp``, ``session_id`` and ``event`` are set by the
        journal and cannot be overridden through *fields*.
        """
        record: dict[str, object] = {
            **fields,
            "record": RECORD_EVENT,
            "timestamp": datetime.now(tz=timezone.utc).isoformat(),
            "session_id": session_id,
            "event": event,
        }
        self._write(record)

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    def read_all(self) -> list[dict[str, object]]:
        """Return every record in file order."""
        return list(self._iter_records())

    def query(
        self,
        session_id: str,
        filters: dict[str, object] | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[Operation]:
        """Return the session's operations in the order they were recorded.

        Parameters
        ----------
        session_id:
            Session whose operations are wanted.
        filters:
            ``{field: expected_value}`` pairs matched against the serialised
            operation (``kind``, ``target``, ``backup_ref`` ...).  All pairs
            must match.
        since, until:
            Optional inclusive time window on the operation timestamp.
        """
        wanted = dict(filters or {})
        start = _normalise(since) if since else None
        end = _normalise(until) if until else None
        results: list[Operation] = []
        for record in self._iter_records():
            if record.get("record") != RECORD_OPERATION:
                continue
            if record.get("session_id") != session_id:
                continue
            payload = record.get("operation")
            if not isinstance(payload, dict):
                continue
            if not all(payload.get(k) == v for k, v in wanted.items()):
                continue
            try:
                operation = Operation.from_dict(payload)
            except (KeyError, ValueError, TypeError) as exc:
                logger.warning("Skipping unreadable journal operation: %s", exc)
                continue
            stamp = _normalise(operation.timestamp)
            if start is not None and stamp < start:
                continue
            if end is not None and stamp > end:
                continue
            results.append(operation)
        return sorted(results, key=lambda op: op.operation_id)

    def events(
        self, session_id: str | None = None, event: str | None = None
    ) -> list[dict[str, object]]:
        """Return event records, optionally filtered by session and name."""
        return [
            record
            for record in self._iter_records()
            if record.get("record") == RECORD_EVENT
            and (session_id is None or record.get("session_id") == session_id)
            and (event is None or record.get("event") == event)
        ]

    def last_operation_id(self, session_id: str) -> int:
        """Highest operation id recorded for *session_id* (0 when none)."""
        highest = 0
        for record in self._iter_records():
            if record.get("record") != RECORD_OPERATION:
                continue
            if record.get("session_id") != session_id:
                continue
            payload = record.get("operation")
            if isinstance(payload, dict):
                try:
                    highest = max(highest, int(payload.get("operation_id", 0)))  # type: ignore[arg-type]
                except (TypeError, ValueError):
                    continue
        return highest

    def count(self) -> int:
        """Total number of records."""
        return sum(1 for _ in self._iter_records())

    def last_n(self, n: int) -> list[dict[str, object]]:
        """Return the *n* most recent records."""
        records = list(self._iter_records())
        return records[-n:] if n < len(records) else records

    def summary(self, session_id: str | None = None) -> dict[str, object]:
        """Counts of operations by kind and events by name."""
        kind_counts: dict[str, int] = {}
        event_counts: dict[str, int] = {}
        total = 0
        for record in self._iter_records():
            if session_id is not None and record.get("session_id") != session_id:
                continue
            total += 1
            if record.get("record") == RECORD_OPERATION:
                payload = record.get("operation")
                kind = str(payload.get("kind")) if isinstance(payload, dict) else "unknown"
                kind_counts[kind] = kind_counts.get(kind, 0) + 1
            else:
                name = str(record.get("event", "unknown"))
                event_counts[name] = event_counts.get(name, 0) + 1
        return {
            "session_id": session_id,
            "total_records": total,
            "operation_counts": kind_counts,
            "event_counts": event_counts,
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _write(self, record: dict[str, object]) -> None:
        line = json.dumps(record, default=str) + "\n"
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as fh:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
                try:
                    fh.write(line)
                    fh.flush()
                    os.fsync(fh.fileno())
                finally:
                    fcntl.flock(fh.fileno(), fcntl.LOCK_UN)

    def _iter_records(self) -> Iterator[dict[str, object]]:
        if not self._path.exists():
            return
        with self._lock:
            with self._path.open("r", encoding="utf-8") as fh:
                lines = fh.readlines()
        for line_no, line in enumerate(lines, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping malformed journal line %d in %s", line_no, self._path)
                continue
            if isinstance(record, dict):
                yield record


__all__ = [
    "OperationJournal",
    "PROCESS_KILLED",
    "PROCESS_TERMINATED",
    "ROLLBACK_COMPLETED",
    "ROLLBACK_POINT_CREATED",
    "ROLLBACK_STEP",
    "SAFETY_ERROR",
    "SESSION_ENDED",
    "SESSION_STARTED",
    "STOP_RESET",
]
