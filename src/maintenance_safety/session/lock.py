"""Machine-wide exclusive session lock.

The lock is a small JSON file created with ``O_CREAT | O_EXCL``::

    {"session_id": "...", "owner_pid": 4242,
     "started_at": "...", "heartbeat_at": "..."}

The holder refreshes ``heartbeat_at`` from a daemon thread.  A lock whose
owner process is gone, or whose heartbeat is older than ``stale_after``
seconds, is considered abandoned and is taken over with a warning.
"""
from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

from maintenance_safety.emergency.coordinator import process_alive
from maintenance_safety.errors import SessionBusyError

logger = logging.getLogger(__name__)

_ACQUIRE_ATTEMPTS: int = 3


@dataclass(frozen=True)
class LockInfo:
    """Contents of the lock file."""

    session_id: str
    owner_pid: int
    started_at: datetime
    heartbeat_at: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "owner_pid": self.owner_pid,
            "started_at": self.started_at.isoformat(),
            "heartbeat_at": self.heartbeat_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> LockInfo:
        return cls(
            session_id=str(data["session_id"]),
            owner_pid=int(data["owner_pid"]),  # type: ignore[arg-type]
            started_at=datetime.fromisoformat(str(data["started_at"])),
            heartbeat_at=datetime.fromisoformat(str(data["heartbeat_at"])),
        )


class SessionLock:
    """PID + heartbeat lock guaranteeing one active session per machine.

    Parameters
    ----------
    lock_path:
        Location of the lock file.
    stale_after:
        Seconds without a heartbeat after which the lock is abandoned.
    heartbeat_interval:
        Seconds between heartbeat refreshes.
    """

    def __init__(
        self,
        lock_path: Path,
        stale_after: float = 60.0,
        heartbeat_interval: float = 5.0,
    ) -> None:
        self._path = lock_path
        self._stale_after = timedelta(seconds=stale_after)
        self._heartbeat_interval = heartbeat_interval
        self._held: LockInfo | None = None
        self._lock = threading.Lock()
        self._halt = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> LockInfo | None:
        return self._held

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    def acquire(self, session_id: str) -> LockInfo:
        """Take the lock for *session_id*.

        Raises
        ------
        SessionBusyError:
            When a live session already holds the lock.
        """
        self._path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(_ACQUIRE_ATTEMPTS):
            now = datetime.now(tz=timezone.utc)
            info = LockInfo(session_id, os.getpid(), now, now)
            try:
                fd = os.open(self._path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                self._handle_existing()
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(info.to_dict(), fh)
                fh.flush()
                os.fsync(fh.fileno())
            with self._lock:
                self._held = info
            logger.info("Session lock acquired for %s (pid %d)", session_id, info.owner_pid)
            return info
        holder = self.read()
        raise SessionBusyError(
            holder.session_id if holder else "unknown",
            holder.owner_pid if holder else 0,
        )

    def _handle_existing(self) -> None:
        holder = self.read()
        if holder is None:
            # Unparseable lock: only abandoned once it has gone quiet.
            try:
                age = datetime.now(tz=timezone.utc) - datetime.fromtimestamp(
                    self._path.stat().st_mtime, tz=timezone.utc
                )
            except FileNotFoundError:
                return
            if age <= self._stale_after:
                raise SessionBusyError("unknown", 0)
            logger.warning("Removing unreadable session lock %s", self._path)
            self._path.unlink(missing_ok=True)
            return
        if not self.is_stale(holder):
            raise SessionBusyError(holder.session_id, holder.owner_pid)
        logger.warning(
            "Taking over stale session lock of %s (pid %d, last heartbeat %s)",
            holder.session_id,
            holder.owner_pid,
            holder.heartbeat_at.isoformat(),
        )
        self._path.unlink(missing_ok=True)

    def release(self) -> None:
        """Stop the heartbeat and remove the lock if this process holds it."""
        self.stop_heartbeat()
        with self._lock:
            held = self._held
            self._held = None
        if held is None:
            return
        current = self.read()
        if current is not None and (current.session_id, current.owner_pid) == (
            held.session_id,
            held.owner_pid,
        ):
            self._path.unlink(missing_ok=True)
            logger.info("Session lock released for %s", held.session_id)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def read(self) -> LockInfo | None:
        """Return the current lock contents, or None if absent or unreadable."""
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            return LockInfo.from_dict(data)
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Unreadable session lock %s: %s", self._path, exc)
            return None

    def is_stale(self, info: LockInfo, now: datetime | None = None) -> bool:
        """True when the owner is dead or the heartbeat has gone quiet."""
        effective_now = now or datetime.now(tz=timezone.utc)
        if info.owner_pid != os.getpid() and not process_alive(info.owner_pid):
            return True
        return effective_now - info.heartbeat_at > self._stale_after

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def heartbeat(self) -> LockInfo | None:
        """Refresh ``heartbeat_at``.  Returns None if the lock was lost."""
        with self._lock:
            held = self._held
            if held is None:
                return None
            current = self.read()
            if current is None or (current.session_id, current.owner_pid) != (
                held.session_id,
                held.owner_pid,
            ):
                logger.warning("Session lock for %s was lost", held.session_id)
                return None
            refreshed = replace(held, heartbeat_at=datetime.now(tz=timezone.utc))
            tmp = self._path.with_name(f".{self._path.name}.{os.getpid()}.tmp")
            tmp.write_text(json.dumps(refreshed.to_dict()), encoding="utf-8")
            os.replace(tmp, self._path)
            self._held = refreshed
            return refreshed

    def start_heartbeat(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._halt.clear()
        self._thread = threading.Thread(
            target=self._heartbeat_loop,
            name="maintenance-safety-heartbeat",
            daemon=True,
        )
        self._thread.start()

    def stop_heartbeat(self) -> None:
        self._halt.set()
        if self._thread is not None:
            self._thread.join(timeout=self._heartbeat_interval + 1.0)
            self._thread = None

    def _heartbeat_loop(self) -> None:
        while not self._halt.wait(self._heartbeat_interval):
            try:
                if self.heartbeat() is None:
                    return
            except OSError as exc:
                logger.warning("Session heartbeat failed: %s", exc)


__all__ = [
    "LockInfo",
    "SessionLock",
]
