"""Safety session facade.

:class:`SafetyEngine` wires the journal, backup store, emergency stop and
session lock together from a :class:`SafetyConfig`.  External collaborators
only talk to it and to the :class:`SafetySession` it hands out:

* ``begin_session`` / ``end_session``
* ``record_operation`` (called *before* the caller performs the action)
* ``rollback_last`` / ``create_rollback_point`` / ``rollback_to_point``
* ``raise_emergency_stop`` / ``check_stop`` / ``reset_stop``
* ``status``

Only one session may be active per machine.  Its undo stack is persisted
under ``<state_dir>/sessions/<session_id>/`` so a session that died can be
re-begun with the same id and rolled back.

Example
-------
>>> engine = SafetyEngine(ConfigLoader().defaults())
>>> with engine.begin_session("cleanup-42") as session:
...     session.delete_file(Path("/var/cache/app/stale.bin"))
...     result = session.rollback_last(1)
>>> result.success
True
"""
from __future__ import annotations

import dataclasses
import logging
import os
import re
import threading
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from pathlib import Path
from types import TracebackType

from maintenance_safety.backup.store import BackupStore
from maintenance_safety.config.loader import SafetyConfig
from maintenance_safety.emergency.coordinator import EmergencyStopCoordinator
from maintenance_safety.emergency.stop_signal import (
    CancellationToken,
    StopSignal,
    StopSignalFile,
)
from maintenance_safety.emergency.watcher import StopWatcher
from maintenance_safety.errors import SessionBusyError, SessionNotActiveError
from maintenance_safety.journal.journal import (
    SESSION_ENDED,
    SESSION_STARTED,
    OperationJournal,
)
from maintenance_safety.operations.capabilities import PackageManager, ServiceManager
from maintenance_safety.operations.models import (
    DeleteCreatedFile,
    InverseDescriptor,
    Operation,
    OperationKind,
    RemoveCreatedDirectory,
    RestoreFromBackup,
    validate_inverse,
)
from maintenance_safety.rollback.engine import RollbackEngine, RollbackResult
from maintenance_safety.rollback.inverse import InverseActionExecutor
from maintenance_safety.session.lock import LockInfo, SessionLock
from maintenance_safety.undo.stack import RollbackPoint, UndoStack

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
UNDO_STACK_FILENAME: str = "undo_stack.json"

Step = Callable[["SafetySession"], object]


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class SafetySession:
    """One exclusive scope of tracked, rollback-capable operations.

    Instances are created by :meth:`SafetyEngine.begin_session`; do not
    construct them directly.  Usable as a context manager that ends the
    session on exit.
    """

    def __init__(
        self,
        engine: SafetyEngine,
        lock_info: LockInfo,
        undo_stack: UndoStack,
        rollback_engine: RollbackEngine,
        next_operation_id: int,
    ) -> None:
        self._engine = engine
        self._lock_info = lock_info
        self._stack = undo_stack
        self._rollback = rollback_engine
        self._next_id = next_operation_id
        self._id_lock = threading.Lock()
        self._active = True

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self._lock_info.session_id

    @property
    def owner_pid(self) -> int:
        return self._lock_info.owner_pid

    @property
    def started_at(self) -> datetime:
        return self._lock_info.started_at

    @property
    def heartbeat_at(self) -> datetime:
        held = self._engine.session_lock.held
        return held.heartbeat_at if held else self._lock_info.heartbeat_at

    @property
    def undo_stack(self) -> UndoStack:
        return self._stack

    @property
    def journal(self) -> OperationJournal:
        return self._engine.journal

    @property
    def token(self) -> CancellationToken:
        return self._engine.coordinator.token

    @property
    def active(self) -> bool:
        return self._active

    def _ensure_active(self) -> None:
        if not self._active:
            raise SessionNotActiveError(self.session_id)

    # ------------------------------------------------------------------
    # Tracking API
    # ------------------------------------------------------------------

    def record_operation(
        self,
        kind: OperationKind | str,
        target: str | Path,
        inverse_descriptor: InverseDescriptor | None = None,
        description: str = "",
    ) -> int:
        """Record an operation the caller is about to perform.

        Must be called *before* the action.  For ``file_modify`` and
        ``file_delete`` a backup of the target is taken first; if that fails
        the error propagates and the caller must not go ahead.  Package and
        service kinds require an explicit *inverse_descriptor*.

        Parameters
        ----------
        kind:
            The operation kind (enum member or its string value).
        target:
            File or directory path, package name or service name.
        inverse_descriptor:
            How to undo the operation.  Built automatically for file kinds
            when omitted.
        description:
            Free text stored with the operation.

        Returns
        -------
        int
            The operation's sequence number within the session.

        Raises
        ------
        EmergencyStopped:
            The emergency stop is in effect; nothing was recorded.
        BackupCreationError:
            The pre-change backup could not be taken; nothing was recorded.
        ValueError:
            The descriptor is missing or does not fit the kind, or a create
            targets a path that already exists.
        """
        self._ensure_active()
        self.token.raise_if_cancelled()
        op_kind = OperationKind(kind)
        target_text = str(target)
        if op_kind in _PATH_KINDS:
            target_text = os.path.abspath(target_text)

        inverse, backup_ref = self._build_inverse(op_kind, target_text, inverse_descriptor)
        validate_inverse(op_kind, inverse)

        with self._id_lock:
            self._next_id += 1
            operation = Operation(
                operation_id=self._next_id,
                session_id=self.session_id,
                kind=op_kind,
                target=target_text,
                timestamp=datetime.now(tz=timezone.utc),
                inverse=inverse,
                backup_ref=backup_ref,
                description=description,
            )
            self.journal.append(operation)
            self._stack.push(operation)
        logger.info(
            "Recorded operation %d: %s %s", operation.operation_id, op_kind.value, target_text
        )
        return operation.operation_id

    def _build_inverse(
        self,
        kind: OperationKind,
        target: str,
        supplied: InverseDescriptor | None,
    ) -> tuple[InverseDescriptor, str | None]:
        if isinstance(supplied, (DeleteCreatedFile, RemoveCreatedDirectory, RestoreFromBackup)):
            if os.path.abspath(supplied.path) != target:
                raise ValueError(
                    f"{type(supplied).__name__} path {supplied.path!r} does not match "
                    f"target {target!r}"
                )
            supplied = dataclasses.replace(supplied, path=target)
        if kind is OperationKind.FILE_CREATE:
            if Path(target).exists():
                raise ValueError(f"{target} already exists; record file_modify instead")
            return supplied or DeleteCreatedFile(target), None
        if kind is OperationKind.DIRECTORY_CREATE:
            if Path(target).exists():
                raise ValueError(f"{target} already exists")
            return supplied or RemoveCreatedDirectory(target), None
        if kind.needs_backup:
            if isinstance(supplied, RestoreFromBackup):
                try:
                    self._engine.backup_store.get(supplied.backup_id)
                except KeyError as exc:
                    raise ValueError(f"unknown backup {supplied.backup_id}") from exc
                return supplied, supplied.backup_id
            if supplied is not None:
                raise ValueError(
                    f"{type(supplied).__name__} is not a valid inverse for {kind.value}"
                )
            backup = self._engine.backup_store.create_full_backup(
                [Path(target)], token=self.token
            )
            return RestoreFromBackup(target, backup.backup_id), backup.backup_id
        if supplied is None:
            raise ValueError(f"{kind.value} requires an explicit inverse descriptor")
        return supplied, None

    # ------------------------------------------------------------------
    # Tracked mutations
    # ------------------------------------------------------------------

    def create_file(self, path: Path, content: bytes | str = b"") -> int:
        """Record and create a new file."""
        op_id = self.record_operation(OperationKind.FILE_CREATE, path)
        _write_content(path, content)
        return op_id

    def modify_file(self, path: Path, content: bytes | str) -> int:
        """Back up, record and overwrite an existing file."""
        op_id = self.record_operation(OperationKind.FILE_MODIFY, path)
        _write_content(path, content)
        return op_id

    def delete_file(self, path: Path) -> int:
        """Back up, record and delete an existing file."""
        op_id = self.record_operation(OperationKind.FILE_DELETE, path)
        path.unlink()
        return op_id

    def make_directory(self, path: Path) -> int:
        """Record and create a new (empty) directory."""
        op_id = self.record_operation(OperationKind.DIRECTORY_CREATE, path)
        path.mkdir()
        return op_id

    def run_steps(self, steps: Iterable[Step]) -> int:
        """Run *steps* in order, checking the stop signal before each one.

        Returns the number of steps completed.

        Raises
        ------
        EmergencyStopped:
            At the first step boundary after the stop was raised.
        """
        completed = 0
        for step in steps:
            self._ensure_active()
            self.token.raise_if_cancelled()
            step(self)
            completed += 1
        return completed

    # ------------------------------------------------------------------
    # Rollback API
    # ------------------------------------------------------------------

    def rollback_last(self, n: int, timeout: float | None = None) -> RollbackResult:
        """Reverse the *n* most recent operations.  See :class:`RollbackEngine`."""
        self._ensure_active()
        return self._rollback.rollback_last(n, self._timeout(timeout))

    def create_rollback_point(self, name: str) -> str:
        """Mark a named checkpoint and return its id."""
        self._ensure_active()
        self.token.raise_if_cancelled()
        return self._stack.mark_point(name, token=self.token).point_id

    def rollback_to_point(self, point_ref: str, timeout: float | None = None) -> RollbackResult:
        """Reverse everything recorded after the point (id or name)."""
        self._ensure_active()
        return self._rollback.rollback_to_point(point_ref, self._timeout(timeout))

    def rollback_points(self) -> list[RollbackPoint]:
        return self._stack.points()

    def _timeout(self, timeout: float | None) -> float | None:
        if timeout is not None:
            return timeout
        return self._engine.config.rollback.timeout_seconds

    # ------------------------------------------------------------------
    # Emergency stop
    # ------------------------------------------------------------------

    def register_child(self, pid: int) -> None:
        """Register a worker pid to be terminated if the stop escalates."""
        self._ensure_active()
        self._engine.coordinator.register_child(pid)

    def check_stop(self) -> bool:
        return self._engine.check_stop()

    # ------------------------------------------------------------------
    # Status / lifecycle
    # ------------------------------------------------------------------

    def status(self) -> dict[str, object]:
        """Snapshot of the session for operators."""
        return {
            "session_id": self.session_id,
            "owner_pid": self.owner_pid,
            "started_at": self.started_at.isoformat(),
            "heartbeat_at": self.heartbeat_at.isoformat(),
            "active": self._active,
            "undo_depth": self._stack.depth,
            "last_operation_id": self._next_id,
            "rollback_points": [p.to_dict() for p in self._stack.points()],
            "stopped": self.check_stop(),
        }

    def end(self) -> None:
        self._engine.end_session(self.session_id)

    def _deactivate(self) -> None:
        self._active = False

    def __enter__(self) -> SafetySession:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._active:
            self.end()


_PATH_KINDS = frozenset(
    {
        OperationKind.FILE_CREATE,
        OperationKind.FILE_MODIFY,
        OperationKind.FILE_DELETE,
        OperationKind.DIRECTORY_CREATE,
    }
)


def _write_content(path: Path, content: bytes | str) -> None:
    if isinstance(content, str):
        path.write_text(content, encoding="utf-8")
    else:
        path.write_bytes(content)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class SafetyEngine:
    """Owns the shared components and hands out the single active session.

    Parameters
    ----------
    config:
        Engine configuration; defaults apply when omitted.
    package_manager:
        Capability used to reverse package operations.
    service_manager:
        Capability used to reverse service operations.
    """

    def __init__(
        self,
        config: SafetyConfig | None = None,
        package_manager: PackageManager | None = None,
        service_manager: ServiceManager | None = None,
    ) -> None:
        self._config = config or SafetyConfig()
        storage = self._config.storage
        stop_cfg = self._config.emergency_stop
        self._journal = OperationJournal(storage.resolved_journal_path)
        self._store = BackupStore(storage.resolved_backup_dir)
        self._signal_file = StopSignalFile(stop_cfg.signal_path)
        self._coordinator = EmergencyStopCoordinator(
            self._signal_file,
            self._journal,
            token=CancellationToken(self._signal_file.read, stop_cfg.poll_interval_seconds),
            grace_period=stop_cfg.grace_period_seconds,
            terminate_timeout=stop_cfg.terminate_timeout_seconds,
        )
        self._lock = SessionLock(
            storage.lock_path,
            stale_after=self._config.session.stale_after_seconds,
            heartbeat_interval=self._config.session.heartbeat_interval_seconds,
        )
        self._executor = InverseActionExecutor(self._store, package_manager, service_manager)
        self._active: SafetySession | None = None
        self._watcher: StopWatcher | None = None
        self._guard = threading.Lock()

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def config(self) -> SafetyConfig:
        return self._config

    @property
    def journal(self) -> OperationJournal:
        return self._journal

    @property
    def backup_store(self) -> BackupStore:
        return self._store

    @property
    def coordinator(self) -> EmergencyStopCoordinator:
        return self._coordinator

    @property
    def session_lock(self) -> SessionLock:
        return self._lock

    @property
    def active_session(self) -> SafetySession | None:
        return self._active

    # ------------------------------------------------------------------
    # Session API
    # ------------------------------------------------------------------

    def begin_session(self, session_id: str | None = None) -> SafetySession:
        """Start (or resume) the machine's single active session.

        A persisted undo stack for *session_id* left behind by a process
        that died is resumed.

        Raises
        ------
        SessionBusyError:
            Another session is active, in this process or another one.
        ValueError:
            *session_id* is not a safe identifier.
        """
        session_id = session_id or f"session-{uuid.uuid4().hex[:12]}"
        if not _SESSION_ID_RE.match(session_id):
            raise ValueError(f"Invalid session id: {session_id!r}")

        with self._guard:
            if self._active is not None:
                raise SessionBusyError(self._active.session_id, self._active.owner_pid)
            info = self._lock.acquire(session_id)
            try:
                stack = UndoStack.load(
                    session_id,
                    self._store,
                    self._journal,
                    self._storage_dir(session_id) / UNDO_STACK_FILENAME,
                )
            except (OSError, ValueError):
                self._lock.release()
                raise
            top = stack.peek()
            next_id = max(
                self._journal.last_operation_id(session_id),
                top.operation_id if top else 0,
            )
            rollback = RollbackEngine(
                stack, self._store, self._journal, self._executor, self._coordinator.token
            )
            session = SafetySession(self, info, stack, rollback, next_id)
            self._coordinator.attach(session_id)
            self._watcher = StopWatcher(
                self._signal_file,
                self._coordinator.token,
                self._config.emergency_stop.poll_interval_seconds,
                on_stop=self._coordinator.observe,
            )
            self._watcher.start()
            self._lock.start_heartbeat()
            self._active = session

        self._journal.log_event(
            session_id,
            SESSION_STARTED,
            owner_pid=info.owner_pid,
            resumed_depth=stack.depth,
        )
        logger.info(
            "Session %s started (pid %d, %d resumed operation(s))",
            session_id,
            info.owner_pid,
            stack.depth,
        )
        return session

    def end_session(self, session_id: str) -> None:
        """End the active session, discarding its undo stack and points.

        Raises
        ------
        SessionNotActiveError:
            *session_id* is not the active session.
        """
        session = self._detach(session_id, discard_stack=True)
        self._journal.log_event(
            session_id,
            SESSION_ENDED,
            undo_depth=session.undo_stack.depth,
        )
        logger.info("Session %s ended", session_id)

    def release_session(self, session_id: str) -> None:
        """Give up the active session but keep its persisted undo stack.

        The session can later be resumed with :meth:`begin_session` using
        the same id, from this or another process.

        Raises
        ------
        SessionNotActiveError:
            *session_id* is not the active session.
        """
        session = self._detach(session_id, discard_stack=False)
        logger.info(
            "Session %s released with %d operation(s) on its undo stack",
            session_id,
            session.undo_stack.depth,
        )

    def _detach(self, session_id: str, discard_stack: bool) -> SafetySession:
        with self._guard:
            session = self._active
            if session is None or session.session_id != session_id:
                raise SessionNotActiveError(session_id)
            session._deactivate()
            self._active = None
            if self._watcher is not None:
                self._watcher.stop()
                self._watcher = None
            self._coordinator.detach()
            if discard_stack:
                session.undo_stack.delete_persisted()
            self._lock.release()
        return session

    def _storage_dir(self, session_id: str) -> Path:
        return self._config.storage.sessions_dir / session_id

    # ------------------------------------------------------------------
    # Emergency stop API
    # ------------------------------------------------------------------

    def raise_emergency_stop(self, reason: str) -> StopSignal:
        return self._coordinator.raise_stop(reason)

    def check_stop(self) -> bool:
        return self._coordinator.check_stop()

    def reset_stop(self) -> bool:
        return self._coordinator.reset()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> dict[str, object]:
        """Query-status snapshot for operators and the CLI."""
        signal = self._signal_file.read()
        holder = self._lock.read()
        backups = self._store.list_backups()
        lock_state: dict[str, object] | None = None
        if holder is not None:
            lock_state = {**holder.to_dict(), "stale": self._lock.is_stale(holder)}
        return {
            "stop": {
                "state": signal.state.value,
                "reason": signal.reason,
                "raised_at": signal.raised_at.isoformat() if signal.raised_at else None,
                "signal_path": str(self._signal_file.path),
            },
            "session": self._active.status() if self._active else None,
            "lock": lock_state,
            "backups": {
                "count": len(backups),
                "corrupted": sum(1 for b in backups if b.corrupted),
                "store": str(self._store.store_root),
            },
            "journal": str(self._journal.journal_path),
        }

    def close(self) -> None:
        """End any active session and cancel a pending escalation timer."""
        if self._active is not None:
            self.end_session(self._active.session_id)
        self._coordinator.close()


__all__ = [
    "SafetyEngine",
    "SafetySession",
    "UNDO_STACK_FILENAME",
]
