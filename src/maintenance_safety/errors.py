"""Exception taxonomy for the safety and rollback engine.

Every error raised by the engine derives from :class:`SafetyError` so that
callers can catch the whole family at the outermost boundary while still
distinguishing the individual failure modes.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from maintenance_safety.rollback.engine import RollbackResult


class SafetyError(Exception):
    """Base class for all safety engine errors."""


class BackupCreationError(SafetyError):
    """Raised when a backup cannot be created.

    The operation that depended on the backup must be aborted before any
    destructive change is made.

    Attributes
    ----------
    path:
        The source or destination path that caused the failure.
    reason:
        Human-readable explanation.
    """

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Backup creation failed for '{path}': {reason}")


class IntegrityViolation(SafetyError):
    """Raised when a backup's manifest does not verify against its files.

    Attributes
    ----------
    backup_id:
        The backup that failed verification.
    mismatched_paths:
        Relative paths that are missing or whose size/digest differ.
    """

    def __init__(self, backup_id: str, mismatched_paths: list[str]) -> None:
        self.backup_id = backup_id
        self.mismatched_paths = list(mismatched_paths)
        shown = ", ".join(self.mismatched_paths[:5])
        if len(self.mismatched_paths) > 5:
            shown += f" (+{len(self.mismatched_paths) - 5} more)"
        super().__init__(
            f"Backup '{backup_id}' failed integrity verification: {shown}"
        )


class RestoreError(SafetyError):
    """Raised when a restore cannot be completed.

    No destination file is modified when this error is raised.
    """

    def __init__(self, backup_id: str, reason: str) -> None:
        self.backup_id = backup_id
        self.reason = reason
        super().__init__(f"Restore of backup '{backup_id}' failed: {reason}")


class RollbackFailure(SafetyError):
    """Raised when an inverse action cannot be applied.

    Attributes
    ----------
    operation_id:
        Sequence number of the operation whose inverse failed, if known.
    reason:
        Why the inverse could not be applied.
    """

    def __init__(self, reason: str, operation_id: int | None = None) -> None:
        self.operation_id = operation_id
        self.reason = reason
        prefix = f"operation {operation_id}: " if operation_id is not None else ""
        super().__init__(f"Rollback failed for {prefix}{reason}")


class SessionBusyError(SafetyError):
    """Raised when a session is requested while another one is active.

    Attributes
    ----------
    session_id:
        Identifier of the session currently holding the lock.
    owner_pid:
        PID of the process holding the lock.
    """

    def __init__(self, session_id: str, owner_pid: int) -> None:
        self.session_id = session_id
        self.owner_pid = owner_pid
        super().__init__(
            f"Safety session '{session_id}' is already active (pid {owner_pid})"
        )


class SessionNotActiveError(SafetyError):
    """Raised when an ended or unknown session is used."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Safety session '{session_id}' is not active")


class RollbackTimeout(SafetyError):
    """Raised when a rollback exceeds the caller-supplied time budget.

    Attributes
    ----------
    timeout_seconds:
        The budget that was exceeded.
    result:
        The partial :class:`RollbackResult` at the moment the budget ran out.
        Every entry it lists as pending is still on the undo stack.
    """

    def __init__(self, timeout_seconds: float, result: RollbackResult) -> None:
        self.timeout_seconds = timeout_seconds
        self.result = result
        super().__init__(
            f"Rollback exceeded its {timeout_seconds:.1f}s budget after "
            f"reversing {len(result.reversed)} operation(s)"
        )


class EmergencyStopped(SafetyError):
    """Raised inside a tracked loop that observed the emergency stop.

    Attributes
    ----------
    reason:
        The reason recorded when the stop was raised.
    """

    exit_code: int = 1

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Emergency stop in effect: {reason}")


__all__ = [
    "BackupCreationError",
    "EmergencyStopped",
    "IntegrityViolation",
    "RestoreError",
    "RollbackFailure",
    "RollbackTimeout",
    "SafetyError",
    "SessionBusyError",
    "SessionNotActiveError",
]
