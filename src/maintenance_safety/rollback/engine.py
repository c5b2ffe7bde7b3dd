"""Rollback engine: reverses tracked operations in strict LIFO order.

Rollback walks the undo stack from the top.  Each entry is reversed by its
inverse action and only popped once that action succeeded.  The first
failure halts the walk: the failing entry and everything below it stay on the
stack, and the :class:`RollbackResult` lists what was reversed, what failed
and what is still pending, so an operator can take over.

The walk also stops at a step boundary when the emergency stop is raised or
the caller's time budget runs out.  It never skips an entry.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum

from maintenance_safety.backup.store import BackupStore, RestoredSet
from maintenance_safety.emergency.stop_signal import CancellationToken
from maintenance_safety.errors import (
    EmergencyStopped,
    IntegrityViolation,
    RestoreError,
    RollbackFailure,
    RollbackTimeout,
)
from maintenance_safety.journal.journal import (
    ROLLBACK_COMPLETED,
    ROLLBACK_STEP,
    OperationJournal,
)
from maintenance_safety.operations.models import Operation
from maintenance_safety.rollback.inverse import InverseActionExecutor
from maintenance_safety.undo.stack import UndoStack

logger = logging.getLogger(__name__)


class StepStatus(str, Enum):
    REVERSED = "reversed"
    FAILED = "failed"


@dataclass(frozen=True)
class StepOutcome:
    """Outcome of reversing one operation."""

    operation: Operation
    status: StepStatus
    detail: str

    def to_dict(self) -> dict[str, object]:
        return {
            "operation_id": self.operation.operation_id,
            "kind": self.operation.kind.value,
            "target": self.operation.target,
            "status": self.status.value,
            "detail": self.detail,
        }


@dataclass
class RollbackResult:
    """Structured report of a rollback run.

    Attributes
    ----------
    requested:
        Number of entries the caller asked to reverse.
    reversed:
        Entries successfully reversed, in the order they were processed
        (newest first).
    failed:
        The entry whose inverse failed, if any.  It is still on the stack.
    pending:
        Requested entries that were not attempted.  They are still on the
        stack, below the failed entry.
    stopped:
        True when the emergency stop halted the walk.
    timed_out:
        True when the caller's time budget ran out.
    point_id:
        Set for :meth:`RollbackEngine.rollback_to_point` runs.
    restored:
        The point's consistency restore, when one was applied.
    consistency_error:
        Why the point's consistency restore failed, if it did.
    """

    requested: int
    reversed: list[StepOutcome] = field(default_factory=list)
    failed: StepOutcome | None = None
    pending: list[Operation] = field(default_factory=list)
    stopped: bool = False
    timed_out: bool = False
    point_id: str | None = None
    restored: RestoredSet | None = None
    consistency_error: str | None = None

    @property
    def success(self) -> bool:
        return (
            self.failed is None
            and not self.stopped
            and not self.timed_out
            and self.consistency_error is None
        )

    @property
    def exit_code(self) -> int:
        """Process exit code expected by the surrounding CLI."""
        return 0 if self.success else 1

    @property
    def left_on_stack(self) -> list[Operation]:
        """Requested entries not reversed, newest first."""
        head = [self.failed.operation] if self.failed else []
        return head + list(self.pending)

    def to_report(self) -> dict[str, object]:
        """JSON-serialisable failure report."""
        return {
            "success": self.success,
            "requested": self.requested,
            "reversed": [step.to_dict() for step in self.reversed],
            "failed": self.failed.to_dict() if self.failed else None,
            "pending": [
                {"operation_id": op.operation_id, "kind": op.kind.value, "target": op.target}
                for op in self.pending
            ],
            "stopped": self.stopped,
            "timed_out": self.timed_out,
            "point_id": self.point_id,
            "restored_paths": list(self.restored.paths) if self.restored else [],
            "consistency_error": self.consistency_error,
        }


class RollbackEngine:
    """Pops an :class:`UndoStack` and applies inverse actions.

    Parameters
    ----------
    undo_stack:
        The session's stack.
    backup_store:
        Store used for rollback-point consistency restores.
    journal:
        Receives one event per step and one per run.
    executor:
        Applies individual inverse actions.
    token:
        Default cancellation token consulted between steps.
    """

    def __init__(
        self,
        undo_stack: UndoStack,
        backup_store: BackupStore,
        journal: OperationJournal,
        executor: InverseActionExecutor,
        token: CancellationToken | None = None,
    ) -> None:
        self._stack = undo_stack
        self._store = backup_store
        self._journal = journal
        self._executor = executor
        self._token = token

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def rollback_last(
        self,
        n: int,
        timeout: float | None = None,
        token: CancellationToken | None = None,
    ) -> RollbackResult:
        """Reverse up to *n* of the newest operations.

        Parameters
        ----------
        n:
            Maximum number of entries to reverse.  Fewer are reversed when
            the stack is shallower; an empty stack is a successful no-op.
        timeout:
            Time budget in seconds, checked between steps.
        token:
            Overrides the engine's default cancellation token.

        Raises
        ------
        RollbackTimeout:
            The budget ran out.  ``exc.result`` holds the partial result.
        ValueError:
            When *n* is negative.
        """
        if n < 0:
            raise ValueError("rollback count must be >= 0")
        deadline = time.monotonic() + timeout if timeout is not None else None
        result = self._walk(n, deadline, token or self._token)
        self._finish(result)
        if result.timed_out:
            raise RollbackTimeout(timeout or 0.0, result)
        return result

    def rollback_to_point(
        self,
        point_ref: str,
        timeout: float | None = None,
        token: CancellationToken | None = None,
    ) -> RollbackResult:
        """Reverse every operation recorded after the rollback point.

        After the stack has been unwound, the point's backup is restored as
        a final consistency pass and the point is discarded.  If anything
        fails the point is kept.  A point already at the top of the stack
        reverses nothing but still gets the restore pass and is discarded.

        Raises
        ------
        KeyError:
            When *point_ref* names no live point.
        RollbackTimeout:
            The budget ran out.
        """
        point = self._stack.get_point(point_ref)
        count = max(0, self._stack.depth - point.journal_offset)
        effective_token = token or self._token
        deadline = time.monotonic() + timeout if timeout is not None else None
        result = self._walk(count, deadline, effective_token)
        result.point_id = point.point_id

        if result.success and point.backup_ref is not None:
            if deadline is not None and time.monotonic() >= deadline:
                result.timed_out = True
            else:
                self._consistency_restore(point.backup_ref, result, effective_token)

        if result.success:
            self._stack.discard_point(point.point_id)
            logger.info("Rolled back to point %s (%s)", point.point_id, point.name)
        self._finish(result)
        if result.timed_out:
            raise RollbackTimeout(timeout or 0.0, result)
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _walk(
        self,
        n: int,
        deadline: float | None,
        token: CancellationToken | None,
    ) -> RollbackResult:
        result = RollbackResult(requested=n)
        planned = self._stack.top(n)
        for index, expected in enumerate(planned):
            if token is not None and token.is_cancelled():
                result.stopped = True
                result.pending = planned[index:]
                logger.warning("Rollback halted by emergency stop: %s", token.reason)
                break
            if deadline is not None and time.monotonic() >= deadline:
                result.timed_out = True
                result.pending = planned[index:]
                logger.warning("Rollback time budget exhausted")
                break

            operation = self._stack.peek()
            if operation is None or operation.operation_id != expected.operation_id:
                raise RuntimeError("undo stack changed during rollback")
            try:
                detail = self._executor.apply(operation, token)
            except EmergencyStopped as exc:
                result.stopped = True
                result.pending = planned[index:]
                logger.warning("Rollback halted by emergency stop: %s", exc.reason)
                break
            except RollbackFailure as exc:
                result.failed = StepOutcome(operation, StepStatus.FAILED, exc.reason)
                result.pending = planned[index + 1 :]
                self._log_step(result.failed)
                logger.error(
                    "Rollback of operation %d (%s %s) failed: %s",
                    operation.operation_id,
                    operation.kind.value,
                    operation.target,
                    exc.reason,
                )
                break
            self._stack.pop()
            outcome = StepOutcome(operation, StepStatus.REVERSED, detail)
            result.reversed.append(outcome)
            self._log_step(outcome)
            logger.info(
                "Reversed operation %d (%s %s): %s",
                operation.operation_id,
                operation.kind.value,
                operation.target,
                detail,
            )
        return result

    def _consistency_restore(
        self,
        backup_ref: str,
        result: RollbackResult,
        token: CancellationToken | None,
    ) -> None:
        try:
            backup = self._store.get(backup_ref)
            result.restored = self._store.restore(backup, token=token)
        except KeyError:
            result.consistency_error = f"point backup {backup_ref} is missing"
        except (IntegrityViolation, RestoreError) as exc:
            result.consistency_error = str(exc)
        except EmergencyStopped:
            result.stopped = True
        if result.consistency_error:
            logger.error("Rollback point consistency restore failed: %s", result.consistency_error)

    def _log_step(self, outcome: StepOutcome) -> None:
        self._journal.log_event(
            self._stack.session_id,
            ROLLBACK_STEP,
            **outcome.to_dict(),
        )

    def _finish(self, result: RollbackResult) -> None:
        self._journal.log_event(
            self._stack.session_id,
            ROLLBACK_COMPLETED,
            success=result.success,
            requested=result.requested,
            reversed=len(result.reversed),
            failed_operation=result.failed.operation.operation_id if result.failed else None,
            pending=len(result.pending),
            stopped=result.stopped,
            timed_out=result.timed_out,
            point_id=result.point_id,
        )


__all__ = [
    "RollbackEngine",
    "RollbackResult",
    "StepOutcome",
    "StepStatus",
]
