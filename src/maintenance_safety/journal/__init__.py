"""Append-only audit journal of tracked operations and safety events."""
from __future__ import annotations

from maintenance_safety.journal.journal import (
    PROCESS_KILLED,
    PROCESS_TERMINATED,
    ROLLBACK_COMPLETED,
    ROLLBACK_POINT_CREATED,
    ROLLBACK_STEP,
    SAFETY_ERROR,
    SESSION_ENDED,
    SESSION_STARTED,
    STOP_RESET,
    OperationJournal,
)

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
