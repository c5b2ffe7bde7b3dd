"""Session lock and the SafetyEngine / SafetySession facade."""
from __future__ import annotations

from maintenance_safety.session.lock import LockInfo, SessionLock
from maintenance_safety.session.safety_session import (
    UNDO_STACK_FILENAME,
    SafetyEngine,
    SafetySession,
)

__all__ = [
    "LockInfo",
    "SafetyEngine",
    "SafetySession",
    "SessionLock",
    "UNDO_STACK_FILENAME",
]
