"""Per-session undo stack and named rollback points."""
from __future__ import annotations

from maintenance_safety.undo.stack import RollbackPoint, UndoStack

__all__ = [
    "RollbackPoint",
    "UndoStack",
]
