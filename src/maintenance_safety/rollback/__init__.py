"""Rollback engine and inverse action execution."""
from __future__ import annotations

from maintenance_safety.rollback.engine import (
    RollbackEngine,
    RollbackResult,
    StepOutcome,
    StepStatus,
)
from maintenance_safety.rollback.inverse import InverseActionExecutor

__all__ = [
    "InverseActionExecutor",
    "RollbackEngine",
    "RollbackResult",
    "StepOutcome",
    "StepStatus",
]
