"""Configuration schema and YAML loader."""
from __future__ import annotations

from maintenance_safety.config.loader import (
    ConfigLoader,
    EmergencyStopConfig,
    RollbackConfig,
    SafetyConfig,
    SessionConfig,
    StorageConfig,
)

__all__ = [
    "ConfigLoader",
    "EmergencyStopConfig",
    "RollbackConfig",
    "SafetyConfig",
    "SessionConfig",
    "StorageConfig",
]
