"""Full and incremental file backups with checksum verification."""
from __future__ import annotations

from maintenance_safety.backup.store import (
    Backup,
    BackupKind,
    BackupStore,
    RestoredSet,
)

__all__ = [
    "Backup",
    "BackupKind",
    "BackupStore",
    "RestoredSet",
]
