"""maintenance-safety — Safety and rollback engine for destructive maintenance work.

Public API
----------
The stable public surface is everything exported from this module.
Anything inside submodules not re-exported here is considered private
and may change without notice.

Example
-------
>>> import maintenance_safety as ms
>>> ms.__version__
'0.1.0'
>>> engine = ms.SafetyEngine(ms.ConfigLoader().defaults())
>>> session = engine.begin_session("nightly-cleanup")
>>> session.delete_file(Path("/var/cache/app/old.bin"))
1
>>> session.rollback_last(1).success
True
"""
from __future__ import annotations

__version__: str = "0.1.0"

from maintenance_safety.errors import (
    BackupCreationError,
    EmergencyStopped,
    IntegrityViolation,
    RestoreError,
    RollbackFailure,
    RollbackTimeout,
    SafetyError,
    SessionBusyError,
    SessionNotActiveError,
)

# ---------------------------------------------------------------------------
# Integrity / backups
# ---------------------------------------------------------------------------
from maintenance_safety.integrity.checksum import (
    ChecksumManifest,
    ManifestEntry,
    VerificationResult,
)
from maintenance_safety.backup.store import Backup, BackupKind, BackupStore, RestoredSet

# ---------------------------------------------------------------------------
# Journal / operations
# ---------------------------------------------------------------------------
from maintenance_safety.journal.journal import OperationJournal
from maintenance_safety.operations.capabilities import PackageManager, ServiceManager
from maintenance_safety.operations.models import (
    DeleteCreatedFile,
    Operation,
    OperationKind,
    PackageAction,
    PackageInverse,
    RemoveCreatedDirectory,
    RestoreFromBackup,
    ServiceAction,
    ServiceInverse,
)

# ---------------------------------------------------------------------------
# Undo / rollback
# ---------------------------------------------------------------------------
from maintenance_safety.undo.stack import RollbackPoint, UndoStack
from maintenance_safety.rollback.engine import RollbackEngine, RollbackResult, StepOutcome
from maintenance_safety.rollback.inverse import InverseActionExecutor

# ---------------------------------------------------------------------------
# Emergency stop
# ---------------------------------------------------------------------------
from maintenance_safety.emergency.coordinator import EmergencyStopCoordinator
from maintenance_safety.emergency.stop_signal import (
    CancellationToken,
    StopSignal,
    StopSignalFile,
    StopState,
)
from maintenance_safety.emergency.watcher import SignalBridge, StopWatcher

# ---------------------------------------------------------------------------
# Session / config
# ---------------------------------------------------------------------------
from maintenance_safety.config.loader import ConfigLoader, SafetyConfig
from maintenance_safety.session.lock import SessionLock
from maintenance_safety.session.safety_session import SafetyEngine, SafetySession

__all__ = [
    "__version__",
    # Errors
    "BackupCreationError",
    "EmergencyStopped",
    "IntegrityViolation",
    "RestoreError",
    "RollbackFailure",
    "RollbackTimeout",
    "SafetyError",
    "SessionBusyError",
    "SessionNotActiveError",
    # Integrity / backups
    "Backup",
    "BackupKind",
    "BackupStore",
    "ChecksumManifest",
    "ManifestEntry",
    "RestoredSet",
    "VerificationResult",
    # Journal / operations
    "DeleteCreatedFile",
    "Operation",
    "OperationJournal",
    "OperationKind",
    "PackageAction",
    "PackageInverse",
    "PackageManager",
    "RemoveCreatedDirectory",
    "RestoreFromBackup",
    "ServiceAction",
    "ServiceInverse",
    "ServiceManager",
    # Undo / rollback
    "InverseActionExecutor",
    "RollbackEngine",
    "RollbackPoint",
    "RollbackResult",
    "StepOutcome",
    "UndoStack",
    # Emergency stop
    "CancellationToken",
    "EmergencyStopCoordinator",
    "SignalBridge",
    "StopSignal",
    "StopSignalFile",
    "StopState",
    "StopWatcher",
    # Session / config
    "ConfigLoader",
    "SafetyConfig",
    "SafetyEngine",
    "SafetySession",
    "SessionLock",
]
