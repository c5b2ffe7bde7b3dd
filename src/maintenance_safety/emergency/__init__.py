"""Emergency stop: shared signal file, cancellation token and coordinator."""
from __future__ import annotations

from maintenance_safety.emergency.coordinator import (
    SYSTEM_SESSION,
    EmergencyStopCoordinator,
    process_alive,
)
from maintenance_safety.emergency.stop_signal import (
    CancellationToken,
    StopSignal,
    StopSignalFile,
    StopState,
)
from maintenance_safety.emergency.watcher import SignalBridge, StopWatcher

__all__ = [
    "CancellationToken",
    "EmergencyStopCoordinator",
    "SYSTEM_SESSION",
    "SignalBridge",
    "StopSignal",
    "StopSignalFile",
    "StopState",
    "StopWatcher",
    "process_alive",
]
