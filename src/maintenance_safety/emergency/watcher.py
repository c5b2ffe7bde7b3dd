"""Background stop watcher and OS signal bridge.

Both feed external interruption into a :class:`CancellationToken`, so that
tracked loops only ever consult the token:

* :class:`StopWatcher` polls the stop signal file on a daemon thread and
  cancels the token as soon as another process raises the stop.
* :class:`SignalBridge` installs ``SIGINT``/``SIGTERM`` handlers that cancel
  the token instead of killing the process mid-operation.
"""
from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable
from types import FrameType, TracebackType

from maintenance_safety.emergency.stop_signal import (
    CancellationToken,
    StopSignal,
    StopSignalFile,
)

logger = logging.getLogger(__name__)


class StopWatcher:
    """Daemon thread mirroring the stop signal file into a token.

    Parameters
    ----------
    signal_file:
        The shared stop signal.
    token:
        Token to cancel when the signal is raised.
    poll_interval:
        Seconds between reads of the signal file.
    on_stop:
        Called with the signal on every poll that finds it raised; the
        engine passes :meth:`EmergencyStopCoordinator.observe` so that a
        stop raised by another process still arms escalation here.
    """

    def __init__(
        self,
        signal_file: StopSignalFile,
        token: CancellationToken,
        poll_interval: float = 0.05,
        on_stop: Callable[[StopSignal], None] | None = None,
    ) -> None:
        self._file = signal_file
        self._token = token
        self._poll_interval = poll_interval
        self._on_stop = on_stop
        self._halt = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Start polling.  Calling it twice has no effect."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._halt.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="maintenance-safety-stop-watcher",
            daemon=True,
        )
        self._thread.start()
        logger.debug("Stop watcher started on %s", self._file.path)

    def stop(self, timeout: float | None = 1.0) -> None:
        """Stop polling and wait for the thread to exit."""
        self._halt.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._halt.wait(self._poll_interval):
            current = self._file.read()
            if not current.raised:
                continue
            if not self._token.is_cancelled():
                logger.warning("Stop watcher observed emergency stop: %s", current.reason)
                self._token.cancel(current.reason)
            if self._on_stop is not None:
                self._on_stop(current)

    def __enter__(self) -> StopWatcher:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.stop()


class SignalBridge:
    """Context manager routing OS signals into a cancellation token.

    Handlers can only be installed from the main thread; elsewhere the
    bridge is inert.  Previous handlers are restored on exit.
    """

    def __init__(
        self,
        token: CancellationToken,
        signals: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM),
    ) -> None:
        self._token = token
        self._signals = signals
        self._previous: dict[signal.Signals, object] = {}

    def _handle(self, signum: int, frame: FrameType | None) -> None:
        name = signal.Signals(signum).name
        logger.warning("Received %s; cancelling tracked operations", name)
        self._token.cancel(f"received {name}")

    def install(self) -> bool:
        """Install handlers.  Returns False when not on the main thread."""
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Signal bridge not installed: not on the main thread")
            return False
        for sig in self._signals:
            self._previous[sig] = signal.signal(sig, self._handle)
        return True

    def restore(self) -> None:
        for sig, handler in self._previous.items():
            signal.signal(sig, handler)  # type: ignore[arg-type]
        self._previous.clear()

    def __enter__(self) -> SignalBridge:
        self.install()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.restore()


__all__ = [
    "SignalBridge",
    "StopWatcher",
]
