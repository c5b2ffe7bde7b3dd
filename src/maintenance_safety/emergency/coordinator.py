"""Emergency stop coordinator.

A two-state machine (``Normal`` / ``Stopped``) backed by the machine-wide
:class:`StopSignalFile`.  Raising the stop writes the signal, records a
``SAFETY_ERROR`` event in the journal, cancels the in-process token and
starts the grace-period timer.  When the timer fires while the stop is still
in effect, every child process registered with the active session is sent
``SIGTERM`` and, if it is still alive after the terminate timeout,
``SIGKILL``.  Each escalation step is journaled.

A process that did not raise the stop itself arms the same timer the first
time it observes the signal (through :meth:`check_stop` or the background
watcher), counting the grace period from the signal's ``raised_at``.  The
children a worker registered are thus escalated even when an external
controller raised the stop.

Only an explicit :meth:`EmergencyStopCoordinator.reset` returns the machine
to ``Normal``; workers never clear the signal themselves.

Example
-------
>>> coordinator = EmergencyStopCoordinator(StopSignalFile(path), journal)
>>> coordinator.raise_stop("disk filling up")
>>> coordinator.check_stop()
True
>>> coordinator.reset()
True
"""
from __future__ import annotations

import errno
import logging
import os
import signal
import threading
import time
from datetime import datetime, timezone

from maintenance_safety.emergency.stop_signal import (
    CancellationToken,
    StopSignal,
    StopSignalFile,
    StopState,
)
from maintenance_safety.journal.journal import (
    PROCESS_KILLED,
    PROCESS_TERMINATED,
    SAFETY_ERROR,
    STOP_RESET,
    OperationJournal,
)

logger = logging.getLogger(__name__)

SYSTEM_SESSION: str = "system"
_EXIT_POLL_SECONDS: float = 0.05


def process_alive(pid: int) -> bool:
    """Return True while *pid* is running.

    Our own children are reaped with ``waitpid(WNOHANG)`` so a zombie does
    not count as alive; for any other process ``kill(pid, 0)`` is used.
    """
    try:
        reaped, _ = os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        pass
    else:
        return reaped == 0
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as exc:
        return exc.errno != errno.ESRCH
    return True


class EmergencyStopCoordinator:
    """Raises, observes and resets the machine-wide emergency stop.

    Parameters
    ----------
    signal_file:
        The shared stop signal.
    journal:
        Receives ``SAFETY_ERROR``, escalation and reset events.
    token:
        In-process cancellation token cancelled when the stop is raised.  A
        token probing *signal_file* is created when omitted.
    grace_period:
        Seconds child processes get to exit on their own before escalation.
    terminate_timeout:
        Seconds between ``SIGTERM`` and ``SIGKILL`` during escalation.
    poll_interval:
        Probe interval of the token created when *token* is omitted.
    """

    def __init__(
        self,
        signal_file: StopSignalFile,
        journal: OperationJournal,
        token: CancellationToken | None = None,
        grace_period: float = 30.0,
        terminate_timeout: float = 5.0,
        poll_interval: float = 0.05,
    ) -> None:
        self._file = signal_file
        self._journal = journal
        self._token = token or CancellationToken(signal_file.read, poll_interval)
        self._grace_period = grace_period
        self._terminate_timeout = terminate_timeout
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._children: set[int] = set()
        self._session_id: str | None = None
        self._armed_for: tuple[str, datetime | None] | None = None

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def signal_file(self) -> StopSignalFile:
        return self._file

    # ------------------------------------------------------------------
    # Session wiring
    # ------------------------------------------------------------------

    def attach(self, session_id: str) -> None:
        """Associate events and child processes with *session_id*."""
        with self._lock:
            self._session_id = session_id
            self._children.clear()

    def detach(self) -> None:
        """Forget the active session and its registered children."""
        with self._lock:
            self._session_id = None
            self._children.clear()

    def register_child(self, pid: int) -> None:
        """Register a worker process to be terminated on escalation."""
        if pid <= 0 or pid == os.getpid():
            raise ValueError(f"Refusing to register pid {pid} for termination")
        with self._lock:
            self._children.add(pid)

    def unregister_child(self, pid: int) -> None:
        with self._lock:
            self._children.discard(pid)

    @property
    def children(self) -> list[int]:
        with self._lock:
            return sorted(self._children)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    @property
    def state(self) -> StopState:
        return StopState.STOPPED if self.check_stop() else StopState.NORMAL

    def current_signal(self) -> StopSignal:
        return self._file.read()

    def raise_stop(self, reason: str, raised_at: datetime | None = None) -> StopSignal:
        """Transition ``Normal -> Stopped``.

        Raising while already stopped changes nothing and returns the
        existing signal.
        """
        with self._lock:
            current = self._file.read()
            if not current.raised:
                stop = self._file.write(reason, raised_at)
                self._token.cancel(stop.reason)
                self._journal.log_event(
                    self._session_id or SYSTEM_SESSION,
                    SAFETY_ERROR,
                    reason=stop.reason,
                    raised_at=stop.raised_at.isoformat() if stop.raised_at else None,
                    grace_period_seconds=self._grace_period,
                )
                self._armed_for = (stop.reason, stop.raised_at)
                self._start_timer(self._grace_period)
        if current.raised:
            logger.info("Emergency stop already raised: %s", current.reason)
            self.observe(current)
            return current
        logger.warning(
            "Emergency stop raised: %s (escalation in %.1fs)", stop.reason, self._grace_period
        )
        return stop

    def check_stop(self) -> bool:
        """True when the stop is in effect, locally or machine-wide."""
        current = self._file.read()
        if current.raised:
            self.observe(current)
            return True
        return self._token.is_cancelled()

    def observe(self, current: StopSignal) -> None:
        """React to a raised signal, whichever process wrote it.

        Cancels the token and, the first time a given stop is seen, arms the
        escalation timer so that the grace period counts from the signal's
        ``raised_at``.  Children registered in this process are therefore
        escalated even when the stop was raised elsewhere.
        """
        if not current.raised:
            return
        self._token.cancel(current.reason)
        marker = (current.reason, current.raised_at)
        with self._lock:
            if self._armed_for == marker:
                return
            self._armed_for = marker
            delay = self._grace_period
            if current.raised_at is not None:
                raised_at = current.raised_at
                if raised_at.tzinfo is None:
                    raised_at = raised_at.replace(tzinfo=timezone.utc)
                elapsed = (datetime.now(tz=timezone.utc) - raised_at).total_seconds()
                delay = min(self._grace_period, max(0.0, self._grace_period - elapsed))
            self._start_timer(delay)
        logger.warning(
            "Emergency stop observed: %s (escalation in %.1fs)", current.reason, delay
        )

    def reset(self) -> bool:
        """Transition ``Stopped -> Normal``.

        Returns True when a signal file was removed.
        """
        with self._lock:
            self._cancel_timer()
            self._armed_for = None
            removed = self._file.clear()
            was_cancelled = self._token.is_cancelled()
            self._token.reset()
            if removed or was_cancelled:
                self._journal.log_event(
                    self._session_id or SYSTEM_SESSION,
                    STOP_RESET,
                    signal_removed=removed,
                )
        if removed or was_cancelled:
            logger.info("Emergency stop reset")
        return removed

    # ------------------------------------------------------------------
    # Escalation
    # ------------------------------------------------------------------

    def escalate_now(self) -> dict[int, str]:
        """Terminate, then force-kill, every registered child still alive.

        Returns
        -------
        dict[int, str]
            Outcome per pid: ``exited`` (already gone), ``terminated``
            (exited after SIGTERM) or ``killed`` (needed SIGKILL).
        """
        with self._lock:
            pids = sorted(self._children)
            session_id = self._session_id or SYSTEM_SESSION

        outcome: dict[int, str] = {}
        signalled: list[int] = []
        for pid in pids:
            if not process_alive(pid):
                outcome[pid] = "exited"
                continue
            try:
                os.kill(pid, signal.SIGTERM)
            except ProcessLookupError:
                outcome[pid] = "exited"
                continue
            signalled.append(pid)
            self._journal.log_event(session_id, PROCESS_TERMINATED, pid=pid)
            logger.warning("Sent SIGTERM to worker pid %d", pid)

        deadline = time.monotonic() + self._terminate_timeout
        remaining = list(signalled)
        while remaining and time.monotonic() < deadline:
            remaining = [pid for pid in remaining if process_alive(pid)]
            if remaining:
                time.sleep(_EXIT_POLL_SECONDS)

        for pid in signalled:
            if pid not in remaining:
                outcome[pid] = "terminated"
                continue
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                outcome[pid] = "terminated"
                continue
            process_alive(pid)
            outcome[pid] = "killed"
            self._journal.log_event(session_id, PROCESS_KILLED, pid=pid)
            logger.error("Worker pid %d ignored SIGTERM; sent SIGKILL", pid)

        with self._lock:
            self._children.difference_update(outcome)
        return outcome

    def _start_timer(self, delay: float) -> None:
        self._cancel_timer()
        timer = threading.Timer(delay, self._grace_expired)
        timer.daemon = True
        timer.start()
        self._timer = timer

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _grace_expired(self) -> None:
        if not self._file.is_raised():
            return
        logger.warning("Emergency stop grace period of %.1fs expired", self._grace_period)
        self.escalate_now()

    def close(self) -> None:
        """Cancel a pending escalation timer without touching the signal."""
        with self._lock:
            self._cancel_timer()


__all__ = [
    "EmergencyStopCoordinator",
    "SYSTEM_SESSION",
    "process_alive",
]
