"""File-backed emergency stop signal and in-process cancellation token.

The stop signal is a single machine-wide file holding one line::

    EMERGENCY_STOP:<reason>:<iso8601-timestamp>

Its presence means the machine is in the ``Stopped`` state.  Only the
coordinator writes it; any number of observers may read it concurrently.
Writes go through a temporary file and :func:`os.replace`, so a reader never
sees a half-written record.

:class:`CancellationToken` is the value that tracked loops actually consult.
It combines an in-process :class:`threading.Event` (set by OS signal handlers
or the background watcher) with a throttled probe of the signal file.
"""
from __future__ import annotations

import logging
import os
import re
import tempfile
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from maintenance_safety.errors import EmergencyStopped

logger = logging.getLogger(__name__)

_PREFIX: str = "EMERGENCY_STOP"
_RECORD_RE = re.compile(
    r"^EMERGENCY_STOP:(?P<reason>.*):(?P<raised_at>\d{4}-\d{2}-\d{2}T[^\s]+)$"
)


class StopState(str, Enum):
    """The two states of the emergency stop state machine."""

    NORMAL = "normal"
    STOPPED = "stopped"


@dataclass(frozen=True)
class StopSignal:
    """Snapshot of the machine-wide stop signal.

    Attributes
    ----------
    raised:
        True while the signal file holds a valid stop record.
    reason:
        Reason supplied when the stop was raised (empty when not raised).
    raised_at:
        UTC time the stop was raised, or None.
    """

    raised: bool
    reason: str = ""
    raised_at: datetime | None = None

    @property
    def state(self) -> StopState:
        return StopState.STOPPED if self.raised else StopState.NORMAL

    def to_line(self) -> str:
        """Render the single-line on-disk record."""
        stamp = (self.raised_at or datetime.now(tz=timezone.utc)).isoformat()
        return f"{_PREFIX}:{self.reason}:{stamp}"

    @classmethod
    def parse(cls, line: str) -> StopSignal:
        """Parse an on-disk record.

        A line that starts with ``EMERGENCY_STOP:`` but carries an unreadable
        timestamp still counts as raised; anything else is ``Normal``.
        """
        line = line.strip()
        if not line.startswith(f"{_PREFIX}:"):
            return cls(raised=False)
        match = _RECORD_RE.match(line)
        if match is None:
            return cls(raised=True, reason=line[len(_PREFIX) + 1 :])
        try:
            raised_at = datetime.fromisoformat(match.group("raised_at"))
        except ValueError:
            raised_at = None
        return cls(raised=True, reason=match.group("reason"), raised_at=raised_at)


def _sanitise_reason(reason: str) -> str:
    return " ".join(reason.split()) or "unspecified"


class StopSignalFile:
    """Reader/writer for the well-known stop signal file.

    Parameters
    ----------
    path:
        Location of the signal file.  Parent directories are created on the
        first write.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> StopSignal:
        """Return the current signal; a missing file means ``Normal``."""
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return StopSignal(raised=False)
        except OSError as exc:
            # An unreadable signal file is treated as raised: failing open
            # here would let destructive work continue.
            logger.warning("Cannot read stop signal %s: %s", self._path, exc)
            return StopSignal(raised=True, reason=f"unreadable stop signal: {exc}")
        first_line = text.splitlines()[0] if text else ""
        return StopSignal.parse(first_line)

    def is_raised(self) -> bool:
        return self.read().raised

    def write(self, reason: str, raised_at: datetime | None = None) -> StopSignal:
        """Atomically write a stop record and return it."""
        signal = StopSignal(
            raised=True,
            reason=_sanitise_reason(reason),
            raised_at=raised_at or datetime.now(tz=timezone.utc),
        )
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(signal.to_line() + "\n")
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return signal

    def clear(self) -> bool:
        """Remove the signal file.  Returns True when a file was removed."""
        try:
            self._path.unlink()
        except FileNotFoundError:
            return False
        return True


class CancellationToken:
    """Cooperative cancellation flag passed through tracked call chains.

    Parameters
    ----------
    probe:
        Optional callable returning the current :class:`StopSignal`; usually
        :meth:`StopSignalFile.read`.  It is consulted at most once per
        *poll_interval* seconds.
    poll_interval:
        Minimum seconds between probes.
    """

    def __init__(
        self,
        probe: Callable[[], StopSignal] | None = None,
        poll_interval: float = 0.05,
    ) -> None:
        self._probe = probe
        self._poll_interval = poll_interval
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: str = ""
        self._last_probe: float = float("-inf")

    def cancel(self, reason: str) -> None:
        """Mark the token cancelled.  The first reason wins."""
        with self._lock:
            if not self._event.is_set():
                self._reason = reason
                self._event.set()

    def reset(self) -> None:
        """Return the token to the un-cancelled state."""
        with self._lock:
            self._event.clear()
            self._reason = ""
            self._last_probe = float("-inf")

    @property
    def reason(self) -> str:
        return self._reason

    def is_cancelled(self) -> bool:
        """True once cancelled locally or once the probe reports a stop."""
        if self._event.is_set():
            return True
        if self._probe is None:
            return False
        now = time.monotonic()
        if now - self._last_probe < self._poll_interval:
            return False
        self._last_probe = now
        signal = self._probe()
        if signal.raised:
            self.cancel(signal.reason)
            return True
        return False

    def raise_if_cancelled(self) -> None:
        """Raise :class:`EmergencyStopped` when the token is cancelled."""
        if self.is_cancelled():
            raise EmergencyStopped(self._reason)

    def wait(self, timeout: float) -> bool:
        """Block up to *timeout* seconds for local cancellation."""
        return self._event.wait(timeout)


__all__ = [
    "CancellationToken",
    "StopSignal",
    "StopSignalFile",
    "StopState",
]
