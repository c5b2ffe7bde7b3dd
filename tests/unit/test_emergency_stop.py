"""Tests for the emergency stop signal, coordinator, watcher and signal bridge."""
from __future__ import annotations

import os
import signal
import subprocess
import sys
import threading
import time
from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

import pytest

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
from maintenance_safety.errors import EmergencyStopped
from maintenance_safety.journal.journal import (
    PROCESS_KILLED,
    PROCESS_TERMINATED,
    SAFETY_ERROR,
    STOP_RESET,
    OperationJournal,
)

_IGNORE_TERM = (
    "import signal, sys, time\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "sys.stdout.write('ready\\n'); sys.stdout.flush()\n"
    "time.sleep(30)\n"
)


@pytest.fixture()
def signal_file(tmp_path: Path) -> StopSignalFile:
    return StopSignalFile(tmp_path / "run" / "emergency.signal")


@pytest.fixture()
def journal(tmp_path: Path) -> OperationJournal:
    return OperationJournal(tmp_path / "journal.jsonl")


@pytest.fixture()
def coordinator(
    signal_file: StopSignalFile, journal: OperationJournal
) -> Iterator[EmergencyStopCoordinator]:
    coord = EmergencyStopCoordinator(
        signal_file, journal, grace_period=60.0, terminate_timeout=0.5, poll_interval=0.0
    )
    yield coord
    coord.close()


def _spawn_sleeper() -> subprocess.Popen[bytes]:
    return subprocess.Popen(["sleep", "30"])


def _spawn_stubborn() -> subprocess.Popen[bytes]:
    proc = subprocess.Popen([sys.executable, "-c", _IGNORE_TERM], stdout=subprocess.PIPE)
    assert proc.stdout is not None
    proc.stdout.readline()
    return proc


# ---------------------------------------------------------------------------
# Signal file format
# ---------------------------------------------------------------------------


class TestStopSignalFile:
    def test_missing_file_is_normal(self, signal_file: StopSignalFile) -> None:
        current = signal_file.read()
        assert current.raised is False
        assert current.state is StopState.NORMAL

    def test_written_record_format(self, signal_file: StopSignalFile) -> None:
        when = datetime(2024, 6, 1, 3, 30, tzinfo=timezone.utc)
        signal_file.write("disk filling up", when)
        line = signal_file.path.read_text(encoding="utf-8").strip()
        assert line == "EMERGENCY_STOP:disk filling up:2024-06-01T03:30:00+00:00"

    def test_round_trip(self, signal_file: StopSignalFile) -> None:
        written = signal_file.write("manual abort")
        current = signal_file.read()
        assert current == written
        assert current.state is StopState.STOPPED

    def test_reason_newlines_collapsed(self, signal_file: StopSignalFile) -> None:
        signal_file.write("line one\nline two")
        assert signal_file.read().reason == "line one line two"
        assert len(signal_file.path.read_text(encoding="utf-8").splitlines()) == 1

    def test_reason_with_colons_survives(self, signal_file: StopSignalFile) -> None:
        signal_file.write("host: db01: overheating")
        assert signal_file.read().reason == "host: db01: overheating"

    def test_garbage_is_normal(self, signal_file: StopSignalFile) -> None:
        signal_file.path.parent.mkdir(parents=True)
        signal_file.path.write_text("hello\n", encoding="utf-8")
        assert signal_file.is_raised() is False

    def test_bad_timestamp_still_raised(self) -> None:
        parsed = StopSignal.parse("EMERGENCY_STOP:why:yesterday")
        assert parsed.raised is True

    def test_clear(self, signal_file: StopSignalFile) -> None:
        assert signal_file.clear() is False
        signal_file.write("x")
        assert signal_file.clear() is True
        assert not signal_file.path.exists()

    def test_no_temp_files_left(self, signal_file: StopSignalFile) -> None:
        signal_file.write("x")
        assert [p.name for p in signal_file.path.parent.iterdir()] == ["emergency.signal"]


# ---------------------------------------------------------------------------
# CancellationToken
# ---------------------------------------------------------------------------


class TestCancellationToken:
    def test_first_reason_wins(self) -> None:
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.is_cancelled()
        assert token.reason == "first"

    def test_raise_if_cancelled(self) -> None:
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel("abort")
        with pytest.raises(EmergencyStopped, match="abort"):
            token.raise_if_cancelled()

    def test_probe_cancels(self) -> None:
        probe = mock.Mock(return_value=StopSignal(raised=True, reason="remote"))
        token = CancellationToken(probe, poll_interval=0.0)
        assert token.is_cancelled() is True
        assert token.reason == "remote"

    def test_probe_is_throttled(self) -> None:
        probe = mock.Mock(return_value=StopSignal(raised=False))
        token = CancellationToken(probe, poll_interval=60.0)
        for _ in range(5):
            assert token.is_cancelled() is False
        assert probe.call_count == 1

    def test_reset(self) -> None:
        token = CancellationToken()
        token.cancel("x")
        token.reset()
        assert token.is_cancelled() is False
        assert token.reason == ""


# ---------------------------------------------------------------------------
# Coordinator state machine
# ---------------------------------------------------------------------------


class TestCoordinatorStateMachine:
    def test_raise_then_check(self, coordinator: EmergencyStopCoordinator) -> None:
        assert coordinator.check_stop() is False
        coordinator.raise_stop("operator abort")
        assert coordinator.check_stop() is True
        assert coordinator.state is StopState.STOPPED
        assert coordinator.token.is_cancelled()

    def test_raise_is_idempotent(
        self, coordinator: EmergencyStopCoordinator, journal: OperationJournal
    ) -> None:
        first = coordinator.raise_stop("first")
        second = coordinator.raise_stop("second")
        assert second == first
        assert len(journal.events(event=SAFETY_ERROR)) == 1

    def test_raise_journals_safety_error(
        self, coordinator: EmergencyStopCoordinator, journal: OperationJournal
    ) -> None:
        coordinator.raise_stop("disk full")
        (event,) = journal.events(event=SAFETY_ERROR)
        assert event["session_id"] == SYSTEM_SESSION
        assert event["reason"] == "disk full"

    def test_attached_session_used_for_events(
        self, coordinator: EmergencyStopCoordinator, journal: OperationJournal
    ) -> None:
        coordinator.attach("sess-9")
        coordinator.raise_stop("x")
        assert journal.events(event=SAFETY_ERROR)[0]["session_id"] == "sess-9"

    def test_reset_returns_to_normal(
        self, coordinator: EmergencyStopCoordinator, journal: OperationJournal
    ) -> None:
        coordinator.raise_stop("x")
        assert coordinator.reset() is True
        assert coordinator.check_stop() is False
        assert coordinator.state is StopState.NORMAL
        assert len(journal.events(event=STOP_RESET)) == 1

    def test_reset_when_normal_is_quiet(
        self, coordinator: EmergencyStopCoordinator, journal: OperationJournal
    ) -> None:
        assert coordinator.reset() is False
        assert journal.events(event=STOP_RESET) == []

    def test_stop_raised_by_other_process_is_observed(
        self, coordinator: EmergencyStopCoordinator, signal_file: StopSignalFile
    ) -> None:
        StopSignalFile(signal_file.path).write("raised elsewhere")
        assert coordinator.check_stop() is True
        assert coordinator.token.reason == "raised elsewhere"

    def test_register_child_rejects_self(self, coordinator: EmergencyStopCoordinator) -> None:
        with pytest.raises(ValueError):
            coordinator.register_child(os.getpid())
        with pytest.raises(ValueError):
            coordinator.register_child(0)

    def test_attach_clears_children(self, coordinator: EmergencyStopCoordinator) -> None:
        coordinator.register_child(999_999)
        coordinator.attach("s")
        assert coordinator.children == []


# ---------------------------------------------------------------------------
# Escalation
# ---------------------------------------------------------------------------


class TestEscalation:
    def test_process_alive(self) -> None:
        proc = _spawn_sleeper()
        try:
            assert process_alive(proc.pid) is True
        finally:
            proc.kill()
            proc.wait()
        assert process_alive(proc.pid) is False

    def test_sigterm_terminates_child(
        self, coordinator: EmergencyStopCoordinator, journal: OperationJournal
    ) -> None:
        proc = _spawn_sleeper()
        coordinator.register_child(proc.pid)
        outcome = coordinator.escalate_now()
        assert outcome == {proc.pid: "terminated"}
        assert process_alive(proc.pid) is False
        assert journal.events(event=PROCESS_TERMINATED)[0]["pid"] == proc.pid
        assert coordinator.children == []

    def test_sigkill_after_timeout(
        self, coordinator: EmergencyStopCoordinator, journal: OperationJournal
    ) -> None:
        proc = _spawn_stubborn()
        coordinator.register_child(proc.pid)
        try:
            outcome = coordinator.escalate_now()
        finally:
            if proc.poll() is None:
                proc.kill()
            if proc.stdout is not None:
                proc.stdout.close()
        assert outcome == {proc.pid: "killed"}
        assert journal.events(event=PROCESS_KILLED)[0]["pid"] == proc.pid

    def test_already_exited_child(self, coordinator: EmergencyStopCoordinator) -> None:
        proc = _spawn_sleeper()
        proc.kill()
        proc.wait()
        coordinator.register_child(proc.pid)
        assert coordinator.escalate_now() == {proc.pid: "exited"}

    def test_grace_timer_escalates(
        self, signal_file: StopSignalFile, journal: OperationJournal
    ) -> None:
        coord = EmergencyStopCoordinator(
            signal_file, journal, grace_period=0.1, terminate_timeout=1.0
        )
        proc = _spawn_sleeper()
        coord.register_child(proc.pid)
        try:
            coord.raise_stop("timer test")
            deadline = time.monotonic() + 5.0
            while process_alive(proc.pid) and time.monotonic() < deadline:
                time.sleep(0.05)
            assert process_alive(proc.pid) is False
        finally:
            coord.close()
            if proc.poll() is None:
                proc.kill()

    def test_reset_cancels_escalation(
        self, signal_file: StopSignalFile, journal: OperationJournal
    ) -> None:
        coord = EmergencyStopCoordinator(
            signal_file, journal, grace_period=0.2, terminate_timeout=1.0
        )
        proc = _spawn_sleeper()
        coord.register_child(proc.pid)
        try:
            coord.raise_stop("changed my mind")
            coord.reset()
            time.sleep(0.4)
            assert process_alive(proc.pid) is True
        finally:
            coord.close()
            proc.kill()
            proc.wait()

    def test_stop_raised_elsewhere_escalates_local_children(
        self, signal_file: StopSignalFile, journal: OperationJournal
    ) -> None:
        controller = EmergencyStopCoordinator(signal_file, journal, grace_period=0.2)
        worker = EmergencyStopCoordinator(
            signal_file, journal, grace_period=0.2, terminate_timeout=1.0
        )
        proc = _spawn_sleeper()
        worker.register_child(proc.pid)
        try:
            controller.raise_stop("from the controller")
            controller.close()
            assert worker.check_stop() is True
            deadline = time.monotonic() + 5.0
            while process_alive(proc.pid) and time.monotonic() < deadline:
                time.sleep(0.05)
            assert process_alive(proc.pid) is False
            assert journal.events(event=PROCESS_TERMINATED)[0]["pid"] == proc.pid
        finally:
            worker.close()
            if proc.poll() is None:
                proc.kill()
                proc.wait()

    def test_grace_counts_from_raised_at(
        self, signal_file: StopSignalFile, journal: OperationJournal
    ) -> None:
        coord = EmergencyStopCoordinator(
            signal_file, journal, grace_period=60.0, terminate_timeout=1.0
        )
        proc = _spawn_sleeper()
        coord.register_child(proc.pid)
        signal_file.write(
            "raised long ago", raised_at=datetime.now(tz=timezone.utc) - timedelta(minutes=5)
        )
        try:
            assert coord.check_stop() is True
            deadline = time.monotonic() + 5.0
            while process_alive(proc.pid) and time.monotonic() < deadline:
                time.sleep(0.05)
            assert process_alive(proc.pid) is False
        finally:
            coord.close()
            if proc.poll() is None:
                proc.kill()
                proc.wait()

    def test_observed_stop_arms_timer_once(
        self, coordinator: EmergencyStopCoordinator, signal_file: StopSignalFile
    ) -> None:
        signal_file.write("external")
        with mock.patch.object(coordinator, "_start_timer") as start_timer:
            assert coordinator.check_stop() is True
            assert coordinator.check_stop() is True
            coordinator.raise_stop("again")
        start_timer.assert_called_once()
        assert 59.0 < start_timer.call_args.args[0] <= 60.0

    def test_new_stop_after_reset_is_armed_again(
        self, coordinator: EmergencyStopCoordinator, signal_file: StopSignalFile
    ) -> None:
        with mock.patch.object(coordinator, "_start_timer") as start_timer:
            signal_file.write("first", raised_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
            coordinator.check_stop()
            coordinator.reset()
            signal_file.write("second", raised_at=datetime(2024, 1, 2, tzinfo=timezone.utc))
            coordinator.check_stop()
        assert start_timer.call_count == 2


# ---------------------------------------------------------------------------
# Watcher / signal bridge
# ---------------------------------------------------------------------------


class TestWatcherAndBridge:
    def test_watcher_cancels_token(self, signal_file: StopSignalFile) -> None:
        token = CancellationToken()
        with StopWatcher(signal_file, token, poll_interval=0.01) as watcher:
            assert watcher.running
            signal_file.write("from another terminal")
            assert token.wait(2.0) is True
        assert token.reason == "from another terminal"
        assert watcher.running is False

    def test_watcher_reports_raised_signal(self, signal_file: StopSignalFile) -> None:
        seen = threading.Event()
        reported: list[StopSignal] = []

        def on_stop(current: StopSignal) -> None:
            reported.append(current)
            seen.set()

        token = CancellationToken()
        with StopWatcher(signal_file, token, poll_interval=0.01, on_stop=on_stop):
            signal_file.write("maintenance window closed")
            assert seen.wait(2.0) is True
        assert reported[0].reason == "maintenance window closed"

    def test_signal_bridge_routes_signal_into_token(self) -> None:
        token = CancellationToken()
        with SignalBridge(token, signals=(signal.SIGUSR1,)):
            signal.raise_signal(signal.SIGUSR1)
            assert token.is_cancelled() is True
        assert token.reason == "received SIGUSR1"
        assert signal.getsignal(signal.SIGUSR1) is signal.SIG_DFL

    def test_signal_bridge_inert_off_main_thread(self) -> None:
        token = CancellationToken()
        installed: list[bool] = []
        worker = threading.Thread(
            target=lambda: installed.append(SignalBridge(token).install())
        )
        worker.start()
        worker.join()
        assert installed == [False]
