"""Tests for the maint-safety command line interface."""
from __future__ import annotations

from pathlib import Path
from unittest import mock

import pytest
from click.testing import CliRunner

from maintenance_safety.cli import main as cli_main
from maintenance_safety.cli.main import EXIT_BUSY, EXIT_FAILURE, EXIT_OK, cli
from maintenance_safety.session.safety_session import SafetyEngine


@pytest.fixture()
def runner(monkeypatch: pytest.MonkeyPatch) -> CliRunner:
    # Wide consoles keep table cells on one line.
    monkeypatch.setattr(cli_main.console, "width", 200)
    monkeypatch.setattr(cli_main.err_console, "width", 200)
    return CliRunner()


def _invoke(runner: CliRunner, config_file: Path, *args: str):  # type: ignore[no-untyped-def]
    return runner.invoke(cli, ["--config", str(config_file), *args])


def _released_session(engine: SafetyEngine, workdir: Path, names: list[str]) -> None:
    session = engine.begin_session("job")
    for name in names:
        session.create_file(workdir / name, name)
    engine.release_session("job")


# ---------------------------------------------------------------------------
# stop / status
# ---------------------------------------------------------------------------


class TestStopCommands:
    def test_raise_check_reset(self, runner: CliRunner, config_file: Path) -> None:
        result = _invoke(runner, config_file, "stop", "check")
        assert result.exit_code == EXIT_OK
        assert "normal" in result.output

        result = _invoke(runner, config_file, "stop", "raise", "disk failing")
        assert result.exit_code == EXIT_OK, result.output
        assert "EMERGENCY STOP" in result.output

        result = _invoke(runner, config_file, "stop", "check")
        assert result.exit_code == EXIT_FAILURE
        assert "disk failing" in result.output

        result = _invoke(runner, config_file, "stop", "reset")
        assert result.exit_code == EXIT_OK
        assert "cleared" in result.output

        assert _invoke(runner, config_file, "stop", "check").exit_code == EXIT_OK

    def test_reset_when_not_raised(self, runner: CliRunner, config_file: Path) -> None:
        result = _invoke(runner, config_file, "stop", "reset")
        assert result.exit_code == EXIT_OK
        assert "not raised" in result.output

    def test_status(self, runner: CliRunner, config_file: Path) -> None:
        result = _invoke(runner, config_file, "status")
        assert result.exit_code == EXIT_OK, result.output
        assert "Emergency stop" in result.output
        assert "normal" in result.output

    def test_invalid_config(self, runner: CliRunner, tmp_path: Path) -> None:
        bad = tmp_path / "bad.yaml"
        bad.write_text("emergency_stop:\n  poll_interval_seconds: 9\n", encoding="utf-8")
        result = _invoke(runner, bad, "status")
        assert result.exit_code == EXIT_FAILURE


# ---------------------------------------------------------------------------
# rollback
# ---------------------------------------------------------------------------


class TestRollbackCommands:
    def test_rollback_last_success(
        self, runner: CliRunner, config_file: Path, engine: SafetyEngine, workdir: Path
    ) -> None:
        _released_session(engine, workdir, ["file1", "file2", "file3"])
        result = _invoke(runner, config_file, "rollback", "last", "2", "--session", "job")
        assert result.exit_code == EXIT_OK, result.output
        assert sorted(p.name for p in workdir.iterdir()) == ["file1"]

    def test_rollback_last_failure_exits_one(
        self, runner: CliRunner, config_file: Path, engine: SafetyEngine, workdir: Path
    ) -> None:
        _released_session(engine, workdir, ["file1", "file2"])
        (workdir / "file2").unlink()
        result = _invoke(runner, config_file, "rollback", "last", "2", "-s", "job")
        assert result.exit_code == EXIT_FAILURE
        assert '"success": false' in result.output
        assert (workdir / "file1").exists()

    def test_rollback_while_session_busy(
        self, runner: CliRunner, config_file: Path, engine: SafetyEngine
    ) -> None:
        engine.begin_session("someone-else")
        result = _invoke(runner, config_file, "rollback", "last", "1", "-s", "job")
        assert result.exit_code == EXIT_BUSY

    def test_rollback_to_point(
        self, runner: CliRunner, config_file: Path, engine: SafetyEngine, workdir: Path
    ) -> None:
        session = engine.begin_session("job")
        session.create_file(workdir / "keep", "k")
        session.create_rollback_point("mid")
        session.create_file(workdir / "drop", "d")
        engine.release_session("job")

        listed = _invoke(runner, config_file, "points", "-s", "job")
        assert listed.exit_code == EXIT_OK
        assert "mid" in listed.output

        result = _invoke(runner, config_file, "rollback", "point", "mid", "-s", "job")
        assert result.exit_code == EXIT_OK, result.output
        assert [p.name for p in workdir.iterdir()] == ["keep"]

    def test_rollback_point_error_releases_session(
        self, runner: CliRunner, config_file: Path, engine: SafetyEngine, workdir: Path
    ) -> None:
        session = engine.begin_session("job")
        session.create_rollback_point("mid")
        session.create_file(workdir / "drop", "d")
        engine.release_session("job")

        with mock.patch(
            "maintenance_safety.session.safety_session.SafetySession.rollback_to_point",
            side_effect=RuntimeError("disk vanished"),
        ):
            result = _invoke(runner, config_file, "rollback", "point", "mid", "-s", "job")

        assert isinstance(result.exception, RuntimeError)
        assert not engine.session_lock.path.exists()
        with engine.begin_session("job") as resumed:
            assert resumed.undo_stack.depth == 1

    def test_unknown_point_releases_session(
        self, runner: CliRunner, config_file: Path, engine: SafetyEngine, workdir: Path
    ) -> None:
        _released_session(engine, workdir, ["a"])
        _invoke(runner, config_file, "rollback", "point", "nope", "-s", "job")
        assert not engine.session_lock.path.exists()

    def test_unknown_point(
        self, runner: CliRunner, config_file: Path, engine: SafetyEngine, workdir: Path
    ) -> None:
        _released_session(engine, workdir, ["a"])
        result = _invoke(runner, config_file, "rollback", "point", "nope", "-s", "job")
        assert result.exit_code == EXIT_FAILURE


# ---------------------------------------------------------------------------
# journal / backup
# ---------------------------------------------------------------------------


class TestInspectionCommands:
    def test_journal_show(
        self, runner: CliRunner, config_file: Path, engine: SafetyEngine, workdir: Path
    ) -> None:
        _released_session(engine, workdir, ["a"])
        result = _invoke(runner, config_file, "journal", "show", "-n", "5", "-s", "job")
        assert result.exit_code == EXIT_OK
        assert "file_create" in result.output

    def test_journal_show_empty(self, runner: CliRunner, config_file: Path) -> None:
        result = _invoke(runner, config_file, "journal", "show")
        assert "No journal records" in result.output

    def test_backup_list_and_verify(
        self, runner: CliRunner, config_file: Path, engine: SafetyEngine, workdir: Path
    ) -> None:
        (workdir / "app.cfg").write_text("x", encoding="utf-8")
        backup = engine.backup_store.create_full_backup([workdir / "app.cfg"])

        listed = _invoke(runner, config_file, "backup", "list")
        assert listed.exit_code == EXIT_OK
        assert "full" in listed.output

        ok = _invoke(runner, config_file, "backup", "verify", backup.backup_id)
        assert ok.exit_code == EXIT_OK
        assert "verified" in ok.output

        (engine.backup_store.data_dir(backup) / "app.cfg").write_text("y", encoding="utf-8")
        bad = _invoke(runner, config_file, "backup", "verify", backup.backup_id)
        assert bad.exit_code == EXIT_FAILURE
        assert "app.cfg" in bad.output

    def test_verify_unknown_backup(self, runner: CliRunner, config_file: Path) -> None:
        result = _invoke(runner, config_file, "backup", "verify", "full-missing")
        assert result.exit_code == EXIT_FAILURE
