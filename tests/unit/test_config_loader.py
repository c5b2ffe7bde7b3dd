"""Tests for ConfigLoader and the SafetyConfig schema."""
from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from maintenance_safety.config.loader import ConfigLoader, SafetyConfig


@pytest.fixture()
def loader() -> ConfigLoader:
    return ConfigLoader()


class TestDefaults:
    def test_defaults_are_complete(self, loader: ConfigLoader) -> None:
        config = loader.defaults()
        assert config.emergency_stop.grace_period_seconds == 30.0
        assert config.emergency_stop.poll_interval_seconds == 0.05
        assert config.rollback.timeout_seconds is None
        assert config.storage.state_dir == Path("~/.local/share/maintenance-safety").expanduser()

    def test_derived_storage_paths(self, loader: ConfigLoader) -> None:
        storage = loader.load_string("storage:\n  state_dir: /srv/safety\n").storage
        assert storage.resolved_backup_dir == Path("/srv/safety/backups")
        assert storage.resolved_journal_path == Path("/srv/safety/journal.jsonl")
        assert storage.sessions_dir == Path("/srv/safety/sessions")
        assert storage.lock_path == Path("/srv/safety/session.lock")

    def test_explicit_paths_win(self, loader: ConfigLoader) -> None:
        storage = loader.load_string(
            "storage:\n"
            "  state_dir: /srv/safety\n"
            "  backup_dir: /mnt/backups\n"
            "  journal_path: /var/log/maint.jsonl\n"
        ).storage
        assert storage.resolved_backup_dir == Path("/mnt/backups")
        assert storage.resolved_journal_path == Path("/var/log/maint.jsonl")

    def test_home_is_expanded(self, loader: ConfigLoader) -> None:
        config = loader.load_string("emergency_stop:\n  signal_path: ~/stop.signal\n")
        assert "~" not in str(config.emergency_stop.signal_path)


class TestLoading:
    def test_load_file(self, loader: ConfigLoader, config_file: Path, tmp_path: Path) -> None:
        config = loader.load(config_file)
        assert config.storage.state_dir == tmp_path / "state"
        assert config.session.heartbeat_interval_seconds == 0.5

    def test_missing_file(self, loader: ConfigLoader, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            loader.load(tmp_path / "absent.yaml")

    def test_empty_document_gives_defaults(self, loader: ConfigLoader) -> None:
        assert loader.load_string("") == SafetyConfig()

    def test_unknown_keys_allowed(self, loader: ConfigLoader) -> None:
        config = loader.load_string("notifications:\n  email: ops@example.com\n")
        assert config.version == "1"

    def test_rollback_timeout(self, loader: ConfigLoader) -> None:
        config = loader.load_string("rollback:\n  timeout_seconds: 120\n")
        assert config.rollback.timeout_seconds == 120.0


class TestValidation:
    @pytest.mark.parametrize(
        "yaml_text",
        [
            "emergency_stop:\n  poll_interval_seconds: 0.5\n",
            "emergency_stop:\n  poll_interval_seconds: 0\n",
            "emergency_stop:\n  grace_period_seconds: -1\n",
            "session:\n  stale_after_seconds: 0\n",
            "rollback:\n  timeout_seconds: -5\n",
        ],
    )
    def test_out_of_range_values_rejected(self, loader: ConfigLoader, yaml_text: str) -> None:
        with pytest.raises(ValidationError):
            loader.load_string(yaml_text)
