"""Safety engine configuration loader with Pydantic v2 validation.

Loads and validates a ``safety.yaml`` file into a typed
:class:`SafetyConfig` object.  Every section is optional; unknown keys are
allowed so newer files keep loading on older installs.

Example
-------
>>> loader = ConfigLoader()
>>> config = loader.load_string("emergency_stop:\\n  grace_period_seconds: 10\\n")
>>> config.emergency_stop.grace_period_seconds
10.0
"""
from __future__ import annotations

import tempfile
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

_DEFAULT_STATE_DIR = Path("~/.local/share/maintenance-safety")
_SIGNAL_FILENAME = "maintenance-safety-emergency-stop.signal"


def _default_signal_path() -> Path:
    return Path(tempfile.gettempdir()) / _SIGNAL_FILENAME


class StorageConfig(BaseModel):
    """Where backups, the journal and session state live."""

    model_config = {"extra": "allow"}

    state_dir: Path = Field(default=_DEFAULT_STATE_DIR)
    backup_dir: Path | None = Field(default=None)
    journal_path: Path | None = Field(default=None)

    @field_validator("state_dir", "backup_dir", "journal_path")
    @classmethod
    def expand_user(cls, value: Path | None) -> Path | None:
        return value.expanduser() if value is not None else None

    @property
    def resolved_backup_dir(self) -> Path:
        return self.backup_dir or self.state_dir / "backups"

    @property
    def resolved_journal_path(self) -> Path:
        return self.journal_path or self.state_dir / "journal.jsonl"

    @property
    def sessions_dir(self) -> Path:
        return self.state_dir / "sessions"

    @property
    def lock_path(self) -> Path:
        return self.state_dir / "session.lock"


class EmergencyStopConfig(BaseModel):
    """Emergency stop signal location and escalation timing."""

    model_config = {"extra": "allow"}

    signal_path: Path = Field(default_factory=_default_signal_path)
    grace_period_seconds: float = Field(default=30.0, ge=0)
    terminate_timeout_seconds: float = Field(default=5.0, ge=0)
    poll_interval_seconds: float = Field(default=0.05, gt=0, le=0.2)

    @field_validator("signal_path")
    @classmethod
    def expand_user(cls, value: Path) -> Path:
        return value.expanduser()


class SessionConfig(BaseModel):
    """Session lock heartbeat and staleness."""

    model_config = {"extra": "allow"}

    heartbeat_interval_seconds: float = Field(default=5.0, gt=0)
    stale_after_seconds: float = Field(default=60.0, gt=0)


class RollbackConfig(BaseModel):
    """Default rollback time budget."""

    model_config = {"extra": "allow"}

    timeout_seconds: float | None = Field(default=None, gt=0)


class SafetyConfig(BaseModel):
    """Top-level safety engine configuration schema.

    Loaded from ``safety.yaml``.  All sections are optional and fall back to
    sensible defaults.
    """

    model_config = {"extra": "allow"}

    version: str = Field(default="1")
    storage: StorageConfig = Field(default_factory=StorageConfig)
    emergency_stop: EmergencyStopConfig = Field(default_factory=EmergencyStopConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    rollback: RollbackConfig = Field(default_factory=RollbackConfig)


class ConfigLoader:
    """Loads and validates safety engine YAML configuration.

    Example
    -------
    >>> loader = ConfigLoader()
    >>> config = loader.load(Path("safety.yaml"))
    """

    def load(self, config_path: Path) -> SafetyConfig:
        """Load and validate a safety YAML file.

        Parameters
        ----------
        config_path:
            Path to the ``safety.yaml`` file.

        Returns
        -------
        SafetyConfig
            Validated configuration object.

        Raises
        ------
        FileNotFoundError:
            When the config file does not exist.
        ValueError:
            When the YAML content fails Pydantic validation.
        """
        if not config_path.exists():
            raise FileNotFoundError(f"Safety config not found: {config_path}")

        with config_path.open("r", encoding="utf-8") as fh:
            raw: dict[str, object] = yaml.safe_load(fh) or {}

        return SafetyConfig.model_validate(raw)

    def load_string(self, yaml_content: str) -> SafetyConfig:
        """Load and validate a YAML string directly."""
        raw: dict[str, object] = yaml.safe_load(yaml_content) or {}
        return SafetyConfig.model_validate(raw)

    def defaults(self) -> SafetyConfig:
        """Return a default configuration with all defaults applied."""
        return SafetyConfig()


__all__ = [
    "ConfigLoader",
    "EmergencyStopConfig",
    "RollbackConfig",
    "SafetyConfig",
    "SessionConfig",
    "StorageConfig",
]
