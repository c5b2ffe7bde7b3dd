"""Shared fixtures for the maintenance_safety test suite."""
from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from maintenance_safety.config.loader import ConfigLoader, SafetyConfig
from maintenance_safety.session.safety_session import SafetyEngine


# ---------------------------------------------------------------------------
# Fake capabilities
# ---------------------------------------------------------------------------


class FakePackageManager:
    """Records package calls; raises RuntimeError when ``fail`` is set."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str, str | None]] = []
        self.fail = False

    def install(self, package: str, manager: str, version: str | None = None) -> None:
        if self.fail:
            raise RuntimeError(f"{manager} could not install {package}")
        self.calls.append(("install", package, manager, version))

    def remove(self, package: str, manager: str) -> None:
        if self.fail:
            raise RuntimeError(f"{manager} could not remove {package}")
        self.calls.append(("remove", package, manager, None))


class FakeServiceManager:
    """Records service calls; raises RuntimeError when ``fail`` is set."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.fail = False

    def start(self, service: str) -> None:
        if self.fail:
            raise RuntimeError(f"unit {service} failed to start")
        self.calls.append(("start", service))

    def stop(self, service: str) -> None:
        if self.fail:
            raise RuntimeError(f"unit {service} failed to stop")
        self.calls.append(("stop", service))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def config_yaml(root: Path) -> str:
    return (
        "storage:\n"
        f"  state_dir: {root / 'state'}\n"
        "emergency_stop:\n"
        f"  signal_path: {root / 'emergency.signal'}\n"
        "  grace_period_seconds: 60\n"
        "  terminate_timeout_seconds: 1\n"
        "  poll_interval_seconds: 0.01\n"
        "session:\n"
        "  heartbeat_interval_seconds: 0.5\n"
        "  stale_after_seconds: 60\n"
    )


@pytest.fixture()
def safety_config(tmp_path: Path) -> SafetyConfig:
    return ConfigLoader().load_string(config_yaml(tmp_path))


@pytest.fixture()
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "safety.yaml"
    path.write_text(config_yaml(tmp_path), encoding="utf-8")
    return path


@pytest.fixture()
def package_manager() -> FakePackageManager:
    return FakePackageManager()


@pytest.fixture()
def service_manager() -> FakeServiceManager:
    return FakeServiceManager()


@pytest.fixture()
def engine(
    safety_config: SafetyConfig,
    package_manager: FakePackageManager,
    service_manager: FakeServiceManager,
) -> Iterator[SafetyEngine]:
    eng = SafetyEngine(safety_config, package_manager, service_manager)
    yield eng
    eng.close()


@pytest.fixture()
def workdir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path
