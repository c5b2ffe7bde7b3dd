"""Package and service manager capabilities used by inverse actions.

The engine never shells out to ``apt`` or ``systemctl`` on its own.  A caller
that wants package or service operations to be reversible injects objects
satisfying :class:`PackageManager` / :class:`ServiceManager`.  The defaults
refuse every call, so rolling back such an operation without a configured
manager fails loudly instead of doing something unexpected to the host.
"""
from __future__ import annotations

from typing import Protocol, runtime_checkable

from maintenance_safety.errors import RollbackFailure


@runtime_checkable
class PackageManager(Protocol):
    """Installs and removes packages for one or more package managers."""

    def install(self, package: str, manager: str, version: str | None = None) -> None:
        """Install *package*, pinned to *version* when given.

        Implementations raise any exception to signal failure.
        """
        ...

    def remove(self, package: str, manager: str) -> None:
        """Remove *package*."""
        ...


@runtime_checkable
class ServiceManager(Protocol):
    """Starts and stops system services."""

    def start(self, service: str) -> None:
        ...

    def stop(self, service: str) -> None:
        ...


class UnavailablePackageManager:
    """Default package manager: every call raises :class:`RollbackFailure`."""

    def install(self, package: str, manager: str, version: str | None = None) -> None:
        raise RollbackFailure(f"no package manager configured to install {package!r}")

    def remove(self, package: str, manager: str) -> None:
        raise RollbackFailure(f"no package manager configured to remove {package!r}")


class UnavailableServiceManager:
    """Default service manager: every call raises :class:`RollbackFailure`."""

    def start(self, service: str) -> None:
        raise RollbackFailure(f"no service manager configured to start {service!r}")

    def stop(self, service: str) -> None:
        raise RollbackFailure(f"no service manager configured to stop {service!r}")


__all__ = [
    "PackageManager",
    "ServiceManager",
    "UnavailablePackageManager",
    "UnavailableServiceManager",
]
