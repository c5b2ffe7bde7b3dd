"""Inverse action execution, one handler per descriptor type.

:class:`InverseActionExecutor` maps each inverse descriptor class to the
handler that applies it.  Every failure, whatever its origin, surfaces as a
:class:`RollbackFailure` tagged with the operation id so the rollback engine
can halt on it.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from maintenance_safety.backup.store import BackupStore
from maintenance_safety.emergency.stop_signal import CancellationToken
from maintenance_safety.errors import (
    IntegrityViolation,
    RestoreError,
    RollbackFailure,
)
from maintenance_safety.operations.capabilities import (
    PackageManager,
    ServiceManager,
    UnavailablePackageManager,
    UnavailableServiceManager,
)
from maintenance_safety.operations.models import (
    DeleteCreatedFile,
    Operation,
    OperationKind,
    PackageAction,
    PackageInverse,
    RemoveCreatedDirectory,
    RestoreFromBackup,
    ServiceAction,
    ServiceInverse,
)

logger = logging.getLogger(__name__)

_Handler = Callable[[Operation, CancellationToken | None], str]


class InverseActionExecutor:
    """Applies the inverse descriptor of an operation.

    Parameters
    ----------
    backup_store:
        Store holding the backups referenced by :class:`RestoreFromBackup`.
    package_manager:
        Capability used for package inverses.  Defaults to one that refuses.
    service_manager:
        Capability used for service inverses.  Defaults to one that refuses.
    """

    def __init__(
        self,
        backup_store: BackupStore,
        package_manager: PackageManager | None = None,
        service_manager: ServiceManager | None = None,
    ) -> None:
        self._store = backup_store
        self._packages: PackageManager = package_manager or UnavailablePackageManager()
        self._services: ServiceManager = service_manager or UnavailableServiceManager()
        self._handlers: dict[type, _Handler] = {
            DeleteCreatedFile: self._delete_created_file,
            RestoreFromBackup: self._restore_from_backup,
            RemoveCreatedDirectory: self._remove_created_directory,
            PackageInverse: self._apply_package,
            ServiceInverse: self._apply_service,
        }

    def apply(
        self, operation: Operation, token: CancellationToken | None = None
    ) -> str:
        """Reverse *operation* and return a short description of what was done.

        Raises
        ------
        RollbackFailure:
            The inverse could not be applied.  Nothing further is attempted.
        """
        handler = self._handlers.get(type(operation.inverse))
        if handler is None:
            raise RollbackFailure(
                f"no handler for inverse {type(operation.inverse).__name__}",
                operation.operation_id,
            )
        try:
            return handler(operation, token)
        except RollbackFailure as exc:
            if exc.operation_id is None:
                raise RollbackFailure(exc.reason, operation.operation_id) from exc
            raise
        except (IntegrityViolation, RestoreError) as exc:
            raise RollbackFailure(str(exc), operation.operation_id) from exc
        except OSError as exc:
            raise RollbackFailure(
                f"{operation.target}: {exc.strerror or exc}", operation.operation_id
            ) from exc

    # ------------------------------------------------------------------
    # File handlers
    # ------------------------------------------------------------------

    def _delete_created_file(
        self, operation: Operation, token: CancellationToken | None
    ) -> str:
        inverse: DeleteCreatedFile = operation.inverse  # type: ignore[assignment]
        path = Path(inverse.path)
        if not path.exists() and not path.is_symlink():
            raise RollbackFailure(f"created file {path} is already missing")
        if path.is_dir() and not path.is_symlink():
            raise RollbackFailure(f"{path} is now a directory, not the created file")
        path.unlink()
        return f"deleted {path}"

    def _restore_from_backup(
        self, operation: Operation, token: CancellationToken | None
    ) -> str:
        inverse: RestoreFromBackup = operation.inverse  # type: ignore[assignment]
        path = Path(inverse.path)
        if operation.kind is OperationKind.FILE_DELETE and path.exists():
            raise RollbackFailure(
                f"{path} was recreated after its deletion was recorded"
            )
        try:
            backup = self._store.get(inverse.backup_id)
        except KeyError as exc:
            raise RollbackFailure(f"backup {inverse.backup_id} is missing") from exc
        restored = self._store.restore(backup, token=token)
        if not restored.paths:
            raise RollbackFailure(f"backup {inverse.backup_id} holds no files for {path}")
        return f"restored {path} from {inverse.backup_id}"

    def _remove_created_directory(
        self, operation: Operation, token: CancellationToken | None
    ) -> str:
        inverse: RemoveCreatedDirectory = operation.inverse  # type: ignore[assignment]
        path = Path(inverse.path)
        if not path.is_dir():
            raise RollbackFailure(f"created directory {path} is already missing")
        if any(path.iterdir()):
            raise RollbackFailure(f"directory {path} is not empty; remove it manually")
        path.rmdir()
        return f"removed directory {path}"

    # ------------------------------------------------------------------
    # Package / service handlers
    # ------------------------------------------------------------------

    def _apply_package(
        self, operation: Operation, token: CancellationToken | None
    ) -> str:
        inverse: PackageInverse = operation.inverse  # type: ignore[assignment]
        try:
            if inverse.action is PackageAction.INSTALL:
                self._packages.install(inverse.package, inverse.manager, inverse.version)
            else:
                self._packages.remove(inverse.package, inverse.manager)
        except RollbackFailure:
            raise
        except Exception as exc:
            raise RollbackFailure(
                f"{inverse.manager} {inverse.action.value} {inverse.package} failed: {exc}"
            ) from exc
        pinned = f"={inverse.version}" if inverse.version else ""
        return f"{inverse.manager} {inverse.action.value} {inverse.package}{pinned}"

    def _apply_service(
        self, operation: Operation, token: CancellationToken | None
    ) -> str:
        inverse: ServiceInverse = operation.inverse  # type: ignore[assignment]
        if inverse.action is ServiceAction.START and inverse.was_active is False:
            return f"{inverse.service} was not active before; left stopped"
        try:
            if inverse.action is ServiceAction.START:
                self._services.start(inverse.service)
            else:
                self._services.stop(inverse.service)
        except RollbackFailure:
            raise
        except Exception as exc:
            raise RollbackFailure(
                f"{inverse.action.value} {inverse.service} failed: {exc}"
            ) from exc
        return f"{inverse.action.value} {inverse.service}"


__all__ = ["InverseActionExecutor"]
