"""Tracked operations and their inverse descriptors.

Every tracked operation has a closed :class:`OperationKind` and carries an
inverse descriptor: a small frozen record describing exactly what must be
done to undo it.  File kinds get their descriptor built by the engine (it
knows which backup it took); package and service kinds must be given one by
the caller, because the engine does not know package or service semantics.

Descriptors serialise with a ``type`` tag so the journal and the persisted
undo stack can round-trip them.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import ClassVar, Union


class OperationKind(str, Enum):
    """Closed set of trackable operation kinds."""

    FILE_CREATE = "file_create"
    FILE_MODIFY = "file_modify"
    FILE_DELETE = "file_delete"
    DIRECTORY_CREATE = "directory_create"
    PACKAGE_INSTALL = "package_install"
    PACKAGE_REMOVE = "package_remove"
    SERVICE_START = "service_start"
    SERVICE_STOP = "service_stop"

    @property
    def needs_backup(self) -> bool:
        """True for kinds whose inverse restores file content."""
        return self in (OperationKind.FILE_MODIFY, OperationKind.FILE_DELETE)


class PackageAction(str, Enum):
    INSTALL = "install"
    REMOVE = "remove"


class ServiceAction(str, Enum):
    START = "start"
    STOP = "stop"


# ---------------------------------------------------------------------------
# Inverse descriptors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeleteCreatedFile:
    """Undo a file creation by deleting the file."""

    type_tag: ClassVar[str] = "delete_created_file"

    path: str


@dataclass(frozen=True)
class RestoreFromBackup:
    """Undo a modification or deletion by restoring a backup of the file."""

    type_tag: ClassVar[str] = "restore_from_backup"

    path: str
    backup_id: str


@dataclass(frozen=True)
class RemoveCreatedDirectory:
    """Undo a directory creation; only an empty directory is removed."""

    type_tag: ClassVar[str] = "remove_created_directory"

    path: str


@dataclass(frozen=True)
class PackageInverse:
    """Package manager call that reverses a package operation.

    Attributes
    ----------
    package:
        Package name as the manager knows it.
    action:
        What to do on rollback: INSTALL (undo a removal) or REMOVE (undo an
        install).
    manager:
        Package manager identifier (``apt``, ``snap``, ``flatpak`` ...).
    version:
        Version to pin when reinstalling.  None lets the manager choose.
    """

    type_tag: ClassVar[str] = "package"

    package: str
    action: PackageAction
    manager: str = "apt"
    version: str | None = None


@dataclass(frozen=True)
class ServiceInverse:
    """Service manager call that reverses a service operation.

    Attributes
    ----------
    service:
        Unit/service name.
    action:
        What to do on rollback: START (undo a stop) or STOP (undo a start).
    was_active:
        State of the service before the tracked operation.  When it is
        ``False`` for a START inverse the service was not running before the
        stop, so the rollback does nothing.
    """

    type_tag: ClassVar[str] = "service"

    service: str
    action: ServiceAction
    was_active: bool | None = None


InverseDescriptor = Union[
    DeleteCreatedFile,
    RestoreFromBackup,
    RemoveCreatedDirectory,
    PackageInverse,
    ServiceInverse,
]

_DESCRIPTOR_TYPES: dict[str, type] = {
    cls.type_tag: cls
    for cls in (
        DeleteCreatedFile,
        RestoreFromBackup,
        RemoveCreatedDirectory,
        PackageInverse,
        ServiceInverse,
    )
}

_ALLOWED_DESCRIPTORS: dict[OperationKind, tuple[type, ...]] = {
    OperationKind.FILE_CREATE: (DeleteCreatedFile,),
    OperationKind.FILE_MODIFY: (RestoreFromBackup,),
    OperationKind.FILE_DELETE: (RestoreFromBackup,),
    OperationKind.DIRECTORY_CREATE: (RemoveCreatedDirectory,),
    OperationKind.PACKAGE_INSTALL: (PackageInverse,),
    OperationKind.PACKAGE_REMOVE: (PackageInverse,),
    OperationKind.SERVICE_START: (ServiceInverse,),
    OperationKind.SERVICE_STOP: (ServiceInverse,),
}


def descriptor_to_dict(descriptor: InverseDescriptor) -> dict[str, object]:
    """Serialise *descriptor* with its ``type`` tag."""
    data: dict[str, object] = {"type": descriptor.type_tag}
    for name, value in vars(descriptor).items():
        data[name] = value.value if isinstance(value, Enum) else value
    return data


def descriptor_from_dict(data: dict[str, object]) -> InverseDescriptor:
    """Rebuild a descriptor produced by :func:`descriptor_to_dict`.

    Raises
    ------
    ValueError:
        When the ``type`` tag is unknown.
    """
    fields = dict(data)
    tag = str(fields.pop("type", ""))
    cls = _DESCRIPTOR_TYPES.get(tag)
    if cls is None:
        raise ValueError(f"Unknown inverse descriptor type: {tag!r}")
    if cls is PackageInverse:
        fields["action"] = PackageAction(fields["action"])
    elif cls is ServiceInverse:
        fields["action"] = ServiceAction(fields["action"])
    return cls(**fields)  # type: ignore[no-any-return]


def validate_inverse(kind: OperationKind, descriptor: InverseDescriptor) -> None:
    """Check that *descriptor* is a legal inverse for *kind*.

    Raises
    ------
    ValueError:
        When the descriptor type does not fit the operation kind, or a
        package/service descriptor points the wrong way (e.g. an install
        whose inverse is another install).
    """
    allowed = _ALLOWED_DESCRIPTORS[kind]
    if not isinstance(descriptor, allowed):
        raise ValueError(
            f"{type(descriptor).__name__} is not a valid inverse for {kind.value}"
        )
    expected = {
        OperationKind.PACKAGE_INSTALL: PackageAction.REMOVE,
        OperationKind.PACKAGE_REMOVE: PackageAction.INSTALL,
        OperationKind.SERVICE_START: ServiceAction.STOP,
        OperationKind.SERVICE_STOP: ServiceAction.START,
    }.get(kind)
    if expected is not None and descriptor.action != expected:  # type: ignore[union-attr]
        raise ValueError(
            f"Inverse of {kind.value} must {expected.value}, "
            f"got {descriptor.action.value}"  # type: ignore[union-attr]
        )


# ---------------------------------------------------------------------------
# Operation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Operation:
    """An immutable record of one tracked action.

    Attributes
    ----------
    operation_id:
        Monotonic sequence number within the session, starting at 1.
    session_id:
        The session that recorded the operation.
    kind:
        What kind of action was taken.
    target:
        Absolute path, package name or service name.
    timestamp:
        UTC time the operation was recorded.
    inverse:
        How to undo the operation.
    backup_ref:
        Backup taken before the action, for kinds that need one.
    description:
        Optional free text supplied by the caller.
    """

    operation_id: int
    session_id: str
    kind: OperationKind
    target: str
    timestamp: datetime
    inverse: InverseDescriptor
    backup_ref: str | None = None
    description: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "operation_id": self.operation_id,
            "session_id": self.session_id,
            "kind": self.kind.value,
            "target": self.target,
            "timestamp": self.timestamp.isoformat(),
            "inverse": descriptor_to_dict(self.inverse),
            "backup_ref": self.backup_ref,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> Operation:
        return cls(
            operation_id=int(data["operation_id"]),  # type: ignore[arg-type]
            session_id=str(data["session_id"]),
            kind=OperationKind(str(data["kind"])),
            target=str(data["target"]),
            timestamp=datetime.fromisoformat(str(data["timestamp"])),
            inverse=descriptor_from_dict(data["inverse"]),  # type: ignore[arg-type]
            backup_ref=data.get("backup_ref") or None,  # type: ignore[arg-type]
            description=str(data.get("description", "")),
        )


__all__ = [
    "DeleteCreatedFile",
    "InverseDescriptor",
    "Operation",
    "OperationKind",
    "PackageAction",
    "PackageInverse",
    "RemoveCreatedDirectory",
    "RestoreFromBackup",
    "ServiceAction",
    "ServiceInverse",
    "descriptor_from_dict",
    "descriptor_to_dict",
    "validate_inverse",
]
