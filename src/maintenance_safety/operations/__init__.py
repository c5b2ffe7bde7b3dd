"""Operation model, inverse descriptors and manager capabilities."""
from __future__ import annotations

from maintenance_safety.operations.capabilities import (
    PackageManager,
    ServiceManager,
    UnavailablePackageManager,
    UnavailableServiceManager,
)
from maintenance_safety.operations.models import (
    DeleteCreatedFile,
    InverseDescriptor,
    Operation,
    OperationKind,
    PackageAction,
    PackageInverse,
    RemoveCreatedDirectory,
    RestoreFromBackup,
    ServiceAction,
    ServiceInverse,
    descriptor_from_dict,
    descriptor_to_dict,
    validate_inverse,
)

__all__ = [
    "DeleteCreatedFile",
    "InverseDescriptor",
    "Operation",
    "OperationKind",
    "PackageAction",
    "PackageInverse",
    "PackageManager",
    "RemoveCreatedDirectory",
    "RestoreFromBackup",
    "ServiceAction",
    "ServiceInverse",
    "ServiceManager",
    "UnavailablePackageManager",
    "UnavailableServiceManager",
    "descriptor_from_dict",
    "descriptor_to_dict",
    "validate_inverse",
]
