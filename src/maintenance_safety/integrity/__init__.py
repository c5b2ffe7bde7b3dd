"""Checksum manifests for verifying backup contents."""
from __future__ import annotations

from maintenance_safety.integrity.checksum import (
    ChecksumManifest,
    ManifestEntry,
    VerificationResult,
    file_digest,
)

__all__ = [
    "ChecksumManifest",
    "ManifestEntry",
    "VerificationResult",
    "file_digest",
]
