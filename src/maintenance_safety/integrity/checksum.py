"""Per-file SHA-256 manifests for backup integrity.

A manifest is an ordered, path-keyed index of ``{path, sha256, size, mtime}``
entries.  :meth:`ChecksumManifest.compute` builds one from files under a root
directory and :meth:`ChecksumManifest.verify` recomputes the digests and
reports every path that no longer matches.

Entries are always kept sorted by relative path so that the same file
contents produce an identical manifest regardless of input ordering.

Example
-------
>>> manifest = ChecksumManifest.compute(Path("/srv/data"), ["a.txt", "b/c.txt"])
>>> ChecksumManifest.verify(manifest, Path("/srv/data")).ok
True
"""
from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

_CHUNK_SIZE: int = 64 * 1024


def file_digest(path: Path) -> str:
    """Return the hex SHA-256 digest of the file at *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def normalise_relative(relative_path: str | Path) -> str:
    """Normalise *relative_path* to a POSIX-style path without a leading ``./``.

    Raises
    ------
    ValueError:
        When the path is absolute or escapes its root with ``..``.
    """
    posix = PurePosixPath(Path(relative_path).as_posix())
    if posix.is_absolute() or ".." in posix.parts:
        raise ValueError(f"Manifest paths must be relative to the root: {relative_path}")
    return str(posix)


@dataclass(frozen=True)
class ManifestEntry:
    """Checksum record for a single file.

    Attributes
    ----------
    path:
        POSIX path relative to the manifest root.
    sha256:
        Hex SHA-256 digest of the file content.
    size:
        File size in bytes.
    mtime:
        Modification time (seconds since the epoch) when hashed.
    """

    path: str
    sha256: str
    size: int
    mtime: float

    def to_dict(self) -> dict[str, object]:
        return {
            "path": self.path,
            "sha256": self.sha256,
            "size": self.size,
            "mtime": self.mtime,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> ManifestEntry:
        return cls(
            path=str(data["path"]),
            sha256=str(data["sha256"]),
            size=int(data["size"]),  # type: ignore[arg-type]
            mtime=float(data.get("mtime", 0.0)),  # type: ignore[arg-type]
        )


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of :meth:`ChecksumManifest.verify`.

    Attributes
    ----------
    ok:
        True when every entry matched.
    mismatched_paths:
        Relative paths that were missing, or whose size or digest differed.
    """

    ok: bool
    mismatched_paths: tuple[str, ...] = ()


class ChecksumManifest:
    """An immutable, path-keyed collection of :class:`ManifestEntry` objects.

    Parameters
    ----------
    entries:
        Entries to index.  Duplicate paths are rejected.
    """

    def __init__(self, entries: Iterable[ManifestEntry] = ()) -> None:
        indexed: dict[str, ManifestEntry] = {}
        for entry in entries:
            if entry.path in indexed:
                raise ValueError(f"Duplicate manifest path: {entry.path}")
            indexed[entry.path] = entry
        self._entries: dict[str, ManifestEntry] = {
            path: indexed[path] for path in sorted(indexed)
        }

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def compute(
        cls, root: Path, relative_paths: Iterable[str | Path]
    ) -> ChecksumManifest:
        """Hash each file in *relative_paths* under *root*.

        Parameters
        ----------
        root:
            Directory the relative paths are resolved against.
        relative_paths:
            Files to include.  Order does not matter; duplicates collapse.

        Returns
        -------
        ChecksumManifest
            Manifest sorted by relative path.

        Raises
        ------
        OSError:
            When a listed file cannot be read.
        """
        entries: list[ManifestEntry] = []
        for relative in sorted({normalise_relative(p) for p in relative_paths}):
            file_path = root / relative
            stat = file_path.stat()
            entries.append(
                ManifestEntry(
                    path=relative,
                    sha256=file_digest(file_path),
                    size=stat.st_size,
                    mtime=stat.st_mtime,
                )
            )
        return cls(entries)

    @classmethod
    def compute_tree(cls, root: Path) -> ChecksumManifest:
        """Hash every regular file below *root* (recursively)."""
        if not root.exists():
            return cls()
        relative = [
            p.relative_to(root).as_posix()
            for p in root.rglob("*")
            if p.is_file() and not p.is_symlink()
        ]
        return cls.compute(root, relative)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    @staticmethod
    def verify(manifest: ChecksumManifest, root: Path) -> VerificationResult:
        """Recompute digests under *root* and compare with *manifest*.

        A missing file, a size mismatch and a digest mismatch are all
        reported; nothing is ignored.
        """
        mismatched: list[str] = []
        for entry in manifest:
            file_path = root / entry.path
            try:
                if not file_path.is_file():
                    mismatched.append(entry.path)
                    continue
                if file_path.stat().st_size != entry.size:
                    mismatched.append(entry.path)
                    continue
                if file_digest(file_path) != entry.sha256:
                    mismatched.append(entry.path)
            except OSError:
                mismatched.append(entry.path)
        return VerificationResult(ok=not mismatched, mismatched_paths=tuple(mismatched))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def __iter__(self) -> Iterator[ManifestEntry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, relative_path: object) -> bool:
        return relative_path in self._entries

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ChecksumManifest):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self) -> str:
        return f"ChecksumManifest(entries={len(self._entries)})"

    def get(self, relative_path: str) -> ManifestEntry | None:
        """Return the entry for *relative_path*, or None."""
        return self._entries.get(relative_path)

    @property
    def paths(self) -> list[str]:
        """Relative paths in manifest order."""
        return list(self._entries)

    def digests(self) -> dict[str, str]:
        """Return ``{relative_path: sha256}`` for content comparisons."""
        return {path: entry.sha256 for path, entry in self._entries.items()}

    def same_content(self, other: ChecksumManifest) -> bool:
        """True when both manifests list the same paths with the same digests.

        Modification times are ignored.
        """
        return self.digests() == other.digests()

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, object]:
        return {"entries": [entry.to_dict() for entry in self]}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> ChecksumManifest:
        raw_entries = data.get("entries", [])
        if not isinstance(raw_entries, list):
            raise ValueError("Manifest 'entries' must be a list")
        return cls(ManifestEntry.from_dict(item) for item in raw_entries)

    @classmethod
    def from_json(cls, text: str) -> ChecksumManifest:
        return cls.from_dict(json.loads(text))

    def write(self, path: Path) -> None:
        """Write the manifest as JSON to *path*."""
        path.write_text(self.to_json() + "\n", encoding="utf-8")

    @classmethod
    def read(cls, path: Path) -> ChecksumManifest:
        """Read a manifest previously written with :meth:`write`."""
        return cls.from_json(path.read_text(encoding="utf-8"))


__all__ = [
    "ChecksumManifest",
    "ManifestEntry",
    "VerificationResult",
    "file_digest",
    "normalise_relative",
]
