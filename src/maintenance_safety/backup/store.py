"""Checksum-verified backup store.

Backups are plain directory copies.  Each backup lives in its own directory
under the store root::

    <store_root>/<backup_id>/
        data/                 byte-for-byte copies, relative to root_path
        .backup_checksums     ChecksumManifest as JSON
        .backup_metadata      id, kind, base_ref, root_path, corrupted ...

``.backup_metadata`` is written last, so a directory without it is an
incomplete backup and is ignored by :meth:`BackupStore.list_backups`.

A backup is trusted only while its manifest verifies.  A backup that fails
verification is flagged ``corrupted`` in its metadata and kept on disk for
inspection; the store never deletes it.

Example
-------
>>> store = BackupStore(Path("/var/lib/maint/backups"))
>>> backup = store.create_full_backup([Path("/etc/myapp")])
>>> store.verify(backup)
True
>>> store.restore(backup)
RestoredSet(...)
"""
from __future__ import annotations

import dataclasses
import json
import logging
import os
import shutil
import tempfile
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from maintenance_safety.emergency.stop_signal import CancellationToken
from maintenance_safety.errors import (
    BackupCreationError,
    IntegrityViolation,
    RestoreError,
)
from maintenance_safety.integrity.checksum import (
    ChecksumManifest,
    ManifestEntry,
    VerificationResult,
    file_digest,
)

logger = logging.getLogger(__name__)

CHECKSUMS_FILENAME: str = ".backup_checksums"
METADATA_FILENAME: str = ".backup_metadata"
DATA_DIRNAME: str = "data"
_STAGED_SUFFIX: str = ".restore"
_ASIDE_SUFFIX: str = ".replaced"


class BackupKind(str, Enum):
    """Whether a backup is self-contained or a diff against a base."""

    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass(frozen=True)
class Backup:
    """Metadata and manifest of a stored backup.

    Attributes
    ----------
    backup_id:
        Unique identifier, also the backup's directory name.
    created_at:
        UTC creation time.
    kind:
        FULL or INCREMENTAL.
    root_path:
        Absolute directory that manifest paths are relative to; the default
        restore destination.
    manifest:
        Checksums of the files stored in *this* backup.
    base_ref:
        Backup id this incremental was taken against (None for FULL).
    removed_paths:
        Paths present in the base chain that no longer existed when this
        incremental was taken.
    corrupted:
        Set once verification has failed.
    """

    backup_id: str
    created_at: datetime
    kind: BackupKind
    root_path: Path
    manifest: ChecksumManifest
    base_ref: str | None = None
    removed_paths: tuple[str, ...] = ()
    corrupted: bool = False

    def to_metadata(self) -> dict[str, object]:
        return {
            "id": self.backup_id,
            "created_at": self.created_at.isoformat(),
            "kind": self.kind.value,
            "base_ref": self.base_ref,
            "root_path": str(self.root_path),
            "removed_paths": list(self.removed_paths),
            "corrupted": self.corrupted,
            "file_count": len(self.manifest),
        }

    @classmethod
    def from_metadata(
        cls, data: dict[str, object], manifest: ChecksumManifest
    ) -> Backup:
        return cls(
            backup_id=str(data["id"]),
            created_at=datetime.fromisoformat(str(data["created_at"])),
            kind=BackupKind(str(data["kind"])),
            root_path=Path(str(data["root_path"])),
            manifest=manifest,
            base_ref=data.get("base_ref") or None,  # type: ignore[arg-type]
            removed_paths=tuple(data.get("removed_paths", ())),  # type: ignore[arg-type]
            corrupted=bool(data.get("corrupted", False)),
        )


@dataclass(frozen=True)
class RestoredSet:
    """Result of a successful restore.

    Attributes
    ----------
    backup_id:
        The backup that was restored (the tip of the chain).
    destination:
        Directory files were restored into.
    paths:
        Relative paths written, in manifest order.
    chain:
        Backup ids applied, oldest (the full base) first.
    """

    backup_id: str
    destination: Path
    paths: tuple[str, ...]
    chain: tuple[str, ...]


def _common_root(sources: list[Path]) -> Path:
    anchors = [str(p if p.is_dir() else p.parent) for p in sources]
    return Path(os.path.commonpath(anchors))


def _collect_files(source: Path) -> list[Path]:
    if source.is_dir():
        return sorted(
            p for p in source.rglob("*") if p.is_file() and not p.is_symlink()
        )
    return [source]


def _make_parents(directory: Path) -> list[Path]:
    """Create *directory* and return the ancestors that were missing, outermost first."""
    missing: list[Path] = []
    current = directory
    while not current.exists():
        missing.append(current)
        current = current.parent
    directory.mkdir(parents=True, exist_ok=True)
    return list(reversed(missing))


def _remove_created_dirs(created: list[Path]) -> None:
    for directory in reversed(created):
        try:
            directory.rmdir()
        except OSError as exc:
            logger.warning("Could not remove directory %s after failed restore: %s", directory, exc)


def _discard(path: Path) -> None:
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Could not remove replaced original %s: %s", path, exc)


class BackupStore:
    """Creates, verifies and restores file backups under *store_root*.

    Parameters
    ----------
    store_root:
        Directory holding one sub-directory per backup.  Created lazily.
    """

    def __init__(self, store_root: Path) -> None:
        self._root = store_root

    @property
    def store_root(self) -> Path:
        return self._root

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_full_backup(
        self,
        source_paths: Iterable[Path],
        root: Path | None = None,
        token: CancellationToken | None = None,
    ) -> Backup:
        """Copy *source_paths* (files or directories) into a new full backup.

        Parameters
        ----------
        source_paths:
            Files and/or directories to back up.  Directories are copied
            recursively.
        root:
            Directory the stored paths are made relative to.  Defaults to the
            deepest directory containing every source.
        token:
            Checked between files; a stop aborts creation.

        Raises
        ------
        BackupCreationError:
            A source is missing or unreadable, or the store is not writable.
            No partial backup directory is left behind.
        EmergencyStopped:
            The token was cancelled mid-copy.  No partial backup is left.
        """
        sources = [Path(p).absolute() for p in source_paths]
        for source in sources:
            if not source.exists():
                raise BackupCreationError(str(source), "source does not exist")
            if not os.access(source, os.R_OK):
                raise BackupCreationError(str(source), "source is not readable")
        if root is None:
            if not sources:
                raise BackupCreationError(str(self._root), "no source paths given")
            root = _common_root(sources)
        root = root.absolute()

        files: dict[str, Path] = {}
        for source in sources:
            for file_path in _collect_files(source):
                try:
                    relative = file_path.relative_to(root).as_posix()
                except ValueError as exc:
                    raise BackupCreationError(
                        str(file_path), f"not under backup root {root}"
                    ) from exc
                files[relative] = file_path

        return self._write_backup(BackupKind.FULL, root, files, None, (), token)

    def create_incremental_backup(
        self,
        base: Backup,
        source_paths: Iterable[Path],
        token: CancellationToken | None = None,
    ) -> Backup:
        """Store only the files under *source_paths* that differ from *base*.

        *base* may itself be incremental; the comparison is made against the
        state its whole chain restores to.  Files that the chain knows about
        and that lie under a source path but no longer exist are recorded as
        removed.  Source paths that do not exist are allowed here, since a
        vanished path is exactly what an incremental needs to record.

        Raises
        ------
        BackupCreationError:
            A source lies outside ``base.root_path``, a file is unreadable,
            or the store is not writable.
        """
        root = base.root_path
        chain_view = self._chain_view(base)
        sources = [Path(p).absolute() for p in source_paths]

        changed: dict[str, Path] = {}
        present: set[str] = set()
        covered_prefixes: list[str] = []
        for source in sources:
            try:
                rel_source = source.relative_to(root).as_posix()
            except ValueError as exc:
                raise BackupCreationError(
                    str(source), f"not under base root {root}"
                ) from exc
            covered_prefixes.append("" if rel_source == "." else rel_source)
            if not source.exists():
                continue
            for file_path in _collect_files(source):
                relative = file_path.relative_to(root).as_posix()
                present.add(relative)
                try:
                    digest = file_digest(file_path)
                except OSError as exc:
                    raise BackupCreationError(str(file_path), str(exc)) from exc
                known = chain_view.get(relative)
                if known is None or known[1].sha256 != digest:
                    changed[relative] = file_path

        def _covered(relative: str) -> bool:
            return any(
                prefix == "" or relative == prefix or relative.startswith(prefix + "/")
                for prefix in covered_prefixes
            )

        removed = tuple(
            sorted(p for p in chain_view if _covered(p) and p not in present)
        )
        return self._write_backup(
            BackupKind.INCREMENTAL, root, changed, base.backup_id, removed, token
        )

    def _write_backup(
        self,
        kind: BackupKind,
        root: Path,
        files: dict[str, Path],
        base_ref: str | None,
        removed: tuple[str, ...],
        token: CancellationToken | None,
    ) -> Backup:
        created_at = datetime.now(tz=timezone.utc)
        backup_id = (
            f"{kind.value}-{created_at:%Y%m%dT%H%M%S%f}-{uuid.uuid4().hex[:6]}"
        )
        backup_dir = self._root / backup_id
        data_dir = backup_dir / DATA_DIRNAME
        try:
            data_dir.mkdir(parents=True)
        except OSError as exc:
            raise BackupCreationError(str(self._root), f"store not writable: {exc}") from exc

        try:
            for relative, source in sorted(files.items()):
                if token is not None:
                    token.raise_if_cancelled()
                target = data_dir / relative
                target.parent.mkdir(parents=True, exist_ok=True)
                try:
                    shutil.copy2(source, target)
                except OSError as exc:
                    raise BackupCreationError(str(source), str(exc)) from exc

            manifest = ChecksumManifest.compute(data_dir, files)
            backup = Backup(
                backup_id=backup_id,
                created_at=created_at,
                kind=kind,
                root_path=root,
                manifest=manifest,
                base_ref=base_ref,
                removed_paths=removed,
            )
            manifest.write(backup_dir / CHECKSUMS_FILENAME)
            self._write_metadata(backup)
        except BaseException as exc:
            shutil.rmtree(backup_dir, ignore_errors=True)
            if isinstance(exc, OSError):
                raise BackupCreationError(str(backup_dir), str(exc)) from exc
            raise

        logger.info(
            "Created %s backup %s (%d file(s)) of %s",
            kind.value,
            backup_id,
            len(manifest),
            root,
        )
        return backup

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, backup_id: str) -> Backup:
        """Load a backup by id.

        Raises
        ------
        KeyError:
            When no complete backup with that id exists.
        """
        backup_dir = self._root / backup_id
        metadata_path = backup_dir / METADATA_FILENAME
        if not metadata_path.is_file():
            raise KeyError(f"Backup not found: {backup_id}")
        metadata = json.loads(metadata_path.read_text(encoding="utf-8"))
        checksums_path = backup_dir / CHECKSUMS_FILENAME
        try:
            manifest = ChecksumManifest.read(checksums_path)
        except (OSError, ValueError, KeyError) as exc:
            # A manifest that cannot be read verifies as nothing; keep the
            # record visible so it can be flagged.
            logger.warning("Unreadable manifest for backup %s: %s", backup_id, exc)
            manifest = ChecksumManifest()
            metadata["corrupted"] = True
        return Backup.from_metadata(metadata, manifest)

    def list_backups(self) -> list[Backup]:
        """Return every complete backup, oldest first."""
        if not self._root.exists():
            return []
        backups = [
            self.get(p.name)
            for p in self._root.iterdir()
            if p.is_dir() and (p / METADATA_FILENAME).is_file()
        ]
        return sorted(backups, key=lambda b: (b.created_at, b.backup_id))

    def data_dir(self, backup: Backup) -> Path:
        """Directory holding *backup*'s stored file copies."""
        return self._root / backup.backup_id / DATA_DIRNAME

    def chain(self, backup: Backup) -> list[Backup]:
        """Return the base chain of *backup*, full base first.

        Raises
        ------
        RestoreError:
            When a base in the chain is missing or the chain is cyclic.
        """
        links: list[Backup] = [backup]
        seen = {backup.backup_id}
        current = backup
        while current.kind is BackupKind.INCREMENTAL:
            if current.base_ref is None:
                raise RestoreError(backup.backup_id, f"{current.backup_id} has no base_ref")
            if current.base_ref in seen:
                raise RestoreError(backup.backup_id, "cyclic base chain")
            try:
                current = self.get(current.base_ref)
            except KeyError as exc:
                raise RestoreError(
                    backup.backup_id, f"base backup {current.base_ref} is missing"
                ) from exc
            seen.add(current.backup_id)
            links.append(current)
        links.reverse()
        return links

    def _chain_view(self, backup: Backup) -> dict[str, tuple[Backup, ManifestEntry]]:
        view: dict[str, tuple[Backup, ManifestEntry]] = {}
        for link in self.chain(backup):
            for removed in link.removed_paths:
                view.pop(removed, None)
            for entry in link.manifest:
                view[entry.path] = (link, entry)
        return view

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def check(self, backup: Backup) -> VerificationResult:
        """Verify *backup* and return the detailed result.

        A failing backup is flagged ``corrupted`` on disk (never deleted).
        """
        backup_dir = self._root / backup.backup_id
        if not (backup_dir / CHECKSUMS_FILENAME).is_file():
            result = VerificationResult(ok=False, mismatched_paths=(CHECKSUMS_FILENAME,))
        else:
            try:
                stored = ChecksumManifest.read(backup_dir / CHECKSUMS_FILENAME)
            except (OSError, ValueError, KeyError):
                stored = None
            if stored is None or stored != backup.manifest:
                result = VerificationResult(
                    ok=False, mismatched_paths=(CHECKSUMS_FILENAME,)
                )
            else:
                result = ChecksumManifest.verify(backup.manifest, self.data_dir(backup))
        if not result.ok:
            self._mark_corrupted(backup)
            logger.warning(
                "Backup %s failed verification: %s",
                backup.backup_id,
                ", ".join(result.mismatched_paths),
            )
        return result

    def verify(self, backup: Backup) -> bool:
        """Return True when every manifest entry matches its stored copy."""
        return self.check(backup).ok

    def _mark_corrupted(self, backup: Backup) -> None:
        if not (self._root / backup.backup_id).is_dir():
            return
        self._write_metadata(dataclasses.replace(backup, corrupted=True))

    def _write_metadata(self, backup: Backup) -> None:
        path = self._root / backup.backup_id / METADATA_FILENAME
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(json.dumps(backup.to_metadata(), indent=2) + "\n", encoding="utf-8")
        os.replace(tmp, path)

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore(
        self,
        backup: Backup,
        destination: Path | None = None,
        token: CancellationToken | None = None,
    ) -> RestoredSet:
        """Restore *backup* (and its base chain) into *destination*.

        Every file is first copied to a temporary name in its own target
        directory and checked against its manifest digest, so the final move
        never crosses a filesystem.  Files are moved into place only once all
        of them have been staged; existing files are moved aside first and
        put back if any move fails, so a failed restore leaves the
        destination as it was.

        Raises
        ------
        IntegrityViolation:
            A backup in the chain fails verification, or a staged copy does
            not match its digest.
        RestoreError:
            A base backup or a manifest entry's stored file is missing.
        EmergencyStopped:
            The token was cancelled while staging.
        """
        chain = self.chain(backup)
        for link in chain:
            result = self.check(link)
            if not result.ok:
                raise IntegrityViolation(link.backup_id, list(result.mismatched_paths))

        view = self._chain_view(backup)
        destination = (destination or backup.root_path).absolute()
        staged: list[tuple[Path, Path]] = []
        created_dirs: list[Path] = []
        try:
            try:
                created_dirs.extend(_make_parents(destination))
                for relative, (link, entry) in sorted(view.items()):
                    if token is not None:
                        token.raise_if_cancelled()
                    stored = self.data_dir(link) / relative
                    if not stored.is_file():
                        raise RestoreError(
                            backup.backup_id, f"stored copy of '{relative}' is missing"
                        )
                    target = destination / relative
                    created_dirs.extend(_make_parents(target.parent))
                    fd, tmp_name = tempfile.mkstemp(
                        dir=target.parent, prefix=f".{target.name}.", suffix=_STAGED_SUFFIX
                    )
                    os.close(fd)
                    staged.append((Path(tmp_name), target))
                    shutil.copy2(stored, tmp_name)
                    if file_digest(Path(tmp_name)) != entry.sha256:
                        self._mark_corrupted(link)
                        raise IntegrityViolation(link.backup_id, [relative])
                if token is not None:
                    token.raise_if_cancelled()
            except OSError as exc:
                raise RestoreError(backup.backup_id, f"cannot stage restore: {exc}") from exc
            self._move_into_place(backup.backup_id, staged)
        except BaseException:
            for tmp, _ in staged:
                tmp.unlink(missing_ok=True)
            _remove_created_dirs(created_dirs)
            raise

        logger.info(
            "Restored backup %s (%d file(s)) into %s",
            backup.backup_id,
            len(view),
            destination,
        )
        return RestoredSet(
            backup_id=backup.backup_id,
            destination=destination,
            paths=tuple(sorted(view)),
            chain=tuple(link.backup_id for link in chain),
        )

    def _move_into_place(self, backup_id: str, staged: list[tuple[Path, Path]]) -> None:
        """Swap every staged copy in for its target, or none of them.

        Each existing target is first renamed aside in its own directory.
        When a move fails, targets already swapped are returned to their
        previous state in reverse order before :class:`RestoreError` is
        raised.
        """
        swapped: list[tuple[Path, Path | None]] = []
        try:
            for tmp, target in staged:
                aside: Path | None = None
                if target.exists() or target.is_symlink():
                    aside = target.with_name(
                        f".{target.name}.{uuid.uuid4().hex[:8]}{_ASIDE_SUFFIX}"
                    )
                    os.replace(target, aside)
                swapped.append((target, aside))
                os.replace(tmp, target)
        except OSError as exc:
            for target, aside in reversed(swapped):
                try:
                    if aside is None:
                        target.unlink(missing_ok=True)
                    else:
                        os.replace(aside, target)
                except OSError as put_back_exc:
                    logger.error(
                        "Could not put %s back after failed restore of %s: %s",
                        target,
                        backup_id,
                        put_back_exc,
                    )
            raise RestoreError(
                backup_id, f"cannot move restored files into place: {exc}"
            ) from exc
        for _, aside in swapped:
            if aside is not None:
                _discard(aside)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def prune(self, keep_last: int, protected: Iterable[str] = ()) -> list[str]:
        """Delete old backups beyond the newest *keep_last*.

        Corrupted backups, backups named in *protected*, and bases of any
        kept backup are never deleted.  This is only invoked by an external
        retention policy; the engine itself never prunes.

        Returns
        -------
        list[str]
            Ids of the backups removed.
        """
        if keep_last < 0:
            raise ValueError("keep_last must be >= 0")
        backups = self.list_backups()
        healthy = [b for b in backups if not b.corrupted]
        kept = healthy[len(healthy) - keep_last :] if keep_last else []
        keep_ids = set(protected) | {b.backup_id for b in backups if b.corrupted}
        for backup in [*kept, *(b for b in backups if b.backup_id in keep_ids)]:
            try:
                keep_ids.update(link.backup_id for link in self.chain(backup))
            except RestoreError:
                keep_ids.add(backup.backup_id)

        removed: list[str] = []
        for backup in healthy:
            if backup.backup_id in keep_ids:
                continue
            shutil.rmtree(self._root / backup.backup_id)
            removed.append(backup.backup_id)
            logger.info("Pruned backup %s", backup.backup_id)
        return removed


__all__ = [
    "Backup",
    "BackupKind",
    "BackupStore",
    "RestoredSet",
]
