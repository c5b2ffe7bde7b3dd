"""Tests for ChecksumManifest."""
from __future__ import annotations

import hashlib
import json
from pathlib import Path

import pytest

from maintenance_safety.integrity.checksum import (
    ChecksumManifest,
    ManifestEntry,
    file_digest,
    normalise_relative,
)


@pytest.fixture()
def tree(tmp_path: Path) -> Path:
    root = tmp_path / "tree"
    (root / "sub").mkdir(parents=True)
    (root / "a.txt").write_text("alpha", encoding="utf-8")
    (root / "b.bin").write_bytes(b"\x00\x01\x02" * 1000)
    (root / "sub" / "c.cfg").write_text("key=value\n", encoding="utf-8")
    return root


# ---------------------------------------------------------------------------
# Digests and path handling
# ---------------------------------------------------------------------------


class TestFileDigest:
    def test_matches_hashlib(self, tree: Path) -> None:
        expected = hashlib.sha256(b"alpha").hexdigest()
        assert file_digest(tree / "a.txt") == expected

    def test_large_file_is_chunked_consistently(self, tmp_path: Path) -> None:
        data = b"x" * (200 * 1024 + 17)
        path = tmp_path / "big"
        path.write_bytes(data)
        assert file_digest(path) == hashlib.sha256(data).hexdigest()


class TestNormaliseRelative:
    def test_posix_form(self) -> None:
        assert normalise_relative(Path("sub") / "c.cfg") == "sub/c.cfg"

    def test_rejects_absolute(self) -> None:
        with pytest.raises(ValueError):
            normalise_relative("/etc/passwd")

    def test_rejects_parent_escape(self) -> None:
        with pytest.raises(ValueError):
            normalise_relative("../outside")


# ---------------------------------------------------------------------------
# compute
# ---------------------------------------------------------------------------


class TestCompute:
    def test_records_digest_size_and_mtime(self, tree: Path) -> None:
        manifest = ChecksumManifest.compute(tree, ["a.txt"])
        entry = manifest.get("a.txt")
        assert entry is not None
        assert entry.sha256 == hashlib.sha256(b"alpha").hexdigest()
        assert entry.size == 5
        assert entry.mtime == pytest.approx((tree / "a.txt").stat().st_mtime)

    def test_input_order_does_not_matter(self, tree: Path) -> None:
        first = ChecksumManifest.compute(tree, ["a.txt", "sub/c.cfg", "b.bin"])
        second = ChecksumManifest.compute(tree, ["b.bin", "a.txt", "sub/c.cfg"])
        assert first == second
        assert first.paths == ["a.txt", "b.bin", "sub/c.cfg"]

    def test_same_content_same_digest_at_different_paths(self, tmp_path: Path) -> None:
        (tmp_path / "one").write_text("same", encoding="utf-8")
        (tmp_path / "two").write_text("same", encoding="utf-8")
        manifest = ChecksumManifest.compute(tmp_path, ["one", "two"])
        digests = manifest.digests()
        assert digests["one"] == digests["two"]

    def test_missing_file_raises(self, tree: Path) -> None:
        with pytest.raises(OSError):
            ChecksumManifest.compute(tree, ["nope.txt"])

    def test_compute_tree_includes_nested(self, tree: Path) -> None:
        manifest = ChecksumManifest.compute_tree(tree)
        assert set(manifest.paths) == {"a.txt", "b.bin", "sub/c.cfg"}

    def test_compute_tree_of_missing_root_is_empty(self, tmp_path: Path) -> None:
        assert len(ChecksumManifest.compute_tree(tmp_path / "missing")) == 0

    def test_duplicate_entries_rejected(self) -> None:
        entry = ManifestEntry(path="x", sha256="0" * 64, size=0, mtime=0.0)
        with pytest.raises(ValueError):
            ChecksumManifest([entry, entry])


# ---------------------------------------------------------------------------
# verify
# ---------------------------------------------------------------------------


class TestVerify:
    def test_unchanged_tree_verifies(self, tree: Path) -> None:
        manifest = ChecksumManifest.compute_tree(tree)
        result = ChecksumManifest.verify(manifest, tree)
        assert result.ok is True
        assert result.mismatched_paths == ()

    def test_missing_file_reported(self, tree: Path) -> None:
        manifest = ChecksumManifest.compute_tree(tree)
        (tree / "a.txt").unlink()
        result = ChecksumManifest.verify(manifest, tree)
        assert result.ok is False
        assert result.mismatched_paths == ("a.txt",)

    def test_size_mismatch_reported(self, tree: Path) -> None:
        manifest = ChecksumManifest.compute_tree(tree)
        (tree / "sub" / "c.cfg").write_text("key=value\nmore\n", encoding="utf-8")
        result = ChecksumManifest.verify(manifest, tree)
        assert result.mismatched_paths == ("sub/c.cfg",)

    def test_same_size_digest_mismatch_reported(self, tree: Path) -> None:
        manifest = ChecksumManifest.compute_tree(tree)
        (tree / "a.txt").write_text("alphA", encoding="utf-8")
        result = ChecksumManifest.verify(manifest, tree)
        assert result.ok is False
        assert "a.txt" in result.mismatched_paths

    def test_extra_files_are_not_mismatches(self, tree: Path) -> None:
        manifest = ChecksumManifest.compute(tree, ["a.txt"])
        (tree / "new.txt").write_text("new", encoding="utf-8")
        assert ChecksumManifest.verify(manifest, tree).ok is True


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


class TestSerialisation:
    def test_json_layout(self, tree: Path) -> None:
        manifest = ChecksumManifest.compute(tree, ["a.txt"])
        data = json.loads(manifest.to_json())
        assert list(data) == ["entries"]
        assert set(data["entries"][0]) == {"path", "sha256", "size", "mtime"}

    def test_write_and_read(self, tree: Path, tmp_path: Path) -> None:
        manifest = ChecksumManifest.compute_tree(tree)
        path = tmp_path / ".backup_checksums"
        manifest.write(path)
        assert ChecksumManifest.read(path) == manifest

    def test_entries_must_be_list(self) -> None:
        with pytest.raises(ValueError):
            ChecksumManifest.from_dict({"entries": "nope"})

    def test_same_content_ignores_mtime(self, tree: Path) -> None:
        first = ChecksumManifest.compute_tree(tree)
        entries = [
            ManifestEntry(e.path, e.sha256, e.size, e.mtime + 100.0) for e in first
        ]
        second = ChecksumManifest(entries)
        assert first != second
        assert first.same_content(second)
