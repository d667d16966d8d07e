"""Tests for release manifest schema and IO."""

import hashlib
import json
import re
from pathlib import Path

import pytest
from pydantic import ValidationError

from netboot_imagegen.artifacts.manifest import (
    Manifest,
    ManifestFile,
    build_manifest,
    load_manifest,
    write_manifest,
    write_sha256sums,
)
from netboot_imagegen.errors import MissingPrerequisiteError, NetbootError
from netboot_imagegen.types import Artifact


def _write(path: Path, data: bytes) -> Path:
    path.write_bytes(data)
    return path


class TestManifestSchema:
    """Tests for manifest models."""

    def test_rejects_bad_digest(self):
        """Should reject digests that are not lowercase hex."""
        with pytest.raises(ValidationError):
            ManifestFile(name="vmlinuz", size=1, sha256="XYZ")

    def test_rejects_unknown_fields(self):
        """Should forbid unknown fields."""
        with pytest.raises(ValidationError):
            Manifest.model_validate(
                {"version": "1", "timestamp": "t", "files": [], "extra": True}
            )

    def test_missing_required(self):
        """Should list required boot files absent from the manifest."""
        manifest = Manifest(
            version="1",
            timestamp="t",
            files=[ManifestFile(name="vmlinuz", size=1, sha256="a" * 64)],
        )
        assert manifest.missing_required() == ["initrd.img", "filesystem.squashfs"]
        assert manifest.get_file("initrd.img") is None


class TestBuildManifest:
    """Tests for build_manifest function."""

    def test_records_sizes_and_digests(self, tmp_path):
        """Should hash every file and keep the given order."""
        kernel = _write(tmp_path / "vmlinuz", b"kernel")
        initrd = _write(tmp_path / "initrd.img", b"initrd!")

        manifest = build_manifest("3.1.2-22", [kernel, initrd])

        assert manifest.names == ["vmlinuz", "initrd.img"]
        assert manifest.files[1].size == 7
        assert manifest.files[0].sha256 == hashlib.sha256(b"kernel").hexdigest()
        assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z", manifest.timestamp)
        assert manifest.source is None

    def test_records_source(self, tmp_path):
        """Should describe the container the files came from."""
        kernel = _write(tmp_path / "vmlinuz", b"kernel")
        source = Artifact(
            locator="https://example.com/cz.iso",
            path=tmp_path / "cz.iso",
            size_bytes=10,
            sha256="b" * 64,
            verified=True,
        )

        manifest = build_manifest("1", [kernel], source=source)

        assert manifest.source is not None
        assert manifest.source.locator == "https://example.com/cz.iso"


class TestManifestIO:
    """Tests for writing and loading manifests."""

    def test_write_and_load(self, tmp_path):
        """Should round-trip through JSON without a null source."""
        kernel = _write(tmp_path / "vmlinuz", b"kernel")
        manifest = build_manifest("1", [kernel])
        path = tmp_path / "out" / "manifest.json"

        write_manifest(manifest, path)

        assert "source" not in json.loads(path.read_text())
        assert load_manifest(path) == manifest

    def test_load_missing(self, tmp_path):
        """Should raise MissingPrerequisiteError for a missing manifest."""
        with pytest.raises(MissingPrerequisiteError):
            load_manifest(tmp_path / "manifest.json")

    def test_load_invalid(self, tmp_path):
        """Should raise NetbootError for malformed content."""
        path = _write(tmp_path / "manifest.json", b"{not json")

        with pytest.raises(NetbootError) as exc_info:
            load_manifest(path)

        assert exc_info.value.code == "invalid_manifest"

    def test_load_not_utf8(self, tmp_path):
        """Should raise NetbootError rather than UnicodeDecodeError."""
        path = _write(tmp_path / "manifest.json", b"\xff\xfe{bad")

        with pytest.raises(NetbootError) as exc_info:
            load_manifest(path)

        assert exc_info.value.code == "invalid_manifest"

    def test_write_sha256sums(self, tmp_path):
        """Should write sha256sum formatted lines by base name."""
        kernel = _write(tmp_path / "vmlinuz", b"kernel")

        dest = write_sha256sums([kernel], tmp_path / "sha256sums.txt")

        assert dest.read_text() == f"{hashlib.sha256(b'kernel').hexdigest()}  vmlinuz\n"
