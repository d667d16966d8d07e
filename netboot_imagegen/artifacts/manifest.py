"""Release manifest schema and IO.

A manifest records the files extracted for one release version. It is
written once and never modified; a new version gets a new manifest.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from netboot_imagegen.artifacts.fetch import compute_file_sha256, format_sha256sums
from netboot_imagegen.errors import MissingPrerequisiteError, NetbootError
from netboot_imagegen.types import Artifact

logger = logging.getLogger(__name__)

KERNEL_FILE = "vmlinuz"
INITRD_FILE = "initrd.img"
PAYLOAD_FILE = "filesystem.squashfs"

# Entries extracted from the live ISO, in manifest order
RELEASE_ENTRIES = (
    f"live/{KERNEL_FILE}",
    f"live/{INITRD_FILE}",
    f"live/{PAYLOAD_FILE}",
)
REQUIRED_FILES = (KERNEL_FILE, INITRD_FILE, PAYLOAD_FILE)

SHA256SUMS_NAME = "sha256sums.txt"


class ManifestFile(BaseModel):
    """One file listed in a manifest."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(min_length=1)
    size: int = Field(ge=0)
    sha256: str = Field(pattern=r"^[0-9a-f]{64}$")


class ManifestSource(BaseModel):
    """The container the listed files were extracted from."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    locator: str
    path: str
    size: int = Field(ge=0)
    sha256: str = Field(pattern=r"^[0-9a-f]{64}$")


class Manifest(BaseModel):
    """Metadata for the artifacts of one fetch."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    version: str = Field(min_length=1)
    timestamp: str
    files: list[ManifestFile]
    source: ManifestSource | None = None

    def get_file(self, name: str) -> ManifestFile | None:
        """Look up a listed file by name."""
        return next((f for f in self.files if f.name == name), None)

    @property
    def names(self) -> list[str]:
        return [f.name for f in self.files]

    def missing_required(self) -> list[str]:
        """Return required boot files absent from the manifest."""
        return [name for name in REQUIRED_FILES if self.get_file(name) is None]


def build_manifest(
    version: str,
    files: Iterable[Path],
    source: Artifact | None = None,
) -> Manifest:
    """Create a manifest for files on disk.

    Args:
        version: Release version.
        files: Files to list (recorded by base name).
        source: Container the files came from (optional).

    Returns:
        Manifest with freshly computed sizes and digests.
    """
    entries = [
        ManifestFile(
            name=path.name,
            size=path.stat().st_size,
            sha256=compute_file_sha256(path),
        )
        for path in files
    ]
    source_entry = None
    if source is not None:
        source_entry = ManifestSource(
            locator=source.locator,
            path=str(source.path),
            size=source.size_bytes,
            sha256=source.sha256,
        )
    return Manifest(
        version=version,
        timestamp=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        files=entries,
        source=source_entry,
    )


def _write_text_atomic(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_name, path)
    finally:
        Path(tmp_name).unlink(missing_ok=True)


def write_manifest(manifest: Manifest, path: Path) -> Path:
    """Write a manifest as JSON.

    Args:
        manifest: Manifest to write.
        path: Destination path.

    Returns:
        The destination path.
    """
    _write_text_atomic(path, manifest.model_dump_json(indent=2, exclude_none=True) + "\n")
    logger.info("Manifest written: %s", path)
    return path


def load_manifest(path: Path) -> Manifest:
    """Load and validate a manifest.

    Args:
        path: Manifest path.

    Returns:
        Validated Manifest.

    Raises:
        MissingPrerequisiteError: If the manifest does not exist.
        NetbootError: If the manifest cannot be read, is not valid UTF-8
            JSON or does not match the schema (code 'invalid_manifest').
    """
    if not path.is_file():
        raise MissingPrerequisiteError(f"Manifest not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return Manifest.model_validate(data)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, ValidationError) as e:
        raise NetbootError(f"Invalid manifest {path}: {e}", code="invalid_manifest") from e


def write_sha256sums(files: Iterable[Path], dest: Path) -> Path:
    """Write a sha256sum-format listing of ``files`` (by base name)."""
    entries = [(path.name, compute_file_sha256(path)) for path in files]
    _write_text_atomic(dest, format_sha256sums(entries))
    return dest


__all__ = [
    "INITRD_FILE",
    "KERNEL_FILE",
    "PAYLOAD_FILE",
    "RELEASE_ENTRIES",
    "REQUIRED_FILES",
    "SHA256SUMS_NAME",
    "Manifest",
    "ManifestFile",
    "ManifestSource",
    "build_manifest",
    "load_manifest",
    "write_manifest",
    "write_sha256sums",
]
