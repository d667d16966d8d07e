"""Publishing of finalized disk images.

Produces a gzip-compressed copy for network delivery, ``.sha256`` sidecar
files in sha256sum format and an ``image-manifest.json`` describing the
partition layout.
"""

from __future__ import annotations

import gzip
import json
import logging
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from netboot_imagegen.artifacts.fetch import compute_file_sha256, format_sha256sums
from netboot_imagegen.disk.assembler import DiskImage
from netboot_imagegen.errors import MissingPrerequisiteError, NetbootError

logger = logging.getLogger(__name__)

IMAGE_MANIFEST_NAME = "image-manifest.json"


@dataclass(frozen=True)
class PublishedImage:
    """Files produced by publishing one image."""

    raw_path: Path
    compressed_path: Path
    manifest_path: Path
    checksums: dict[str, str]


class ImagePartitionEntry(BaseModel):
    """Placement of one partition as recorded in the image manifest."""

    model_config = ConfigDict(extra="allow", frozen=True)

    name: str
    offset: int = Field(ge=0)
    length: int = Field(gt=0)


class CompressedImageEntry(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    file: str = Field(min_length=1)
    size_bytes: int = Field(ge=0)
    sha256: str = Field(pattern=r"^[0-9a-f]{64}$")


class ImageManifest(BaseModel):
    """Schema of ``image-manifest.json`` as read back by verification."""

    model_config = ConfigDict(extra="allow", frozen=True)

    image: str = Field(min_length=1)
    size_bytes: int = Field(gt=0)
    sha256: str = Field(pattern=r"^[0-9a-f]{64}$")
    compressed: CompressedImageEntry
    partitions: list[ImagePartitionEntry]


def load_image_manifest(path: Path) -> ImageManifest:
    """Load and validate a published image manifest.

    Raises:
        MissingPrerequisiteError: If the manifest does not exist.
        NetbootError: If it cannot be parsed (code 'invalid_image_manifest').
    """
    if not path.is_file():
        raise MissingPrerequisiteError(f"Image manifest not found: {path}")
    try:
        return ImageManifest.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, ValidationError) as e:
        raise NetbootError(
            f"Invalid image manifest {path}: {e}", code="invalid_image_manifest"
        ) from e


def write_checksum_sidecar(path: Path) -> str:
    """Write ``<path>.sha256`` and return the digest."""
    digest = compute_file_sha256(path)
    sidecar = path.with_name(path.name + ".sha256")
    sidecar.write_text(format_sha256sums([(path.name, digest)]), encoding="utf-8")
    return digest


def compress_image(source: Path, dest: Path) -> Path:
    """Write a gzip-compressed copy of ``source`` to ``dest``."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    with source.open("rb") as src, gzip.open(dest, "wb") as dst:
        shutil.copyfileobj(src, dst, length=1024 * 1024)
    logger.info("Compressed %s -> %s", source, dest)
    return dest


def publish_image(image: DiskImage, output_dir: Path) -> PublishedImage:
    """Publish a finalized disk image into ``output_dir``.

    Args:
        image: Finalized disk image.
        output_dir: Directory receiving the compressed image, sidecars and
            image manifest.

    Returns:
        PublishedImage describing the produced files.

    Raises:
        MissingPrerequisiteError: If the image is not finalized.
    """
    if not image.complete:
        raise MissingPrerequisiteError(
            f"Disk image {image.path} is {image.state.value}, expected finalized"
        )

    output_dir.mkdir(parents=True, exist_ok=True)
    compressed = compress_image(image.path, output_dir / f"{image.path.name}.gz")

    checksums = {
        image.path.name: write_checksum_sidecar(image.path),
        compressed.name: write_checksum_sidecar(compressed),
    }

    manifest = {
        "image": image.path.name,
        "created": datetime.now(timezone.utc).isoformat(),
        "size_bytes": image.plan.image_size_bytes,
        "compressed": {
            "file": compressed.name,
            "size_bytes": compressed.stat().st_size,
            "sha256": checksums[compressed.name],
        },
        "sha256": checksums[image.path.name],
        "partitions": [
            {
                **entry,
                "uuid": image.uuids.get(str(entry["name"])),
            }
            for entry in image.plan.to_dict()["partitions"]  # type: ignore[union-attr]
        ],
    }
    manifest_path = output_dir / IMAGE_MANIFEST_NAME
    manifest_path.write_text(json.dumps(manifest, indent=2) + "\n", encoding="utf-8")
    logger.info("Image manifest written: %s", manifest_path)

    return PublishedImage(
        raw_path=image.path,
        compressed_path=compressed,
        manifest_path=manifest_path,
        checksums=checksums,
    )


__all__ = [
    "IMAGE_MANIFEST_NAME",
    "CompressedImageEntry",
    "ImageManifest",
    "ImagePartitionEntry",
    "PublishedImage",
    "compress_image",
    "load_image_manifest",
    "publish_image",
    "write_checksum_sidecar",
]
