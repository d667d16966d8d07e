"""Clonezilla image set management.

An image set is a directory saved by Clonezilla (it holds an ``info`` file
and a ``parts`` entry). Imported sets get a ``SHA256SUMS`` file covering
every other file in sorted order, which ``verify_image_set`` recomputes.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from netboot_imagegen.artifacts.fetch import (
    compute_file_sha256,
    format_sha256sums,
    parse_sha256sums,
)
from netboot_imagegen.errors import MissingPrerequisiteError, NetbootError

logger = logging.getLogger(__name__)

IMAGE_SUMS_NAME = "SHA256SUMS"


@dataclass(frozen=True)
class ImageSet:
    """An imported image set."""

    name: str
    path: Path
    file_count: int


@dataclass
class ImageSetVerification:
    """Result of re-hashing an image set.

    Attributes:
        name: Image set name.
        mismatched: Files whose digest changed.
        missing: Files listed in SHA256SUMS but absent.
        unexpected: Files present but not listed.
    """

    name: str
    mismatched: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    unexpected: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.mismatched or self.missing or self.unexpected)


def is_image_set_dir(path: Path) -> bool:
    """Check whether ``path`` looks like a Clonezilla image directory."""
    return (path / "info").is_file() and (path / "parts").exists()


def _image_files(root: Path) -> list[str]:
    return sorted(
        p.relative_to(root).as_posix()
        for p in root.rglob("*")
        if p.is_file() and p.relative_to(root).as_posix() != IMAGE_SUMS_NAME
    )


def write_image_sums(root: Path) -> Path:
    """Write SHA256SUMS over every file of an image set."""
    entries = [(rel, compute_file_sha256(root / rel)) for rel in _image_files(root)]
    sums_path = root / IMAGE_SUMS_NAME
    sums_path.write_text(format_sha256sums(entries), encoding="utf-8")
    return sums_path


def import_image_set(source: Path, image_sets_dir: Path) -> ImageSet:
    """Import a Clonezilla image directory.

    An already imported set of the same name is not copied again; its
    SHA256SUMS is regenerated.

    Args:
        source: Directory saved by Clonezilla.
        image_sets_dir: Directory holding imported sets.

    Returns:
        The imported ImageSet.

    Raises:
        MissingPrerequisiteError: If ``source`` is missing or is not an
            image directory.
    """
    if not source.is_dir():
        raise MissingPrerequisiteError(f"Source directory not found: {source}")
    if not is_image_set_dir(source):
        raise MissingPrerequisiteError(
            f"Not a Clonezilla image dir (missing info/parts): {source}",
            code="invalid_image_set",
        )

    dest = image_sets_dir / source.name
    if dest.exists():
        logger.warning("Image already exists: %s (skipping copy)", source.name)
    else:
        logger.info("Copying image %s", source.name)
        image_sets_dir.mkdir(parents=True, exist_ok=True)
        shutil.copytree(source, dest, symlinks=True)

    write_image_sums(dest)
    count = len(_image_files(dest))
    logger.info("Imported image: %s (%d files)", source.name, count)
    return ImageSet(name=source.name, path=dest, file_count=count)


def list_image_sets(image_sets_dir: Path) -> list[str]:
    """List imported image set names, sorted."""
    if not image_sets_dir.is_dir():
        logger.warning("No images directory: %s", image_sets_dir)
        return []
    return sorted(p.name for p in image_sets_dir.iterdir() if p.is_dir())


def verify_image_set(name: str, image_sets_dir: Path) -> ImageSetVerification:
    """Recompute an image set's digests and compare with SHA256SUMS.

    Raises:
        MissingPrerequisiteError: If the set or its SHA256SUMS is missing.
    """
    root = image_sets_dir / name
    if not root.is_dir():
        raise MissingPrerequisiteError(f"Image not found: {name}")
    sums_path = root / IMAGE_SUMS_NAME
    if not sums_path.is_file():
        raise MissingPrerequisiteError(f"{IMAGE_SUMS_NAME} missing for {name}")

    try:
        recorded = parse_sha256sums(sums_path.read_text(encoding="utf-8"))
    except UnicodeDecodeError as e:
        raise NetbootError(f"Unreadable {sums_path}: {e}", code="invalid_sums") from e

    result = ImageSetVerification(name=name)
    present = set(_image_files(root))
    for rel, digest in sorted(recorded.items()):
        if rel not in present:
            result.missing.append(rel)
        elif compute_file_sha256(root / rel) != digest:
            result.mismatched.append(rel)
    result.unexpected = sorted(present - set(recorded))

    if result.ok:
        logger.info("Image %s verification PASSED", name)
    else:
        logger.error(
            "Image %s verification FAILED (mismatched=%d missing=%d unexpected=%d)",
            name,
            len(result.mismatched),
            len(result.missing),
            len(result.unexpected),
        )
    return result


__all__ = [
    "IMAGE_SUMS_NAME",
    "ImageSet",
    "ImageSetVerification",
    "import_image_set",
    "is_image_set_dir",
    "list_image_sets",
    "verify_image_set",
    "write_image_sums",
]
