"""Extraction of named entries from ISO images and tar archives.

The container is always opened read-only. ISO images are loop mounted
through the block-device backend and unmounted on every exit path; tar
archives are read with ``tarfile``. SIGTERM is turned into an exception
while an ISO is mounted so the mount is still released.
"""

from __future__ import annotations

import logging
import os
import shutil
import tarfile
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from netboot_imagegen.disk.backend import (
    BlockDeviceBackend,
    SystemBackend,
    interrupts_as_exceptions,
)
from netboot_imagegen.errors import ExtractionError, ToolError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExtractedSet:
    """Files extracted from one container.

    Attributes:
        target_dir: Directory holding the extracted files.
        files: Extracted file paths, in request order.
        skipped: True when every file already existed.
    """

    target_dir: Path
    files: tuple[Path, ...]
    skipped: bool = False


def target_paths(target_dir: Path, entry_names: Sequence[str]) -> list[Path]:
    """Return the flattened destination of each entry."""
    return [target_dir / PurePosixPath(name).name for name in entry_names]


def _copy_into_place(source: Path, dest: Path) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.")
    os.close(fd)
    try:
        shutil.copyfile(source, tmp_name)
        os.replace(tmp_name, dest)
    finally:
        Path(tmp_name).unlink(missing_ok=True)


def _extract_from_tar(
    container: Path, entry_names: Sequence[str], dests: Sequence[Path]
) -> None:
    try:
        with tarfile.open(container, "r:*") as tar:
            for name, dest in zip(entry_names, dests, strict=True):
                try:
                    member = tar.getmember(name)
                except KeyError as e:
                    raise ExtractionError(
                        f"Entry {name} not found in {container}", code="entry_missing"
                    ) from e
                stream = tar.extractfile(member)
                if stream is None:
                    raise ExtractionError(
                        f"Entry {name} in {container} is not a regular file",
                        code="entry_missing",
                    )
                fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.")
                try:
                    with stream, os.fdopen(fd, "wb") as out:
                        shutil.copyfileobj(stream, out)
                    os.replace(tmp_name, dest)
                finally:
                    Path(tmp_name).unlink(missing_ok=True)
                logger.debug("Extracted %s -> %s", name, dest)
    except tarfile.TarError as e:
        raise ExtractionError(f"Failed to read archive {container}: {e}") from e


def _extract_from_iso(
    container: Path,
    entry_names: Sequence[str],
    dests: Sequence[Path],
    backend: BlockDeviceBackend,
) -> None:
    mount_dir = Path(tempfile.mkdtemp(prefix="netboot-iso-"))
    try:
        completed = False
        try:
            try:
                backend.mount(container, mount_dir, options="loop,ro")
            except ToolError as e:
                raise ExtractionError(f"Failed to mount {container}: {e}") from e

            for name, dest in zip(entry_names, dests, strict=True):
                source = mount_dir / name
                if not source.is_file():
                    raise ExtractionError(
                        f"Entry {name} not found in {container}", code="entry_missing"
                    )
                _copy_into_place(source, dest)
                logger.debug("Extracted %s -> %s", name, dest)
            completed = True
        finally:
            # An interrupt can arrive after mount() attached the image
            if backend.is_mounted(mount_dir):
                try:
                    backend.unmount(mount_dir)
                except ToolError as e:
                    if completed:
                        raise ExtractionError(
                            f"Failed to unmount {mount_dir}: {e}", code="unmount_error"
                        ) from e
                    logger.warning("Failed to unmount %s: %s", mount_dir, e)
    finally:
        try:
            mount_dir.rmdir()
        except OSError as e:
            logger.warning("Could not remove mount point %s: %s", mount_dir, e)


def extract(
    container: Path,
    target_dir: Path,
    entry_names: Sequence[str],
    backend: BlockDeviceBackend | None = None,
) -> ExtractedSet:
    """Copy named entries out of a container.

    Entries are flattened to their base names inside ``target_dir``.
    Nothing is done when every target file already exists.

    Args:
        container: ISO image or tar archive.
        target_dir: Output directory.
        entry_names: Paths of the entries inside the container.
        backend: Block-device backend used to mount ISO images.

    Returns:
        ExtractedSet describing the extracted files.

    Raises:
        ExtractionError: If the container is missing, an entry is absent,
            or the mount/unmount fails.
    """
    dests = target_paths(target_dir, entry_names)
    if all(dest.is_file() for dest in dests):
        logger.info("All entries already extracted in %s, skipping", target_dir)
        return ExtractedSet(target_dir=target_dir, files=tuple(dests), skipped=True)

    if not container.is_file():
        raise ExtractionError(f"Container not found: {container}", code="container_missing")

    target_dir.mkdir(parents=True, exist_ok=True)
    logger.info("Extracting %d entries from %s", len(entry_names), container)

    if tarfile.is_tarfile(container):
        _extract_from_tar(container, entry_names, dests)
    else:
        with interrupts_as_exceptions():
            _extract_from_iso(container, entry_names, dests, backend or SystemBackend())

    return ExtractedSet(target_dir=target_dir, files=tuple(dests))


__all__ = ["ExtractedSet", "extract", "target_paths"]
