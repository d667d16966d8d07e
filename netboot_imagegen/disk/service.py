"""High-level image build service.

This module ties planning, assembly and publishing together:
- plan_for_tree(): Size a layout against a root filesystem tree
- build_image(): Plan, assemble and publish one disk image

Planning happens before anything is allocated, so size violations never
leave a partial image behind.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from netboot_imagegen.config import MIB
from netboot_imagegen.disk.assembler import DiskImage, assemble
from netboot_imagegen.disk.backend import BlockDeviceBackend, SystemBackend
from netboot_imagegen.disk.layout import DEFAULT_LAYOUT, DiskLayout
from netboot_imagegen.disk.planner import (
    PartitionPlan,
    SizeLimits,
    estimate_tree_size,
    plan,
)
from netboot_imagegen.disk.publish import PublishedImage, publish_image
from netboot_imagegen.errors import MissingPrerequisiteError
from netboot_imagegen.types import SizeMode

if TYPE_CHECKING:
    from netboot_imagegen.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_NAME = "edge-device-init.img"


@dataclass(frozen=True)
class BuildOutcome:
    """Result of a complete image build."""

    image: DiskImage
    published: PublishedImage


def plan_for_tree(
    settings: Settings,
    source_root: Path,
    layout: DiskLayout = DEFAULT_LAYOUT,
    total_size: int | None = None,
) -> PartitionPlan:
    """Plan a layout for a root tree.

    Args:
        settings: Pipeline settings (size policy).
        source_root: Root filesystem tree.
        layout: Disk layout.
        total_size: Usable size in bytes, or None to size from content.

    Returns:
        Resolved PartitionPlan.

    Raises:
        MissingPrerequisiteError: If the source tree does not exist.
        SizeConstraintError: If the layout cannot be satisfied.
    """
    content_size: int | None = None
    if any(p.size_mode is SizeMode.CONTENT for p in layout.partitions):
        if not source_root.is_dir():
            raise MissingPrerequisiteError(f"Source root not found: {source_root}")
        content_size = estimate_tree_size(source_root)
        logger.info("Root content: %d MiB", content_size // MIB)

    return plan(
        total_size,
        layout.partitions,
        content_size=content_size,
        limits=SizeLimits.from_settings(settings),
    )


def build_image(
    settings: Settings,
    source_root: Path,
    layout: DiskLayout = DEFAULT_LAYOUT,
    total_size: int | None = None,
    backend: BlockDeviceBackend | None = None,
    image_name: str = DEFAULT_IMAGE_NAME,
) -> BuildOutcome:
    """Plan, assemble and publish a disk image.

    The raw image is written under ``settings.build_dir``; published files
    go to ``settings.build_dir / "images"``.

    Args:
        settings: Pipeline settings.
        source_root: Root filesystem tree.
        layout: Disk layout.
        total_size: Usable size in bytes, or None to size from content.
        backend: Block-device backend (system tools when omitted).
        image_name: File name of the raw image.

    Returns:
        BuildOutcome with the finalized image and published files.
    """
    partition_plan = plan_for_tree(settings, source_root, layout, total_size)
    backend = backend or SystemBackend()

    image = assemble(
        partition_plan,
        source_root,
        image_path=settings.build_dir / image_name,
        backend=backend,
        work_dir=settings.build_dir / "mnt",
        layout=layout,
        bootloader_id=settings.bootloader_id,
    )
    published = publish_image(image, settings.build_dir / "images")
    return BuildOutcome(image=image, published=published)


__all__ = [
    "DEFAULT_IMAGE_NAME",
    "BuildOutcome",
    "build_image",
    "plan_for_tree",
]
