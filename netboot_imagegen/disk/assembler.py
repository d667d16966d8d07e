"""Disk image assembly.

Assembly is a strict sequence of phases:

    unallocated -> partitioned -> formatted -> populated
        -> bootloader_installed -> finalized

Each phase takes the typed result of the previous phase and returns its
own, so a phase cannot run before its predecessor has completed. Every
loop device and mount acquired along the way is registered with the
assembler and released in reverse order when assembly finishes, fails or
is interrupted.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from types import TracebackType

from netboot_imagegen.disk.backend import BlockDeviceBackend, interrupts_as_exceptions
from netboot_imagegen.disk.layout import DEFAULT_LAYOUT, DiskLayout
from netboot_imagegen.disk.planner import (
    GPT_RESERVE_BYTES,
    VIRTUAL_SUBTREES,
    PartitionPlan,
)
from netboot_imagegen.disk.templates import (
    DEFAULT_TEMPLATES,
    build_placeholders,
    render_templates,
)
from netboot_imagegen.errors import MissingPrerequisiteError, NetbootError
from netboot_imagegen.types import DISK_IMAGE_STATE_ORDER, DiskImageState

logger = logging.getLogger(__name__)

# Host paths bind mounted into the image root for grub-install
CHROOT_BIND_MOUNTS = ("dev", "dev/pts", "proc", "sys")

DATA_README = """\
Data Partition for Edge Device
==============================

This partition contains shared data between all operating systems
installed on this device.

Directory Structure:
{listing}

This partition is automatically mounted at /data in all operating systems.
"""


@dataclass
class DiskImage:
    """A disk image under assembly.

    Attributes:
        path: Backing sparse file.
        plan: Partition plan the image is built from.
        state: Current lifecycle state.
        loop_device: Attached loop device while assembly runs.
        devices: Partition name -> device node.
        uuids: Partition name -> filesystem UUID once formatted.
    """

    path: Path
    plan: PartitionPlan
    state: DiskImageState = DiskImageState.UNALLOCATED
    loop_device: str | None = None
    devices: dict[str, str] = field(default_factory=dict)
    uuids: dict[str, str] = field(default_factory=dict)

    def advance(self, target: DiskImageState) -> None:
        """Move to the next state.

        Raises:
            MissingPrerequisiteError: If ``target`` is not the immediate
                successor of the current state.
        """
        current = DISK_IMAGE_STATE_ORDER.index(self.state)
        if DISK_IMAGE_STATE_ORDER.index(target) != current + 1:
            raise MissingPrerequisiteError(
                f"Cannot move disk image from {self.state.value} to {target.value}"
            )
        logger.debug("Disk image %s: %s -> %s", self.path, self.state.value, target.value)
        self.state = target

    @property
    def complete(self) -> bool:
        return self.state is DiskImageState.FINALIZED


@dataclass(frozen=True)
class PartitionedImage:
    image: DiskImage


@dataclass(frozen=True)
class FormattedImage:
    image: DiskImage


@dataclass(frozen=True)
class PopulatedImage:
    image: DiskImage
    root_mount: Path


@dataclass(frozen=True)
class BootableImage:
    image: DiskImage
    rendered: tuple[Path, ...] = ()


def _expect(result: object, kind: type, state: DiskImageState) -> DiskImage:
    """Check a phase input is the predecessor's result in the right state."""
    if not isinstance(result, kind):
        raise MissingPrerequisiteError(
            f"Expected {kind.__name__}, got {type(result).__name__}"
        )
    image: DiskImage = result.image  # type: ignore[attr-defined]
    if image.state is not state:
        raise MissingPrerequisiteError(
            f"Disk image is {image.state.value}, expected {state.value}"
        )
    return image


class ImageAssembler:
    """Runs the assembly phases against a block-device backend.

    Use as a context manager: leaving the block with an exception releases
    every acquired mount and loop device before the exception propagates.
    """

    def __init__(
        self,
        backend: BlockDeviceBackend,
        work_dir: Path,
        layout: DiskLayout = DEFAULT_LAYOUT,
        bootloader_id: str = "EdgeDevice",
        excludes: Sequence[str] = VIRTUAL_SUBTREES,
        templates: Sequence[tuple[str, str]] = DEFAULT_TEMPLATES,
    ) -> None:
        self.backend = backend
        self.work_dir = work_dir
        self.layout = layout
        self.bootloader_id = bootloader_id
        self.excludes = tuple(excludes)
        self.templates = tuple(templates)
        self._cleanups: list[tuple[str, Callable[[], None]]] = []

    def __enter__(self) -> ImageAssembler:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc_type is not None:
            logger.error("Assembly aborted (%s); releasing resources", exc_type.__name__)
            self.release_all(strict=False)
        else:
            self.release_all(strict=True)

    # Resource tracking

    @property
    def held_resources(self) -> list[str]:
        """Descriptions of resources not yet released, oldest first."""
        return [key for key, _ in self._cleanups]

    def _register(self, key: str, release: Callable[[], None]) -> None:
        self._cleanups.append((key, release))

    def _release(self, key: str) -> None:
        for index in range(len(self._cleanups) - 1, -1, -1):
            if self._cleanups[index][0] == key:
                _, release = self._cleanups.pop(index)
                release()
                return

    def release_all(self, strict: bool = True) -> None:
        """Release every held resource in reverse acquisition order.

        Args:
            strict: Raise the first release failure after attempting all
                releases. When False, failures are only logged.
        """
        first_error: NetbootError | None = None
        while self._cleanups:
            key, release = self._cleanups.pop()
            try:
                release()
                logger.debug("Released %s", key)
            except NetbootError as e:
                logger.warning("Failed to release %s: %s", key, e)
                if first_error is None:
                    first_error = e
        if strict and first_error is not None:
            raise first_error

    def _mount(
        self,
        source: str | Path,
        target: Path,
        options: str | None = None,
        bind: bool = False,
    ) -> None:
        target.mkdir(parents=True, exist_ok=True)
        if self.backend.is_mounted(target):
            logger.warning("%s is already mounted, not mounting again", target)
            return
        if bind:
            self.backend.bind_mount(Path(source), target)
        else:
            self.backend.mount(source, target, options)
        logger.debug("Mounted %s on %s", source, target)
        self._register(f"mount:{target}", lambda: self.backend.unmount(target))

    def _unmount(self, target: Path) -> None:
        self._release(f"mount:{target}")

    # Phases

    def partition(self, image: DiskImage) -> PartitionedImage:
        """Create the sparse file, attach it and write the partition table."""
        if image.state is not DiskImageState.UNALLOCATED:
            raise MissingPrerequisiteError(
                f"Disk image is {image.state.value}, expected unallocated"
            )

        image.path.parent.mkdir(parents=True, exist_ok=True)
        with image.path.open("wb") as f:
            f.truncate(image.plan.image_size_bytes)
        logger.info(
            "Created sparse image %s (%d bytes)", image.path, image.plan.image_size_bytes
        )

        loop = self.backend.attach_loop(image.path)
        image.loop_device = loop

        def _detach() -> None:
            self.backend.detach_loop(loop)
            image.loop_device = None

        self._register(f"loop:{loop}", _detach)

        self.backend.write_partition_table(loop, image.plan.partitions, GPT_RESERVE_BYTES)
        image.devices = {
            part.name: self.backend.partition_device(loop, part.number)
            for part in image.plan.partitions
        }
        image.advance(DiskImageState.PARTITIONED)
        return PartitionedImage(image)

    def format(self, previous: PartitionedImage) -> FormattedImage:
        """Create filesystems and read back their UUIDs."""
        image = _expect(previous, PartitionedImage, DiskImageState.PARTITIONED)

        for part in image.plan.partitions:
            device = image.devices[part.name]
            logger.info("Formatting %s as %s (%s)", device, part.fs.value, part.label)
            self.backend.format(device, part.fs, part.label)
            image.uuids[part.name] = self.backend.get_uuid(device)

        image.advance(DiskImageState.FORMATTED)
        return FormattedImage(image)

    def populate(self, previous: FormattedImage, source_root: Path) -> PopulatedImage:
        """Copy the root tree and lay out the data partition."""
        image = _expect(previous, FormattedImage, DiskImageState.FORMATTED)
        if not source_root.is_dir():
            raise MissingPrerequisiteError(f"Source root not found: {source_root}")

        root_mount = self.work_dir / "root"
        self._mount(image.devices[self.layout.root_partition], root_mount)
        logger.info("Copying %s into %s", source_root, root_mount)
        self.backend.copy_tree(source_root, root_mount, self.excludes)
        for name in self.excludes:
            (root_mount / name).mkdir(exist_ok=True)

        if self.layout.data_partition is not None:
            data_mount = self.work_dir / "data"
            self._mount(image.devices[self.layout.data_partition], data_mount)
            self._write_data_skeleton(data_mount)
            self._unmount(data_mount)

        image.advance(DiskImageState.POPULATED)
        return PopulatedImage(image, root_mount)

    def _write_data_skeleton(self, data_mount: Path) -> None:
        for name in self.layout.data_dirs:
            (data_mount / name).mkdir(mode=0o755, exist_ok=True)
        listing = "\n".join(f"- {name}/" for name in self.layout.data_dirs)
        (data_mount / "README.txt").write_text(
            DATA_README.format(listing=listing), encoding="utf-8"
        )
        logger.info("Data partition skeleton written to %s", data_mount)

    def install_bootloader(self, previous: PopulatedImage) -> BootableImage:
        """Render identifier templates and install GRUB inside the image."""
        image = _expect(previous, PopulatedImage, DiskImageState.POPULATED)
        root = previous.root_mount

        boot = image.plan.boot_partition
        if boot is None:
            raise MissingPrerequisiteError("Partition plan has no boot partition")
        self._mount(image.devices[boot.name], root / "boot" / "efi")
        for rel in CHROOT_BIND_MOUNTS:
            self._mount(Path("/") / rel, root / rel, bind=True)

        rendered = render_templates(
            root, build_placeholders(image.uuids), self.templates
        )

        self.backend.run_chroot(
            root,
            [
                "grub-install",
                "--target=x86_64-efi",
                "--efi-directory=/boot/efi",
                f"--bootloader-id={self.bootloader_id}",
                "--removable",
            ],
        )
        self.backend.run_chroot(root, ["update-grub"])

        image.advance(DiskImageState.BOOTLOADER_INSTALLED)
        return BootableImage(image, tuple(rendered))

    def finalize(self, previous: BootableImage) -> DiskImage:
        """Unmount everything and detach the loop device."""
        image = _expect(previous, BootableImage, DiskImageState.BOOTLOADER_INSTALLED)
        self.release_all(strict=True)
        image.advance(DiskImageState.FINALIZED)
        logger.info("Disk image finalized: %s", image.path)
        return image


def assemble(
    plan: PartitionPlan,
    source_root: Path,
    image_path: Path,
    backend: BlockDeviceBackend,
    work_dir: Path,
    layout: DiskLayout = DEFAULT_LAYOUT,
    bootloader_id: str = "EdgeDevice",
) -> DiskImage:
    """Build a finalized disk image from a plan and a root tree.

    Args:
        plan: Partition plan (already validated by the planner).
        source_root: Root filesystem tree to copy into the root partition.
        image_path: Backing file to create.
        backend: Block-device backend.
        work_dir: Directory for temporary mount points.
        layout: Layout the plan was derived from.
        bootloader_id: EFI boot loader identifier.

    Returns:
        DiskImage in the finalized state.

    Raises:
        MissingPrerequisiteError: If the source tree is missing.
        ToolError: If any external tool fails (resources are released first).
        UnresolvedPlaceholderError: If a template keeps a placeholder.
    """
    if not source_root.is_dir():
        raise MissingPrerequisiteError(f"Source root not found: {source_root}")

    image = DiskImage(path=image_path, plan=plan)
    with interrupts_as_exceptions(), ImageAssembler(
        backend, work_dir, layout=layout, bootloader_id=bootloader_id
    ) as assembler:
        partitioned = assembler.partition(image)
        formatted = assembler.format(partitioned)
        populated = assembler.populate(formatted, source_root)
        bootable = assembler.install_bootloader(populated)
        return assembler.finalize(bootable)


__all__ = [
    "CHROOT_BIND_MOUNTS",
    "BootableImage",
    "DiskImage",
    "FormattedImage",
    "ImageAssembler",
    "PartitionedImage",
    "PopulatedImage",
    "assemble",
]
