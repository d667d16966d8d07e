"""Block-device and filesystem backend.

All privileged operations used by extraction and image assembly go through
``BlockDeviceBackend`` so the planning and assembly logic can be exercised
without root access or real disks. ``SystemBackend`` drives the standard
Linux tools through ``run_tool``.
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from types import FrameType
from typing import TYPE_CHECKING

from netboot_imagegen.errors import LoopDeviceError, MountError, ToolError
from netboot_imagegen.types import FilesystemKind

if TYPE_CHECKING:
    from netboot_imagegen.disk.planner import ResolvedPartition

logger = logging.getLogger(__name__)

SECTOR_SIZE = 512

# GPT partition type shortcuts understood by sfdisk
_SFDISK_TYPES = {
    FilesystemKind.VFAT: "U",
    FilesystemKind.EXT4: "L",
    FilesystemKind.SWAP: "S",
}


@dataclass(frozen=True)
class ToolResult:
    """Captured outcome of one external tool invocation."""

    argv: list[str]
    returncode: int
    stdout: str
    stderr: str


def format_argv(argv: Sequence[str]) -> str:
    """Render an argument vector as a shell-quoted string for logs."""
    return shlex.join(list(argv))


def run_tool(
    argv: Sequence[str],
    *,
    check: bool = True,
    input_text: str | None = None,
    timeout: float | None = None,
    error_cls: type[ToolError] = ToolError,
    code: str | None = None,
) -> ToolResult:
    """Run an external tool with consistent logging.

    Args:
        argv: Command and arguments.
        check: Raise when the tool exits non-zero.
        input_text: Optional text fed to the tool's stdin.
        timeout: Optional timeout in seconds.
        error_cls: ToolError subclass raised on failure.
        code: Error code attached to the raised error.

    Returns:
        ToolResult with captured output.

    Raises:
        ToolError: (or ``error_cls``) if the tool cannot be started, times
            out, or exits non-zero while ``check`` is set.
    """
    argv_list = [str(a) for a in argv]
    cmd_str = format_argv(argv_list)
    logger.debug("Running: %s", cmd_str)

    try:
        proc = subprocess.run(
            argv_list,
            input=input_text,
            text=True,
            capture_output=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise error_cls(
            f"{argv_list[0]} timed out after {timeout}s",
            code="timeout",
            argv=argv_list,
        ) from e
    except OSError as e:
        raise error_cls(
            f"Failed to execute {argv_list[0]}: {e}",
            code="execution_error",
            argv=argv_list,
        ) from e

    if proc.stdout:
        logger.debug("stdout: %s", proc.stdout.strip())
    if proc.stderr:
        logger.debug("stderr: %s", proc.stderr.strip())

    if check and proc.returncode != 0:
        raise error_cls(
            f"Command failed ({proc.returncode}): {cmd_str}: {proc.stderr.strip()}",
            code=code,
            argv=argv_list,
            returncode=proc.returncode,
        )

    return ToolResult(
        argv=argv_list,
        returncode=proc.returncode,
        stdout=proc.stdout,
        stderr=proc.stderr,
    )


def partition_device_path(device: str, number: int) -> str:
    """Return the device node of partition ``number`` on ``device``.

    Devices whose names end in a digit (loop, nvme, mmcblk) use a ``p``
    separator.
    """
    if device[-1:].isdigit():
        return f"{device}p{number}"
    return f"{device}{number}"


def render_sfdisk_script(
    partitions: Sequence[ResolvedPartition], reserve_bytes: int
) -> str:
    """Render an sfdisk GPT script for a resolved partition plan.

    Args:
        partitions: Resolved partitions in table order.
        reserve_bytes: Bytes reserved before the first partition.

    Returns:
        Script text suitable for ``sfdisk <device>`` stdin.
    """
    lines = [
        "label: gpt",
        "unit: sectors",
        f"first-lba: {reserve_bytes // SECTOR_SIZE}",
        "",
    ]
    for part in partitions:
        start = (reserve_bytes + part.offset) // SECTOR_SIZE
        size = part.length // SECTOR_SIZE
        fields = [
            f"start={start}",
            f"size={size}",
            f"type={_SFDISK_TYPES[part.fs]}",
            f'name="{part.label}"',
        ]
        if part.boot:
            fields.append('attrs="LegacyBIOSBootable"')
        lines.append(", ".join(fields))
    return "\n".join(lines) + "\n"


class BlockDeviceBackend(ABC):
    """Narrow interface over loop devices, partitioning, filesystems and mounts."""

    @abstractmethod
    def attach_loop(self, image_path: Path) -> str:
        """Attach an image file with partition scanning; return the loop device."""

    @abstractmethod
    def detach_loop(self, device: str) -> None:
        """Detach a loop device."""

    def partition_device(self, device: str, number: int) -> str:
        """Return the device node for partition ``number``."""
        return partition_device_path(device, number)

    @abstractmethod
    def write_partition_table(
        self,
        device: str,
        partitions: Sequence[ResolvedPartition],
        reserve_bytes: int,
    ) -> None:
        """Write a GPT describing ``partitions`` and rescan the device."""

    @abstractmethod
    def format(self, device: str, fs: FilesystemKind, label: str) -> None:
        """Create a filesystem (or swap area) with the given label."""

    @abstractmethod
    def get_uuid(self, device: str) -> str:
        """Return the filesystem UUID of ``device``."""

    @abstractmethod
    def mount(
        self,
        source: str | Path,
        target: Path,
        options: str | None = None,
    ) -> None:
        """Mount ``source`` on ``target``."""

    @abstractmethod
    def bind_mount(self, source: Path, target: Path) -> None:
        """Bind mount ``source`` on ``target``."""

    @abstractmethod
    def unmount(self, target: Path) -> None:
        """Unmount ``target``."""

    @abstractmethod
    def is_mounted(self, target: Path) -> bool:
        """Check whether ``target`` is currently a mount point."""

    @abstractmethod
    def copy_tree(
        self, source: Path, target: Path, excludes: Sequence[str] = ()
    ) -> None:
        """Copy a tree preserving ownership, permissions and links."""

    @abstractmethod
    def run_chroot(self, root: Path, argv: Sequence[str]) -> None:
        """Run a command inside ``root``."""

    @abstractmethod
    def disk_size_bytes(self, device: str) -> int:
        """Return the size of a block device in bytes."""


class SystemBackend(BlockDeviceBackend):
    """Backend driving losetup, sfdisk, mkfs.*, blkid, mount and rsync."""

    def __init__(self, tool_timeout: float | None = None) -> None:
        self.tool_timeout = tool_timeout

    def attach_loop(self, image_path: Path) -> str:
        result = run_tool(
            ["losetup", "--show", "-f", "-P", str(image_path)],
            error_cls=LoopDeviceError,
            timeout=self.tool_timeout,
        )
        device = result.stdout.strip()
        if not device:
            raise LoopDeviceError(
                f"losetup returned no device for {image_path}",
                argv=result.argv,
            )
        logger.info("Attached %s to %s", image_path, device)
        return device

    def detach_loop(self, device: str) -> None:
        run_tool(
            ["losetup", "-d", device],
            error_cls=LoopDeviceError,
            timeout=self.tool_timeout,
        )
        logger.info("Detached %s", device)

    def write_partition_table(
        self,
        device: str,
        partitions: Sequence[ResolvedPartition],
        reserve_bytes: int,
    ) -> None:
        script = render_sfdisk_script(partitions, reserve_bytes)
        run_tool(
            ["sfdisk", "--wipe", "always", device],
            input_text=script,
            timeout=self.tool_timeout,
            code="partition_error",
        )
        run_tool(["partprobe", device], timeout=self.tool_timeout)
        # udev may lag behind partprobe on some hosts
        run_tool(["udevadm", "settle"], check=False, timeout=self.tool_timeout)

    def format(self, device: str, fs: FilesystemKind, label: str) -> None:
        if fs is FilesystemKind.VFAT:
            argv = ["mkfs.fat", "-F32", "-n", label, device]
        elif fs is FilesystemKind.EXT4:
            argv = ["mkfs.ext4", "-F", "-L", label, device]
        else:
            argv = ["mkswap", "-L", label, device]
        run_tool(argv, timeout=self.tool_timeout, code="format_error")

    def get_uuid(self, device: str) -> str:
        result = run_tool(
            ["blkid", "-s", "UUID", "-o", "value", device],
            timeout=self.tool_timeout,
        )
        uuid = result.stdout.strip()
        if not uuid:
            raise ToolError(f"No UUID reported for {device}", argv=result.argv)
        return uuid

    def mount(
        self,
        source: str | Path,
        target: Path,
        options: str | None = None,
    ) -> None:
        argv = ["mount"]
        if options:
            argv += ["-o", options]
        argv += [str(source), str(target)]
        run_tool(argv, error_cls=MountError, timeout=self.tool_timeout)

    def bind_mount(self, source: Path, target: Path) -> None:
        run_tool(
            ["mount", "--bind", str(source), str(target)],
            error_cls=MountError,
            timeout=self.tool_timeout,
        )

    def unmount(self, target: Path) -> None:
        run_tool(["umount", str(target)], error_cls=MountError, timeout=self.tool_timeout)

    def is_mounted(self, target: Path) -> bool:
        return os.path.ismount(target)

    def copy_tree(
        self, source: Path, target: Path, excludes: Sequence[str] = ()
    ) -> None:
        argv = ["rsync", "-aHAX", "--numeric-ids"]
        argv += [f"--exclude=/{name}/*" for name in excludes]
        argv += [f"{source}/", f"{target}/"]
        run_tool(argv, code="copy_error")

    def run_chroot(self, root: Path, argv: Sequence[str]) -> None:
        run_tool(["chroot", str(root), *argv], code="chroot_error")

    def disk_size_bytes(self, device: str) -> int:
        result = run_tool(["blockdev", "--getsize64", device], timeout=self.tool_timeout)
        try:
            return int(result.stdout.strip())
        except ValueError as e:
            raise ToolError(
                f"Unexpected blockdev output for {device}: {result.stdout!r}",
                argv=result.argv,
            ) from e


def _raise_keyboard_interrupt(signum: int, frame: FrameType | None) -> None:
    raise KeyboardInterrupt(f"Received signal {signum}")


@contextmanager
def interrupts_as_exceptions() -> Iterator[None]:
    """Turn SIGTERM into KeyboardInterrupt while the block runs.

    Mounts and loop devices are released by ``finally`` blocks, which the
    default SIGTERM action would skip. SIGINT already raises
    KeyboardInterrupt. Signal handlers can only be installed from the main
    thread; elsewhere this is a no-op.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previous = signal.signal(signal.SIGTERM, _raise_keyboard_interrupt)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


__all__ = [
    "SECTOR_SIZE",
    "BlockDeviceBackend",
    "SystemBackend",
    "ToolResult",
    "format_argv",
    "interrupts_as_exceptions",
    "partition_device_path",
    "render_sfdisk_script",
    "run_tool",
]
