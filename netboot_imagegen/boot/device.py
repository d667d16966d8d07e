"""Target disk validation for restore and capture operations.

This module checks a device before anything destructive is armed for it:
- The path exists and is a block device
- It is a whole disk (not a partition like /dev/sda1)
- It is not the disk holding the running system's root filesystem
- It is at least the required size
"""

import logging
import os
import re
import stat
from dataclasses import dataclass, field
from pathlib import Path

from netboot_imagegen.errors import NetbootError

logger = logging.getLogger(__name__)


@dataclass
class DiskCheck:
    """Outcome of validating a target disk.

    Attributes:
        path: Absolute path to the device.
        size_bytes: Size of the device in bytes (if available).
        mount_points: Mount points of the device or its partitions.
    """

    path: str
    size_bytes: int | None = None
    mount_points: list[str] = field(default_factory=list)


class TargetDiskError(NetbootError):
    """Raised when a target disk fails validation."""

    default_code = "target_disk_invalid"

    def __init__(self, message: str, device_path: str, code: str | None = None) -> None:
        super().__init__(message, code)
        self.device_path = device_path


# /dev/sdX1, /dev/hdX1, /dev/vdX1
_PARTITION_PATTERN_SD = re.compile(r"^/dev/[shv]d[a-z]+(\d+)$")
# /dev/nvme0n1p1
_PARTITION_PATTERN_NVME = re.compile(r"^/dev/nvme\d+n\d+p(\d+)$")
# /dev/mmcblk0p1
_PARTITION_PATTERN_MMC = re.compile(r"^/dev/mmcblk\d+p(\d+)$")
# /dev/loop0p1
_PARTITION_PATTERN_LOOP = re.compile(r"^/dev/loop\d+p(\d+)$")

_P_SEPARATED = (_PARTITION_PATTERN_NVME, _PARTITION_PATTERN_MMC, _PARTITION_PATTERN_LOOP)


def is_partition_path(device_path: str) -> bool:
    """Check if a device path looks like a partition.

    Args:
        device_path: Path to the device.

    Returns:
        True if the path appears to be a partition, False otherwise.
    """
    if _PARTITION_PATTERN_SD.match(device_path):
        return True
    return any(pattern.match(device_path) for pattern in _P_SEPARATED)


def is_block_device(device_path: str) -> bool:
    """Check if a path is a block device."""
    try:
        return stat.S_ISBLK(os.stat(device_path).st_mode)
    except OSError:
        return False


def partition_to_whole_device(partition_path: str) -> str:
    """Convert a partition path to its whole device path.

    Paths that do not look like partitions are returned unchanged.
    """
    match = _PARTITION_PATTERN_SD.match(partition_path)
    if match:
        return partition_path[: -len(match.group(1))]
    if any(pattern.match(partition_path) for pattern in _P_SEPARATED):
        return partition_path[: partition_path.rfind("p")]
    return partition_path


def _read_mounts(mounts_file: Path) -> list[tuple[str, str]]:
    try:
        lines = mounts_file.read_text().splitlines()
    except OSError:
        logger.warning("Could not read %s, skipping mount checks", mounts_file)
        return []
    pairs = []
    for line in lines:
        parts = line.split()
        if len(parts) >= 2:
            pairs.append((parts[0], parts[1]))
    return pairs


def get_mount_points(device_path: str, mounts_file: Path = Path("/proc/mounts")) -> list[str]:
    """Get mount points of a device and its partitions."""
    return [
        mount_point
        for device, mount_point in _read_mounts(mounts_file)
        if partition_to_whole_device(device) == device_path or device == device_path
    ]


def get_root_device(mounts_file: Path = Path("/proc/mounts")) -> str | None:
    """Return the whole disk holding the root filesystem, if known."""
    for device, mount_point in _read_mounts(mounts_file):
        if mount_point == "/":
            return partition_to_whole_device(device)
    return None


def get_device_size(device_path: str, sys_block: Path = Path("/sys/block")) -> int | None:
    """Get the size of a block device in bytes from sysfs."""
    size_path = sys_block / Path(device_path).name / "size"
    try:
        if size_path.exists():
            # Size is in 512-byte sectors
            return int(size_path.read_text().strip()) * 512
    except (OSError, ValueError) as e:
        logger.warning("Could not read device size for %s: %s", device_path, e)
    return None


def check_target_disk(device_path: str, min_bytes: int = 0) -> DiskCheck:
    """Validate a restore/capture target disk.

    Args:
        device_path: Path to the disk.
        min_bytes: Smallest acceptable size (0 disables the check).

    Returns:
        DiskCheck with the collected facts.

    Raises:
        TargetDiskError: If any check fails.
    """
    device_path = os.path.abspath(device_path)
    logger.debug("Checking target disk: %s", device_path)

    if not os.path.exists(device_path):
        raise TargetDiskError(
            f"Device not found: {device_path}", device_path, code="device_not_found"
        )
    if not is_block_device(device_path):
        raise TargetDiskError(
            f"Not a block device: {device_path}", device_path, code="not_block_device"
        )
    if is_partition_path(device_path):
        raise TargetDiskError(
            f"Device appears to be a partition, not a whole disk: {device_path}",
            device_path,
            code="partition_not_allowed",
        )

    root_device = get_root_device()
    if root_device and device_path == root_device:
        raise TargetDiskError(
            f"Device {device_path} holds the running system's root filesystem",
            device_path,
            code="system_device",
        )

    size_bytes = get_device_size(device_path)
    if min_bytes and (size_bytes is None or size_bytes < min_bytes):
        raise TargetDiskError(
            f"Device {device_path} is too small: {size_bytes} < {min_bytes} bytes",
            device_path,
            code="device_too_small",
        )

    mount_points = get_mount_points(device_path)
    if mount_points:
        logger.warning("Device %s has mounted partitions: %s", device_path, mount_points)

    logger.info("Target disk passed checks: %s (size=%s)", device_path, size_bytes)
    return DiskCheck(path=device_path, size_bytes=size_bytes, mount_points=mount_points)


__all__ = [
    "DiskCheck",
    "TargetDiskError",
    "check_target_disk",
    "get_device_size",
    "get_mount_points",
    "get_root_device",
    "is_block_device",
    "is_partition_path",
    "partition_to_whole_device",
]
