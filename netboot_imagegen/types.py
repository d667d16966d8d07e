"""Shared type definitions for netboot_imagegen.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class Transport(str, Enum):
    """Network mechanism used to deliver the live payload to a client."""

    HTTP = "http"
    NFS = "nfs"
    TFTP = "tftp"


class InstallMode(str, Enum):
    """Installation mode for the generated boot menu."""

    MANUAL = "manual"
    AUTO_FULL = "auto_full"
    AUTO_PARTS = "auto_parts"
    CAPTURE = "capture"

    @property
    def is_destructive(self) -> bool:
        """Whether entries for this mode modify a target disk."""
        return self is not InstallMode.MANUAL


class FilesystemKind(str, Enum):
    """Filesystem formats supported for image partitions."""

    VFAT = "vfat"
    EXT4 = "ext4"
    SWAP = "swap"


class SizeMode(str, Enum):
    """How a partition's size is determined during planning."""

    FIXED = "fixed"
    CONTENT = "content"
    REMAINDER = "remainder"


class DiskImageState(str, Enum):
    """Lifecycle state of a disk image under assembly.

    States are strictly ordered; assembly moves through them one at a time.
    """

    UNALLOCATED = "unallocated"
    PARTITIONED = "partitioned"
    FORMATTED = "formatted"
    POPULATED = "populated"
    BOOTLOADER_INSTALLED = "bootloader_installed"
    FINALIZED = "finalized"


DISK_IMAGE_STATE_ORDER: tuple[DiskImageState, ...] = tuple(DiskImageState)


class CheckStatus(str, Enum):
    """Outcome of a single verification check."""

    PASS = "pass"
    FAIL = "fail"


@dataclass(frozen=True)
class Artifact:
    """One externally sourced, checksum-tracked file."""

    locator: str
    path: Path
    size_bytes: int
    sha256: str
    verified: bool = False


@dataclass(frozen=True)
class VerificationResult:
    """Result of one named verification check."""

    name: str
    status: CheckStatus
    detail: str | None = None

    @property
    def passed(self) -> bool:
        return self.status is CheckStatus.PASS


__all__ = [
    "DISK_IMAGE_STATE_ORDER",
    "Artifact",
    "CheckStatus",
    "DiskImageState",
    "FilesystemKind",
    "InstallMode",
    "SizeMode",
    "Transport",
    "VerificationResult",
]
