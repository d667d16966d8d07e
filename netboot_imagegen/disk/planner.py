"""Partition planning.

Turns an ordered list of partition requests into a contiguous,
non-overlapping layout that covers the usable region of a disk image
exactly. Planning is pure: nothing is allocated until the plan has been
accepted, so size violations surface before any file or loop device
exists.
"""

from __future__ import annotations

import logging
import os
import stat
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from netboot_imagegen.config import MIB
from netboot_imagegen.errors import SizeConstraintError
from netboot_imagegen.types import FilesystemKind, SizeMode

if TYPE_CHECKING:
    from netboot_imagegen.config import Settings

logger = logging.getLogger(__name__)

# Space kept free before the first and after the last partition (GPT headers)
GPT_RESERVE_BYTES = MIB

# Subtrees of a root filesystem that never belong in an image
VIRTUAL_SUBTREES = ("proc", "sys", "dev", "run", "tmp", "mnt", "media")


@dataclass(frozen=True)
class PartitionSpec:
    """A request for one partition.

    Attributes:
        name: Mnemonic partition name (e.g. 'ROOT'); also the placeholder key.
        size_mode: How the size is determined.
        fs: Filesystem kind.
        label: Filesystem label.
        size_mib: Requested size for fixed partitions.
        min_mib: Minimum size for the remainder partition.
        boot: Whether this is the boot (EFI system) partition.
    """

    name: str
    size_mode: SizeMode
    fs: FilesystemKind
    label: str
    size_mib: int = 0
    min_mib: int = 0
    boot: bool = False


@dataclass(frozen=True)
class ResolvedPartition:
    """A partition with a concrete position inside the usable region."""

    number: int
    spec: PartitionSpec
    offset: int
    length: int

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def fs(self) -> FilesystemKind:
        return self.spec.fs

    @property
    def label(self) -> str:
        return self.spec.label

    @property
    def boot(self) -> bool:
        return self.spec.boot

    @property
    def end(self) -> int:
        return self.offset + self.length

    @property
    def size_mib(self) -> int:
        return self.length // MIB


@dataclass(frozen=True)
class PartitionPlan:
    """Resolved layout of a disk image.

    Offsets are relative to the start of the usable region, which begins
    ``GPT_RESERVE_BYTES`` into the image file.
    """

    total_bytes: int
    partitions: tuple[ResolvedPartition, ...]

    @property
    def image_size_bytes(self) -> int:
        """Size of the backing file including both GPT reserves."""
        return self.total_bytes + 2 * GPT_RESERVE_BYTES

    def get(self, name: str) -> ResolvedPartition:
        """Look up a partition by name.

        Raises:
            KeyError: If no partition has that name.
        """
        for part in self.partitions:
            if part.name == name:
                return part
        raise KeyError(name)

    def find(self, name: str) -> ResolvedPartition | None:
        """Look up a partition by name, returning None when absent."""
        try:
            return self.get(name)
        except KeyError:
            return None

    @property
    def boot_partition(self) -> ResolvedPartition | None:
        return next((p for p in self.partitions if p.boot), None)

    def to_dict(self) -> dict[str, object]:
        """Describe the plan in a JSON-serializable form."""
        return {
            "total_bytes": self.total_bytes,
            "image_size_bytes": self.image_size_bytes,
            "partitions": [
                {
                    "number": p.number,
                    "name": p.name,
                    "label": p.label,
                    "fs": p.fs.value,
                    "boot": p.boot,
                    "offset": p.offset,
                    "length": p.length,
                    "size_mib": p.size_mib,
                }
                for p in self.partitions
            ],
        }


@dataclass(frozen=True)
class SizeLimits:
    """Size policy applied while planning (all values in MiB)."""

    root_margin_mib: int = 1000
    content_min_mib: int = 100
    content_max_mib: int = 10240
    max_image_size_mib: int = 51200

    @classmethod
    def from_settings(cls, settings: Settings) -> SizeLimits:
        return cls(
            root_margin_mib=settings.root_margin_mib,
            content_min_mib=settings.content_min_mib,
            content_max_mib=settings.content_max_mib,
            max_image_size_mib=settings.max_image_size_mib,
        )


def align_up(value: int, alignment: int = MIB) -> int:
    """Round ``value`` up to a multiple of ``alignment``."""
    return -(-value // alignment) * alignment


def estimate_tree_size(root: Path) -> int:
    """Sum regular file sizes under a root filesystem tree.

    Virtual subtrees directly under ``root`` are skipped, symlinks are not
    followed, and directories on other filesystems are not entered.

    Args:
        root: Root of the source tree.

    Returns:
        Total size in bytes.
    """
    root_dev = os.lstat(root).st_dev
    total = 0

    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        current = Path(dirpath)
        kept: list[str] = []
        for name in dirnames:
            if current == root and name in VIRTUAL_SUBTREES:
                continue
            try:
                if os.lstat(current / name).st_dev != root_dev:
                    continue
            except OSError:
                continue
            kept.append(name)
        dirnames[:] = kept

        for name in filenames:
            try:
                st = os.lstat(current / name)
            except OSError as e:
                logger.warning("Skipping unreadable file %s: %s", current / name, e)
                continue
            if stat.S_ISREG(st.st_mode):
                total += st.st_size

    logger.debug("Estimated tree size of %s: %d bytes", root, total)
    return total


def _validate_specs(specs: Sequence[PartitionSpec]) -> None:
    if not specs:
        raise SizeConstraintError("Partition layout is empty", code="invalid_layout")

    names = [s.name for s in specs]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise SizeConstraintError(
            f"Duplicate partition names: {', '.join(duplicates)}",
            code="invalid_layout",
        )

    remainders = [s.name for s in specs if s.size_mode is SizeMode.REMAINDER]
    if len(remainders) > 1:
        raise SizeConstraintError(
            f"At most one remainder partition is allowed, got: {', '.join(remainders)}",
            code="invalid_layout",
        )


def plan(
    total_size: int | None,
    specs: Sequence[PartitionSpec],
    content_size: int | None = None,
    limits: SizeLimits | None = None,
) -> PartitionPlan:
    """Compute a partition plan.

    Args:
        total_size: Size of the usable region in bytes, or None to size it
            from the partitions (remainder partitions get their minimum).
        specs: Partition requests in table order.
        content_size: Size of the root content in bytes; required when a
            partition uses SizeMode.CONTENT.
        limits: Size policy; defaults apply when omitted.

    Returns:
        PartitionPlan covering ``[0, total)`` without gaps or overlaps.

    Raises:
        SizeConstraintError: If the layout cannot satisfy the constraints.
    """
    limits = limits or SizeLimits()
    _validate_specs(specs)

    sizes: list[int | None] = []
    for spec in specs:
        if spec.size_mode is SizeMode.FIXED:
            if spec.size_mib <= 0:
                raise SizeConstraintError(
                    f"Partition {spec.name} needs a positive fixed size",
                    code="invalid_layout",
                )
            sizes.append(spec.size_mib * MIB)
        elif spec.size_mode is SizeMode.CONTENT:
            if content_size is None:
                raise SizeConstraintError(
                    f"Partition {spec.name} is content-sized but no content size was given"
                )
            low = limits.content_min_mib * MIB
            high = limits.content_max_mib * MIB
            if not low <= content_size <= high:
                raise SizeConstraintError(
                    f"Content size {content_size // MIB} MiB outside plausible range "
                    f"[{limits.content_min_mib}, {limits.content_max_mib}] MiB"
                )
            sizes.append(align_up(content_size + limits.root_margin_mib * MIB))
        else:
            sizes.append(None)

    sized_sum = sum(s for s in sizes if s is not None)
    remainder_index = next((i for i, s in enumerate(sizes) if s is None), None)
    remainder_min = (
        align_up(specs[remainder_index].min_mib * MIB)
        if remainder_index is not None
        else 0
    )

    if total_size is None:
        total = sized_sum + max(remainder_min, MIB if remainder_index is not None else 0)
    else:
        total = total_size - total_size % MIB

    if total > limits.max_image_size_mib * MIB:
        raise SizeConstraintError(
            f"Total size {total // MIB} MiB exceeds maximum "
            f"{limits.max_image_size_mib} MiB"
        )

    if remainder_index is not None:
        remaining = total - sized_sum
        if remaining <= 0 or remaining < remainder_min:
            raise SizeConstraintError(
                f"Remainder partition {specs[remainder_index].name} would get "
                f"{remaining // MIB} MiB (minimum {remainder_min // MIB} MiB)"
            )
        sizes[remainder_index] = remaining
    else:
        if sized_sum > total:
            raise SizeConstraintError(
                f"Partitions need {sized_sum // MIB} MiB but only "
                f"{total // MIB} MiB are available"
            )
        # The last partition absorbs any slack
        last = sizes[-1]
        assert last is not None
        sizes[-1] = last + (total - sized_sum)

    partitions: list[ResolvedPartition] = []
    offset = 0
    for number, (spec, length) in enumerate(zip(specs, sizes, strict=True), start=1):
        assert length is not None
        partitions.append(
            ResolvedPartition(number=number, spec=spec, offset=offset, length=length)
        )
        offset += length

    result = PartitionPlan(total_bytes=total, partitions=tuple(partitions))
    logger.info(
        "Planned %d partitions over %d MiB: %s",
        len(partitions),
        total // MIB,
        ", ".join(f"{p.name}={p.size_mib}MiB" for p in partitions),
    )
    return result


__all__ = [
    "GPT_RESERVE_BYTES",
    "VIRTUAL_SUBTREES",
    "PartitionPlan",
    "PartitionSpec",
    "ResolvedPartition",
    "SizeLimits",
    "align_up",
    "estimate_tree_size",
    "plan",
]
