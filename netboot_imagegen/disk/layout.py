"""Disk layout definitions and YAML loading.

A layout names the partitions of an image in table order and says which
one receives the root tree and which one (optionally) becomes the shared
data partition. The built-in layout is the six-partition edge-device
image; a YAML file can replace it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from netboot_imagegen.disk.planner import PartitionSpec
from netboot_imagegen.types import FilesystemKind, SizeMode

PARTITION_NAME_PATTERN = re.compile(r"^[A-Z][A-Z0-9]*$")

DEFAULT_DATA_DIRS = (
    "config",
    "logs",
    "backup",
    "docker",
    "os1-config",
    "os2-config",
)


@dataclass(frozen=True)
class DiskLayout:
    """Partition requests plus the roles assembly needs."""

    partitions: tuple[PartitionSpec, ...]
    root_partition: str = "ROOT"
    data_partition: str | None = "DATA"
    data_dirs: tuple[str, ...] = field(default=DEFAULT_DATA_DIRS)

    @property
    def boot_partition(self) -> PartitionSpec:
        return next(p for p in self.partitions if p.boot)


DEFAULT_LAYOUT = DiskLayout(
    partitions=(
        PartitionSpec("EFI", SizeMode.FIXED, FilesystemKind.VFAT, "EFI", size_mib=512, boot=True),
        PartitionSpec("ROOT", SizeMode.CONTENT, FilesystemKind.EXT4, "INIT-ROOT"),
        PartitionSpec("SWAP", SizeMode.FIXED, FilesystemKind.SWAP, "SWAP", size_mib=4096),
        PartitionSpec("OS1", SizeMode.FIXED, FilesystemKind.EXT4, "OS1-ROOT", size_mib=3788),
        PartitionSpec("OS2", SizeMode.FIXED, FilesystemKind.EXT4, "OS2-ROOT", size_mib=3788),
        PartitionSpec("DATA", SizeMode.REMAINDER, FilesystemKind.EXT4, "DATA", min_mib=1024),
    ),
)


class PartitionSchema(BaseModel):
    """Schema for one partition entry in a layout file."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(description="Partition name (upper case, used for placeholders)")
    size_mode: SizeMode = Field(default=SizeMode.FIXED)
    size_mib: int = Field(default=0, ge=0)
    min_mib: int = Field(default=0, ge=0)
    fs: FilesystemKind
    label: str = Field(min_length=1, max_length=16)
    boot: bool = False

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate the partition name can appear in a placeholder."""
        if not PARTITION_NAME_PATTERN.match(v):
            raise ValueError(
                f"name must be upper case letters and digits, got '{v}'"
            )
        return v

    @model_validator(mode="after")
    def validate_size(self) -> PartitionSchema:
        """Fixed partitions need an explicit size."""
        if self.size_mode is SizeMode.FIXED and self.size_mib <= 0:
            raise ValueError(f"partition {self.name}: fixed size_mib must be > 0")
        return self

    def to_spec(self) -> PartitionSpec:
        return PartitionSpec(
            name=self.name,
            size_mode=self.size_mode,
            fs=self.fs,
            label=self.label,
            size_mib=self.size_mib,
            min_mib=self.min_mib,
            boot=self.boot,
        )


class LayoutSchema(BaseModel):
    """Schema for a disk layout file."""

    model_config = ConfigDict(extra="forbid")

    partitions: list[PartitionSchema] = Field(min_length=1)
    root_partition: str = "ROOT"
    data_partition: str | None = "DATA"
    data_dirs: list[str] = Field(default_factory=lambda: list(DEFAULT_DATA_DIRS))

    @model_validator(mode="after")
    def validate_roles(self) -> LayoutSchema:
        """Check the root, data and boot roles refer to suitable partitions."""
        by_name = {p.name: p for p in self.partitions}
        if len(by_name) != len(self.partitions):
            raise ValueError("partition names must be unique")

        root = by_name.get(self.root_partition)
        if root is None or root.fs is not FilesystemKind.EXT4:
            raise ValueError(
                f"root_partition '{self.root_partition}' must name an ext4 partition"
            )
        if self.data_partition is not None:
            data = by_name.get(self.data_partition)
            if data is None or data.fs is not FilesystemKind.EXT4:
                raise ValueError(
                    f"data_partition '{self.data_partition}' must name an ext4 partition"
                )

        boots = [p for p in self.partitions if p.boot]
        if len(boots) != 1 or boots[0].fs is not FilesystemKind.VFAT:
            raise ValueError("exactly one boot partition is required and it must be vfat")
        return self

    def to_layout(self) -> DiskLayout:
        return DiskLayout(
            partitions=tuple(p.to_spec() for p in self.partitions),
            root_partition=self.root_partition,
            data_partition=self.data_partition,
            data_dirs=tuple(self.data_dirs),
        )


def parse_layout_data(data: dict[str, Any]) -> DiskLayout:
    """Validate layout data and convert it to a DiskLayout.

    Raises:
        pydantic.ValidationError: If data does not match the schema.
    """
    return LayoutSchema.model_validate(data).to_layout()


def load_layout(path: Path) -> DiskLayout:
    """Load a disk layout from a YAML file.

    Args:
        path: Path to the YAML file.

    Returns:
        Validated DiskLayout.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the content is not a mapping.
        pydantic.ValidationError: If data does not match the schema.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return parse_layout_data(data)


__all__ = [
    "DEFAULT_DATA_DIRS",
    "DEFAULT_LAYOUT",
    "DiskLayout",
    "LayoutSchema",
    "PartitionSchema",
    "load_layout",
    "parse_layout_data",
]
