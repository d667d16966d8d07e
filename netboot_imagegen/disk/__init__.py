"""Partition planning and disk-image assembly.

This module handles:
- Sizing a root filesystem tree and planning a partition layout
- Loading layouts from YAML
- Assembling, formatting and populating a sparse GPT disk image
- Publishing compressed images with checksums and an image manifest
"""

from netboot_imagegen.disk.layout import DEFAULT_LAYOUT, DiskLayout, load_layout
from netboot_imagegen.disk.planner import (
    PartitionPlan,
    PartitionSpec,
    ResolvedPartition,
    SizeLimits,
    estimate_tree_size,
    plan,
)

__all__ = [
    "DEFAULT_LAYOUT",
    "DiskLayout",
    "PartitionPlan",
    "PartitionSpec",
    "ResolvedPartition",
    "SizeLimits",
    "estimate_tree_size",
    "load_layout",
    "plan",
]

# Assembly, backend and publishing live in submodules to keep this import
# free of subprocess and artifact dependencies:
# netboot_imagegen.disk.assembler, .backend, .publish, .service
