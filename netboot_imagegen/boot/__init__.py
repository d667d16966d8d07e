"""Boot configuration module.

This module handles:
- Generating transport-aware GRUB entries for Clonezilla Live
- Guard scripts and target disk validation for destructive entries
- Staging boot files for the selected transport
- QEMU UEFI smoke testing
"""

from netboot_imagegen.boot.generator import (
    BootConfigEntry,
    GeneratorOptions,
    generate,
    generate_config_file,
    render_config,
    write_config,
)
from netboot_imagegen.boot.guard import prepare_guard, write_guard_scripts

__all__ = [
    "BootConfigEntry",
    "GeneratorOptions",
    "generate",
    "generate_config_file",
    "prepare_guard",
    "render_config",
    "write_config",
    "write_guard_scripts",
]
