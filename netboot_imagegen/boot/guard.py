"""Guard scripts executed by Clonezilla before a destructive operation.

``disk-check.sh`` runs as the ``ocs_prerun`` hook of every destructive
entry and aborts the job unless the target is a whole block device of at
least the configured size. In dry-run mode an ``echo-ocs-sr`` wrapper is
also written.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from netboot_imagegen.config import Settings

logger = logging.getLogger(__name__)

DISK_CHECK_NAME = "disk-check.sh"
ECHO_OCS_SR_NAME = "echo-ocs-sr"

DISK_CHECK_TEMPLATE = """\
#!/bin/bash
# Clonezilla prerun guard: only a whole disk of sufficient size may be targeted
set -euo pipefail
TARGET_DISK="${{TARGET_DISK:-{target_disk}}}"
MIN_BYTES={min_bytes}

if [[ ! -b "$TARGET_DISK" ]]; then
  echo "Guard: target disk not block device: $TARGET_DISK" >&2
  exit 1
fi

if [[ "$(lsblk -dno TYPE "$TARGET_DISK")" != "disk" ]]; then
  echo "Guard: target is not a whole disk: $TARGET_DISK" >&2
  exit 1
fi

SIZE=$(blockdev --getsize64 "$TARGET_DISK")
if (( SIZE < MIN_BYTES )); then
  echo "Guard: target disk too small: $SIZE < $MIN_BYTES bytes" >&2
  exit 1
fi

echo "Guard: disk-check passed for $TARGET_DISK" >&2
exit 0
"""

ECHO_OCS_SR = """\
#!/bin/bash
echo "[DRYRUN] ocs-sr $*" >&2
"""


def render_disk_check(target_disk: str, min_bytes: int = 0) -> str:
    """Render the disk-check guard for a target disk."""
    return DISK_CHECK_TEMPLATE.format(target_disk=target_disk, min_bytes=min_bytes)


def _write_executable(path: Path, content: str) -> None:
    path.write_text(content, encoding="utf-8")
    path.chmod(0o755)


def write_guard_scripts(
    guard_dir: Path,
    target_disk: str,
    min_bytes: int = 0,
    dry_run: bool = False,
) -> list[Path]:
    """Write the guard scripts.

    Args:
        guard_dir: Output directory (served as /clonezilla/guard).
        target_disk: Default target disk.
        min_bytes: Smallest acceptable disk size.
        dry_run: Also write the echo-ocs-sr wrapper.

    Returns:
        Paths of the written scripts.
    """
    guard_dir.mkdir(parents=True, exist_ok=True)

    disk_check = guard_dir / DISK_CHECK_NAME
    _write_executable(disk_check, render_disk_check(target_disk, min_bytes))
    written = [disk_check]

    if dry_run:
        echo_wrapper = guard_dir / ECHO_OCS_SR_NAME
        _write_executable(echo_wrapper, ECHO_OCS_SR)
        written.append(echo_wrapper)

    logger.info("Guard scripts prepared in %s", guard_dir)
    return written


def prepare_guard(settings: Settings) -> list[Path]:
    """Write the guard scripts for ``settings``."""
    return write_guard_scripts(
        settings.guard_dir,
        settings.target_disk,
        settings.guard_min_disk_bytes,
        settings.dry_run,
    )


__all__ = [
    "DISK_CHECK_NAME",
    "ECHO_OCS_SR_NAME",
    "prepare_guard",
    "render_disk_check",
    "write_guard_scripts",
]
