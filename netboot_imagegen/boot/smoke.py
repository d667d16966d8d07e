"""QEMU UEFI boot smoke test.

Boots a VM with OVMF firmware against the PXE files tree and inspects the
serial log. The test passes when the log mentions Clonezilla.
"""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from netboot_imagegen.disk.backend import format_argv
from netboot_imagegen.errors import MissingPrerequisiteError, ToolError

if TYPE_CHECKING:
    from netboot_imagegen.config import Settings

logger = logging.getLogger(__name__)

SERIAL_LOG_NAME = "qemu-clonezilla-serial.log"
SMOKE_MARKER = "clonezilla"


@dataclass(frozen=True)
class SmokeResult:
    """Outcome of one smoke test run."""

    passed: bool
    serial_log: Path
    timed_out: bool
    command: str


def find_firmware(candidates: Sequence[Path]) -> Path:
    """Return the first existing OVMF firmware file.

    Raises:
        MissingPrerequisiteError: If none exists.
    """
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    raise MissingPrerequisiteError(
        "OVMF firmware not found (tried: "
        + ", ".join(str(c) for c in candidates)
        + ")"
    )


def compose_qemu_command(firmware: Path, tftp_root: Path, serial_log: Path) -> list[str]:
    """Compose the qemu-system-x86_64 command line."""
    return [
        "qemu-system-x86_64",
        "-m",
        "1024",
        "-enable-kvm",
        "-cpu",
        "host",
        "-netdev",
        f"user,id=n1,tftp={tftp_root},bootfile=grubx64.efi",
        "-device",
        "e1000,netdev=n1",
        "-bios",
        str(firmware),
        "-serial",
        f"file:{serial_log}",
        "-nographic",
        "-no-reboot",
    ]


def serial_log_passed(serial_log: Path) -> bool:
    """Check whether the serial log shows the live system booting."""
    try:
        text = serial_log.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return False
    return SMOKE_MARKER in text.lower()


def run_smoke_test(settings: Settings) -> SmokeResult:
    """Run the QEMU smoke test.

    Args:
        settings: Pipeline settings (firmware paths, timeout, directories).

    Returns:
        SmokeResult; ``passed`` reflects the serial log check.

    Raises:
        MissingPrerequisiteError: If no OVMF firmware is installed.
        ToolError: If QEMU cannot be started.
    """
    firmware = find_firmware(settings.ovmf_paths)
    settings.logs_dir.mkdir(parents=True, exist_ok=True)
    serial_log = settings.logs_dir / SERIAL_LOG_NAME
    serial_log.unlink(missing_ok=True)

    cmd = compose_qemu_command(firmware, settings.pxe_files_dir, serial_log)
    cmd_str = format_argv(cmd)
    logger.info("Starting QEMU smoke test (log: %s)", serial_log)
    logger.debug("Command: %s", cmd_str)

    timed_out = False
    try:
        result = subprocess.run(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            timeout=settings.smoke_timeout,
            check=False,
        )
        if result.returncode != 0:
            logger.warning(
                "QEMU exited with code %d: %s",
                result.returncode,
                result.stderr.decode(errors="replace").strip(),
            )
    except subprocess.TimeoutExpired:
        timed_out = True
        logger.warning("QEMU smoke test timed out after %ss", settings.smoke_timeout)
    except OSError as e:
        raise ToolError(
            f"Failed to execute qemu-system-x86_64: {e}",
            code="execution_error",
            argv=cmd,
        ) from e

    passed = serial_log_passed(serial_log)
    if passed:
        logger.info("QEMU smoke test shows Clonezilla references (PASS)")
    else:
        logger.warning("Clonezilla string not detected; inspect %s manually", serial_log)

    return SmokeResult(
        passed=passed, serial_log=serial_log, timed_out=timed_out, command=cmd_str
    )


__all__ = [
    "SERIAL_LOG_NAME",
    "SmokeResult",
    "compose_qemu_command",
    "find_firmware",
    "run_smoke_test",
    "serial_log_passed",
]
