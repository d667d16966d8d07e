"""GRUB menu entry generation for network-booted Clonezilla Live.

Generation is a pure function of the manifest, transport, mode and
options: the same inputs always render byte-identical output. Destructive
entries (restore or capture) are only emitted when explicitly confirmed
and always run behind the guard script.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from netboot_imagegen.artifacts.manifest import (
    INITRD_FILE,
    KERNEL_FILE,
    PAYLOAD_FILE,
    Manifest,
)
from netboot_imagegen.errors import (
    MissingPrerequisiteError,
    TransportMisconfigurationError,
)
from netboot_imagegen.types import InstallMode, Transport

if TYPE_CHECKING:
    from netboot_imagegen.config import Settings

logger = logging.getLogger(__name__)

COMMON_ARGS = "boot=live ip=dhcp net.ifnames=0 noswap nomodeset nodmraid"

# Path of the guard script as seen by the live system
GUARD_SCRIPT_PATH = "/clonezilla/guard/disk-check.sh"

TFTP_WARNING = (
    "WARNING: TFTP transport is slow for large payloads; prefer HTTP or NFS"
)

MANUAL_LABEL = "Clonezilla Live (Manual)"
DESTRUCTIVE_LABELS = {
    InstallMode.AUTO_FULL: "Clonezilla Auto Full Restore",
    InstallMode.AUTO_PARTS: "Clonezilla Auto Partition Restore",
    InstallMode.CAPTURE: "Clonezilla Capture Disk Image",
}

_HOST_PATTERN = re.compile(r"^[A-Za-z0-9.\-:\[\]]+$")


@dataclass(frozen=True)
class BootConfigEntry:
    """One GRUB menu entry.

    Attributes:
        label: Menu label.
        kernel_path: Kernel path relative to the GRUB root.
        initrd_path: Initrd path relative to the GRUB root.
        cmdline: Kernel command line.
        destructive: Whether booting the entry modifies a disk.
        annotations: Comment lines rendered inside the entry.
    """

    label: str
    kernel_path: str
    initrd_path: str
    cmdline: str
    destructive: bool = False
    annotations: tuple[str, ...] = ()

    def render(self) -> str:
        lines = [f"menuentry '{self.label}' {{"]
        lines += [f"    # {note}" for note in self.annotations]
        lines.append(f"    linuxefi {self.kernel_path} {self.cmdline}")
        lines.append(f"    initrdefi {self.initrd_path}")
        lines.append("}")
        return "\n".join(lines) + "\n"


@dataclass(frozen=True)
class GeneratorOptions:
    """Transport endpoints and restore targets used in entries."""

    http_base: str = ""
    server_host: str = ""
    nfs_export: str = ""
    target_disk: str = "/dev/sda"
    target_parts: tuple[str, ...] = ("sda1", "sda2")
    image_name: str = "default-image"
    guard_path: str = GUARD_SCRIPT_PATH
    boot_prefix: str = "/grub/clonezilla"
    extra_args: tuple[str, ...] = field(default=())

    @classmethod
    def from_settings(cls, settings: Settings) -> GeneratorOptions:
        return cls(
            http_base=settings.http_base,
            server_host=settings.server_host,
            nfs_export=settings.nfs_export,
            target_disk=settings.target_disk,
            target_parts=tuple(settings.target_parts.split()),
            image_name=settings.image_name,
        )


def _require_host(host: str, transport: Transport) -> str:
    if not host or not _HOST_PATTERN.match(host):
        raise TransportMisconfigurationError(
            f"{transport.value} transport needs a valid server host, got '{host}'"
        )
    return host


def transport_argument(
    transport: Transport, version: str, options: GeneratorOptions
) -> str:
    """Return the kernel arguments that locate the live payload.

    Raises:
        TransportMisconfigurationError: If the transport's endpoint
            parameters are missing or malformed.
    """
    if transport is Transport.HTTP:
        base = options.http_base.rstrip("/")
        if not base.startswith(("http://", "https://")):
            raise TransportMisconfigurationError(
                f"http transport needs an http(s):// base URL, got '{options.http_base}'"
            )
        return f"fetch={base}/clonezilla/{version}/{PAYLOAD_FILE}"

    if transport is Transport.NFS:
        host = _require_host(options.server_host, transport)
        export = options.nfs_export.rstrip("/")
        if not export.startswith("/"):
            raise TransportMisconfigurationError(
                f"nfs transport needs an absolute export path, got '{options.nfs_export}'"
            )
        return f"netboot=nfs nfsroot={host}:{export}"

    host = _require_host(options.server_host, transport)
    return f"fetch=tftp://{host}/clonezilla/{version}/{PAYLOAD_FILE}"


def transport_token(transport: Transport, options: GeneratorOptions) -> str:
    """Return the substring every entry for ``transport`` must contain."""
    if transport is Transport.HTTP:
        return f"fetch={options.http_base.rstrip('/')}"
    if transport is Transport.NFS:
        return f"nfsroot={options.server_host}:{options.nfs_export.rstrip('/')}"
    return f"tftp://{options.server_host}"


def destructive_command(mode: InstallMode, options: GeneratorOptions) -> str:
    """Return the ocs-sr invocation for a destructive mode.

    Raises:
        ValueError: If ``mode`` is not destructive.
    """
    if mode is InstallMode.AUTO_FULL:
        return (
            f"ocs-sr -e1 -e2 -r -j2 -p poweroff restore-disk "
            f"{options.image_name} {options.target_disk}"
        )
    if mode is InstallMode.AUTO_PARTS:
        parts = " ".join(options.target_parts)
        if len(options.target_parts) > 1:
            parts = f"'{parts}'"
        return (
            f"ocs-sr -e1 -e2 -r -j2 -k -p poweroff restoreparts "
            f"{options.image_name} {parts}"
        )
    if mode is InstallMode.CAPTURE:
        disk = options.target_disk.removeprefix("/dev/")
        return (
            f"ocs-sr -q2 -j2 -z1p -i 4096 -sfsck -senc -p poweroff savedisk "
            f"{options.image_name} {disk}"
        )
    raise ValueError(f"Mode {mode.value} has no destructive command")


def generate(
    manifest: Manifest,
    transport: Transport,
    mode: InstallMode,
    confirm: bool,
    dry_run: bool,
    options: GeneratorOptions,
) -> list[BootConfigEntry]:
    """Build the boot menu entries.

    The manual entry is always present. A destructive entry for ``mode``
    follows only when ``confirm`` is true; without confirmation it is
    silently omitted.

    Args:
        manifest: Release manifest (must list kernel, initrd and payload).
        transport: Payload transport.
        mode: Installation mode.
        confirm: Explicit confirmation arming destructive entries.
        dry_run: Wrap the destructive command so it only echoes.
        options: Transport endpoints and restore targets.

    Returns:
        Ordered list of entries.

    Raises:
        MissingPrerequisiteError: If the manifest lacks a boot file.
        TransportMisconfigurationError: If transport parameters are invalid.
    """
    missing = manifest.missing_required()
    if missing:
        raise MissingPrerequisiteError(
            f"Manifest {manifest.version} lacks required files: {', '.join(missing)}"
        )

    version = manifest.version
    kernel = f"{options.boot_prefix}/{version}/{KERNEL_FILE}"
    initrd = f"{options.boot_prefix}/{version}/{INITRD_FILE}"
    base_args = " ".join(
        [COMMON_ARGS, transport_argument(transport, version, options), *options.extra_args]
    )
    annotations = (TFTP_WARNING,) if transport is Transport.TFTP else ()

    entries = [
        BootConfigEntry(
            label=MANUAL_LABEL,
            kernel_path=kernel,
            initrd_path=initrd,
            cmdline=f'{base_args} ocs_live_run="ocs-live-general" ocs_live_batch=no quiet',
            annotations=annotations,
        )
    ]

    if mode.is_destructive and confirm:
        command = destructive_command(mode, options)
        if dry_run:
            command = f"echo DRYRUN: {command}"
        entries.append(
            BootConfigEntry(
                label=DESTRUCTIVE_LABELS[mode],
                kernel_path=kernel,
                initrd_path=initrd,
                cmdline=(
                    f'{base_args} ocs_live_run="{command}" ocs_live_batch=yes '
                    f'ocs_prerun="{options.guard_path}" quiet'
                ),
                destructive=True,
                annotations=annotations,
            )
        )
    elif mode.is_destructive:
        logger.info(
            "Mode %s not confirmed; destructive entry omitted", mode.value
        )

    return entries


def render_config(
    entries: list[BootConfigEntry], transport: Transport, version: str
) -> str:
    """Render entries as a complete GRUB configuration fragment."""
    header = [
        "# Generated Clonezilla GRUB entries",
        f"# Version: {version}",
        f"# Transport: {transport.value}",
    ]
    return "\n".join(header) + "\n" + "\n".join(e.render() for e in entries)


def write_config(path: Path, content: str) -> Path:
    """Replace ``path`` with ``content`` atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.chmod(tmp_name, 0o644)
        os.replace(tmp_name, path)
    finally:
        Path(tmp_name).unlink(missing_ok=True)
    logger.info("GRUB entries generated: %s", path)
    return path


def generate_config_file(settings: Settings, manifest: Manifest) -> Path:
    """Generate and write the boot configuration for ``settings``."""
    entries = generate(
        manifest,
        settings.transport,
        settings.mode,
        confirm=settings.armed,
        dry_run=settings.dry_run,
        options=GeneratorOptions.from_settings(settings),
    )
    content = render_config(entries, settings.transport, manifest.version)
    return write_config(settings.boot_config_path, content)


__all__ = [
    "COMMON_ARGS",
    "GUARD_SCRIPT_PATH",
    "TFTP_WARNING",
    "BootConfigEntry",
    "GeneratorOptions",
    "destructive_command",
    "generate",
    "generate_config_file",
    "render_config",
    "transport_argument",
    "transport_token",
    "write_config",
]
