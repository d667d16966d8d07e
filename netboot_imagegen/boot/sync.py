"""Transport-specific staging of extracted boot files.

Kernel and initrd always go to the PXE files tree. The live payload is
placed where the selected transport serves it from:
- http: the HTTP images tree
- tftp: next to the kernel in the PXE files tree (slow, warned about)
- nfs: left in place; imported image sets are mirrored for the export
"""

from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from netboot_imagegen.artifacts.fetch import compute_file_sha256, format_sha256sums
from netboot_imagegen.artifacts.manifest import INITRD_FILE, KERNEL_FILE, PAYLOAD_FILE
from netboot_imagegen.errors import MissingPrerequisiteError
from netboot_imagegen.types import Transport

if TYPE_CHECKING:
    from netboot_imagegen.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncResult:
    """Files staged by one sync."""

    transport: Transport
    kernel: Path
    initrd: Path
    payload: Path
    manifest_path: Path
    hashes_path: Path


def sync_artifacts(settings: Settings) -> SyncResult:
    """Stage extracted files for the configured transport.

    Args:
        settings: Pipeline settings.

    Returns:
        SyncResult describing the staged files.

    Raises:
        MissingPrerequisiteError: If the boot files have not been extracted.
    """
    version = settings.version
    transport = settings.transport
    logger.info("Syncing artifacts for transport=%s", transport.value)

    sources = {name: settings.extract_dir / name for name in (KERNEL_FILE, INITRD_FILE, PAYLOAD_FILE)}
    missing = [name for name, path in sources.items() if not path.is_file()]
    if missing:
        raise MissingPrerequisiteError(
            f"Missing extracted files in {settings.extract_dir}: {', '.join(missing)}. "
            "Run fetch first"
        )

    pxe_dest = settings.pxe_files_dir / "clonezilla" / version
    pxe_dest.mkdir(parents=True, exist_ok=True)
    kernel = Path(shutil.copy2(sources[KERNEL_FILE], pxe_dest / KERNEL_FILE))
    initrd = Path(shutil.copy2(sources[INITRD_FILE], pxe_dest / INITRD_FILE))

    payload = sources[PAYLOAD_FILE]
    if transport is Transport.HTTP:
        http_dest = settings.http_dir / "clonezilla" / version
        http_dest.mkdir(parents=True, exist_ok=True)
        payload = Path(shutil.copy2(payload, http_dest / PAYLOAD_FILE))
    elif transport is Transport.TFTP:
        logger.warning("TFTP transport selected: performance will be poor for large payloads")
        payload = Path(shutil.copy2(payload, pxe_dest / PAYLOAD_FILE))
    else:
        logger.info(
            "NFS mode: ensure the server exports %s as %s",
            settings.http_dir / "clonezilla",
            settings.nfs_export or "<unset>",
        )
        _mirror_image_sets(settings)

    settings.manifests_dir.mkdir(parents=True, exist_ok=True)
    manifest_path = settings.manifests_dir / f"transport-{version}.json"
    manifest = {
        "version": version,
        "transport": transport.value,
        "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "files": {
            "kernel": str(kernel),
            "initrd": str(initrd),
            "payload": str(payload),
        },
    }
    manifest_path.write_text(json.dumps(manifest, indent=2) + "\n", encoding="utf-8")

    hashes_path = settings.manifests_dir / f"hashes-{version}.sha256"
    hashes_path.write_text(
        format_sha256sums((str(p), compute_file_sha256(p)) for p in (kernel, initrd, payload)),
        encoding="utf-8",
    )

    logger.info("Artifact sync complete")
    return SyncResult(
        transport=transport,
        kernel=kernel,
        initrd=initrd,
        payload=payload,
        manifest_path=manifest_path,
        hashes_path=hashes_path,
    )


def _mirror_image_sets(settings: Settings) -> None:
    """Copy imported image sets into the NFS-served tree (best effort)."""
    source = settings.image_sets_dir
    if not source.is_dir():
        logger.warning("No image sets to mirror in %s", source)
        return
    dest = settings.http_dir / "clonezilla" / "images"
    try:
        shutil.copytree(source, dest, symlinks=True, dirs_exist_ok=True)
    except (OSError, shutil.Error) as e:
        logger.warning("Failed to mirror image sets to %s: %s", dest, e)


__all__ = ["SyncResult", "sync_artifacts"]
