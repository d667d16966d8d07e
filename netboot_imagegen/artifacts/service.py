"""Artifact cache service.

This module provides the high-level fetch APIs:
- fetch(): Idempotent, digest-verified retrieval of one artifact
- fetch_release(): Retrieve the live ISO and extract its boot files
- list_cached(): List cache ledger records

A file already present at its destination is reused when its digest
matches the expected digest, or, without an expected digest, the digest
recorded by the last successful fetch in the cache ledger.
"""

from __future__ import annotations

import logging
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from netboot_imagegen.artifacts.extract import extract
from netboot_imagegen.artifacts.fetch import compute_file_sha256, retrieve
from netboot_imagegen.artifacts.manifest import (
    RELEASE_ENTRIES,
    SHA256SUMS_NAME,
    Manifest,
    build_manifest,
    load_manifest,
    write_manifest,
    write_sha256sums,
)
from netboot_imagegen.artifacts.models import CachedArtifact
from netboot_imagegen.errors import ChecksumMismatchError, OfflineModeError
from netboot_imagegen.types import Artifact

if TYPE_CHECKING:
    from netboot_imagegen.config import Settings
    from netboot_imagegen.disk.backend import BlockDeviceBackend

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReleaseAssets:
    """Outcome of fetching one release.

    Attributes:
        version: Release version.
        iso: The verified ISO artifact.
        extract_dir: Directory holding the extracted files.
        files: Extracted file paths.
        manifest: The release manifest.
        manifest_path: Path of the manifest inside ``extract_dir``.
        manifest_created: True if the manifest was written by this call.
    """

    version: str
    iso: Artifact
    extract_dir: Path
    files: tuple[Path, ...]
    manifest: Manifest
    manifest_path: Path
    manifest_created: bool


def _get_record(session: Session, local_path: Path) -> CachedArtifact | None:
    stmt = select(CachedArtifact).where(CachedArtifact.local_path == str(local_path))
    return session.execute(stmt).scalars().first()


def _record_fetch(
    session: Session,
    locator: str,
    local_path: Path,
    size_bytes: int,
    sha256: str,
    verified: bool,
) -> CachedArtifact:
    now = datetime.now(timezone.utc)
    record = _get_record(session, local_path)
    if record is None:
        record = CachedArtifact(
            local_path=str(local_path),
            locator=locator,
            size_bytes=size_bytes,
            sha256=sha256,
            fetched_at=now,
        )
        session.add(record)
    else:
        record.locator = locator
        record.size_bytes = size_bytes
        record.sha256 = sha256
        record.fetched_at = now
    record.verified_at = now if verified else None
    session.flush()
    return record


def list_cached(session: Session) -> list[CachedArtifact]:
    """List cache ledger records ordered by path."""
    stmt = select(CachedArtifact).order_by(CachedArtifact.local_path)
    return list(session.execute(stmt).scalars().all())


def fetch(
    session: Session,
    locator: str,
    dest_path: Path,
    expected_digest: str | None = None,
    *,
    settings: Settings,
    client: httpx.Client | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Artifact:
    """Ensure ``dest_path`` holds the artifact named by ``locator``.

    Args:
        session: Database session for the cache ledger.
        locator: http(s)://, file:// URL or local path.
        dest_path: Local destination.
        expected_digest: Expected SHA-256 digest (optional).
        settings: Pipeline settings (offline mode, retry policy).
        client: HTTPX client (creates one if not provided).
        sleep: Sleep function used between retries.

    Returns:
        Artifact describing the local file. ``verified`` is True when the
        file matched an expected digest.

    Raises:
        OfflineModeError: If a download is needed in offline mode.
        DownloadError: If the download fails after all retries.
        ChecksumMismatchError: If the downloaded bytes do not match.
    """
    dest_path = dest_path.absolute()
    expected = expected_digest.lower() if expected_digest else None

    if dest_path.is_file():
        current = compute_file_sha256(dest_path)
        record = _get_record(session, dest_path)
        if expected is not None:
            if current == expected:
                logger.info("Using cached artifact (digest verified): %s", dest_path)
                _record_fetch(
                    session, locator, dest_path, dest_path.stat().st_size, current, True
                )
                return Artifact(
                    locator=locator,
                    path=dest_path,
                    size_bytes=dest_path.stat().st_size,
                    sha256=current,
                    verified=True,
                )
            logger.warning(
                "Cached artifact %s does not match expected digest, re-fetching",
                dest_path,
            )
        elif record is not None and record.sha256 == current:
            logger.info("Using cached artifact (ledger match): %s", dest_path)
            return Artifact(
                locator=locator,
                path=dest_path,
                size_bytes=record.size_bytes,
                sha256=current,
                verified=record.verified_at is not None,
            )
        else:
            logger.warning(
                "Cached artifact %s has no matching ledger record, re-fetching",
                dest_path,
            )

    if settings.offline:
        raise OfflineModeError(f"Cannot fetch {locator} in offline mode")

    manage_client = client is None
    http_client: httpx.Client = (
        httpx.Client(follow_redirects=True) if manage_client else client  # type: ignore[assignment]
    )
    try:
        result = retrieve(
            http_client,
            locator,
            dest_path,
            expected_checksum=expected,
            attempts=settings.download_retries,
            backoff=settings.retry_backoff,
            timeout=settings.download_timeout,
            sleep=sleep,
        )
    finally:
        if manage_client:
            http_client.close()

    verified = expected is not None
    _record_fetch(session, locator, dest_path, result.size_bytes, result.checksum, verified)
    return Artifact(
        locator=locator,
        path=dest_path,
        size_bytes=result.size_bytes,
        sha256=result.checksum,
        verified=verified,
    )


def _check_against_manifest(manifest: Manifest, files: tuple[Path, ...]) -> None:
    for path in files:
        entry = manifest.get_file(path.name)
        if entry is None:
            continue
        actual = compute_file_sha256(path)
        if actual != entry.sha256:
            raise ChecksumMismatchError(str(path), entry.sha256, actual)


def fetch_release(
    session: Session,
    settings: Settings,
    client: httpx.Client | None = None,
    backend: BlockDeviceBackend | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ReleaseAssets:
    """Fetch the configured live release and extract its boot files.

    The manifest is written only when absent; when one exists, every
    extracted file is re-hashed and compared against it.

    Args:
        session: Database session for the cache ledger.
        settings: Pipeline settings.
        client: HTTPX client (creates one if not provided).
        backend: Block-device backend used to mount the ISO.
        sleep: Sleep function used between retries.

    Returns:
        ReleaseAssets for the configured version.

    Raises:
        ChecksumMismatchError: If the ISO or an extracted file does not
            match its recorded digest.
        DownloadError: If the ISO cannot be downloaded.
        ExtractionError: If the boot files cannot be extracted.
        OfflineModeError: If a download is needed in offline mode.
    """
    logger.info("Fetching release %s", settings.version)
    iso = fetch(
        session,
        settings.source_locator,
        settings.iso_path,
        settings.iso_sha256,
        settings=settings,
        client=client,
        sleep=sleep,
    )

    extracted = extract(iso.path, settings.extract_dir, RELEASE_ENTRIES, backend)

    sums_path = settings.extract_dir / SHA256SUMS_NAME
    manifest_path = settings.manifest_path

    if manifest_path.is_file():
        manifest = load_manifest(manifest_path)
        _check_against_manifest(manifest, extracted.files)
        logger.info("Existing manifest verified: %s", manifest_path)
        created = False
    else:
        manifest = build_manifest(settings.version, extracted.files, source=iso)
        write_manifest(manifest, manifest_path)
        created = True

    if not sums_path.is_file():
        write_sha256sums(extracted.files, sums_path)

    settings.manifests_dir.mkdir(parents=True, exist_ok=True)
    versioned = settings.manifests_dir / f"manifest-{settings.version}.json"
    if not versioned.is_file():
        shutil.copyfile(manifest_path, versioned)

    return ReleaseAssets(
        version=settings.version,
        iso=iso,
        extract_dir=settings.extract_dir,
        files=extracted.files,
        manifest=manifest,
        manifest_path=manifest_path,
        manifest_created=created,
    )


__all__ = [
    "ReleaseAssets",
    "fetch",
    "fetch_release",
    "list_cached",
]
