"""Asset download primitives.

This module handles:
- Streaming downloads with on-the-fly SHA-256 computation
- Copying local (file://) sources with the same guarantees
- Bounded retry with exponential backoff for transient failures
- SHA256SUMS parsing and writing
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import tempfile
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import unquote, urlparse

import httpx

from netboot_imagegen.errors import ChecksumMismatchError, DownloadError

logger = logging.getLogger(__name__)

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads and hashing (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB


@dataclass
class DownloadResult:
    """Result of a single download."""

    path: Path
    checksum: str
    size_bytes: int


def is_remote_locator(locator: str) -> bool:
    """Check whether a locator points at an HTTP(S) resource."""
    return urlparse(locator).scheme in ("http", "https")


def local_path_from_locator(locator: str) -> Path:
    """Resolve a file:// URL or plain path to a local Path."""
    parsed = urlparse(locator)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    return Path(locator)


def compute_file_sha256(file_path: Path, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> str:
    """Compute SHA256 checksum of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks to read.

    Returns:
        SHA256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def _check_digest(subject: str, computed: str, expected: str | None) -> None:
    if expected and computed != expected.lower():
        raise ChecksumMismatchError(subject, expected.lower(), computed)


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    expected_checksum: str | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> DownloadResult:
    """Download a file with optional checksum verification.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        expected_checksum: Expected SHA256 checksum (optional).
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        DownloadResult with path, checksum, and size.

    Raises:
        DownloadError: If download fails.
        ChecksumMismatchError: If checksum verification fails.
    """
    logger.info("Downloading %s to %s", url, dest_path)

    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()

            total_bytes = 0
            sha256 = hashlib.sha256()

            dest_path.parent.mkdir(parents=True, exist_ok=True)

            with dest_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)

    except httpx.HTTPStatusError as e:
        dest_path.unlink(missing_ok=True)
        status = e.response.status_code
        raise DownloadError(
            f"HTTP error downloading {url}: {status} {e.response.reason_phrase}",
            code="http_error",
            retryable=status >= 500,
        ) from e
    except httpx.TimeoutException as e:
        dest_path.unlink(missing_ok=True)
        raise DownloadError(
            f"Timeout downloading {url}",
            code="timeout",
            retryable=True,
        ) from e
    except httpx.RequestError as e:
        dest_path.unlink(missing_ok=True)
        raise DownloadError(
            f"Network error downloading {url}: {e}",
            code="network_error",
            retryable=True,
        ) from e

    computed_checksum = sha256.hexdigest()
    try:
        _check_digest(url, computed_checksum, expected_checksum)
    except ChecksumMismatchError:
        # Remove the corrupted file
        dest_path.unlink(missing_ok=True)
        raise

    logger.info(
        "Downloaded %s (%d bytes, checksum: %s)",
        dest_path.name,
        total_bytes,
        computed_checksum[:16] + "...",
    )

    return DownloadResult(
        path=dest_path,
        checksum=computed_checksum,
        size_bytes=total_bytes,
    )


def copy_local_file(
    source: Path,
    dest_path: Path,
    expected_checksum: str | None = None,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> DownloadResult:
    """Copy a local source file, hashing it on the way.

    Raises:
        DownloadError: If the source is missing or unreadable.
        ChecksumMismatchError: If checksum verification fails.
    """
    if not source.is_file():
        raise DownloadError(f"Source file not found: {source}", code="not_found")

    logger.info("Copying %s to %s", source, dest_path)
    dest_path.parent.mkdir(parents=True, exist_ok=True)

    sha256 = hashlib.sha256()
    total_bytes = 0
    try:
        with source.open("rb") as src, dest_path.open("wb") as dst:
            while chunk := src.read(chunk_size):
                dst.write(chunk)
                sha256.update(chunk)
                total_bytes += len(chunk)
    except OSError as e:
        dest_path.unlink(missing_ok=True)
        raise DownloadError(f"Error copying {source}: {e}", code="os_error") from e

    computed_checksum = sha256.hexdigest()
    try:
        _check_digest(str(source), computed_checksum, expected_checksum)
    except ChecksumMismatchError:
        dest_path.unlink(missing_ok=True)
        raise

    return DownloadResult(
        path=dest_path, checksum=computed_checksum, size_bytes=total_bytes
    )


def retrieve(
    client: httpx.Client,
    locator: str,
    dest_path: Path,
    expected_checksum: str | None = None,
    *,
    attempts: int = 3,
    backoff: float = 2.0,
    timeout: float = DOWNLOAD_TIMEOUT,
    sleep: Callable[[float], None] = time.sleep,
) -> DownloadResult:
    """Retrieve a locator into dest_path through a temporary file.

    Transient failures are retried up to ``attempts`` times with
    exponential backoff. The destination only ever receives a complete,
    verified file.

    Args:
        client: HTTPX client instance (unused for local locators).
        locator: http(s)://, file:// URL or plain path.
        dest_path: Final destination path.
        expected_checksum: Expected SHA256 checksum (optional).
        attempts: Maximum number of attempts.
        backoff: Base delay between attempts in seconds.
        timeout: Per-attempt timeout in seconds.
        sleep: Sleep function (injectable for tests).

    Returns:
        DownloadResult for the final destination.

    Raises:
        DownloadError: If all attempts fail or the failure is permanent.
        ChecksumMismatchError: If checksum verification fails.
    """
    dest_path.parent.mkdir(parents=True, exist_ok=True)

    # Use a temp file for download, then move to final location
    with tempfile.NamedTemporaryFile(
        dir=dest_path.parent, prefix=f".{dest_path.name}.", suffix=".tmp", delete=False
    ) as tmp_file:
        tmp_path = Path(tmp_file.name)

    try:
        if not is_remote_locator(locator):
            result = copy_local_file(
                local_path_from_locator(locator), tmp_path, expected_checksum
            )
        else:
            attempt = 1
            while True:
                try:
                    result = download_file(
                        client,
                        locator,
                        tmp_path,
                        expected_checksum=expected_checksum,
                        timeout=timeout,
                    )
                    break
                except DownloadError as e:
                    if not e.retryable or attempt >= attempts:
                        raise
                    delay = backoff * 2 ** (attempt - 1)
                    logger.warning(
                        "Download attempt %d/%d failed (%s); retrying in %.1fs",
                        attempt,
                        attempts,
                        e.code,
                        delay,
                    )
                    sleep(delay)
                    attempt += 1

        shutil.move(str(tmp_path), str(dest_path))
        return DownloadResult(
            path=dest_path, checksum=result.checksum, size_bytes=result.size_bytes
        )

    finally:
        # Clean up temp file on failure
        tmp_path.unlink(missing_ok=True)


def parse_sha256sums(content: str) -> dict[str, str]:
    """Parse SHA256SUMS content into a filename -> checksum mapping.

    Args:
        content: Content of a sha256sum-formatted file.

    Returns:
        Mapping of file name to lowercase checksum.
    """
    sums: dict[str, str] = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue

        parts = line.split(maxsplit=1)
        if len(parts) != 2:
            continue

        checksum, filename = parts
        # Remove leading '*' if present (binary mode indicator)
        filename = filename.lstrip("*").strip()
        sums[filename] = checksum.lower()

    return sums


def format_sha256sums(entries: Iterable[tuple[str, str]]) -> str:
    """Render (name, checksum) pairs in sha256sum output format."""
    return "".join(f"{checksum}  {name}\n" for name, checksum in entries)


__all__ = [
    "DOWNLOAD_CHUNK_SIZE",
    "DOWNLOAD_TIMEOUT",
    "DownloadResult",
    "compute_file_sha256",
    "copy_local_file",
    "download_file",
    "format_sha256sums",
    "is_remote_locator",
    "local_path_from_locator",
    "parse_sha256sums",
    "retrieve",
]
