"""Artifact fetching and caching module.

This module handles:
- Downloading or copying external assets with SHA-256 verification
- Idempotent reuse of cached files backed by the cache ledger
- Extracting boot files from ISO images and tar archives
- Release manifests and Clonezilla image sets
"""

from netboot_imagegen.artifacts.extract import ExtractedSet, extract
from netboot_imagegen.artifacts.fetch import (
    DownloadResult,
    compute_file_sha256,
    download_file,
    parse_sha256sums,
    retrieve,
)
from netboot_imagegen.artifacts.imagesets import (
    ImageSet,
    ImageSetVerification,
    import_image_set,
    list_image_sets,
    verify_image_set,
)
from netboot_imagegen.artifacts.manifest import Manifest, load_manifest
from netboot_imagegen.artifacts.models import CachedArtifact
from netboot_imagegen.artifacts.service import (
    ReleaseAssets,
    fetch,
    fetch_release,
    list_cached,
)

__all__ = [
    # Models
    "CachedArtifact",
    # Fetch module
    "DownloadResult",
    "compute_file_sha256",
    "download_file",
    "parse_sha256sums",
    "retrieve",
    # Extraction
    "ExtractedSet",
    "extract",
    # Manifests and image sets
    "ImageSet",
    "ImageSetVerification",
    "Manifest",
    "import_image_set",
    "list_image_sets",
    "load_manifest",
    "verify_image_set",
    # Service module
    "ReleaseAssets",
    "fetch",
    "fetch_release",
    "list_cached",
]
