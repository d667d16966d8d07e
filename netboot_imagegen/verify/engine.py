"""Read-only integrity and consistency checks.

Every check yields a ``VerificationResult``; failures are collected rather
than raised, so one run reports every problem it finds. Running the checks
never modifies any file.
"""

from __future__ import annotations

import gzip
import logging
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from netboot_imagegen.artifacts.fetch import compute_file_sha256, parse_sha256sums
from netboot_imagegen.artifacts.manifest import REQUIRED_FILES, Manifest, load_manifest
from netboot_imagegen.boot.generator import (
    GeneratorOptions,
    transport_argument,
    transport_token,
)
from netboot_imagegen.disk.planner import GPT_RESERVE_BYTES
from netboot_imagegen.disk.publish import (
    IMAGE_MANIFEST_NAME,
    ImageManifest,
    load_image_manifest,
)
from netboot_imagegen.errors import NetbootError, TransportMisconfigurationError
from netboot_imagegen.types import (
    CheckStatus,
    InstallMode,
    Transport,
    VerificationResult,
)

if TYPE_CHECKING:
    from netboot_imagegen.config import Settings

logger = logging.getLogger(__name__)

GZIP_READ_CHUNK = 1024 * 1024


@dataclass(frozen=True)
class VerificationState:
    """Locations and parameters the checks inspect.

    ``published_dir`` holds ``image-manifest.json`` and the compressed image;
    the raw image and its sidecar sit in ``raw_image_dir``. Image checks run
    only when the published manifest exists.
    """

    manifest_path: Path
    extract_dir: Path
    boot_config_path: Path
    transport: Transport
    options: GeneratorOptions
    mode: InstallMode
    image_sets_dir: Path
    image_name: str
    published_dir: Path | None = None
    raw_image_dir: Path | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> VerificationState:
        return cls(
            manifest_path=settings.manifest_path,
            extract_dir=settings.extract_dir,
            boot_config_path=settings.boot_config_path,
            transport=settings.transport,
            options=GeneratorOptions.from_settings(settings),
            mode=settings.mode,
            image_sets_dir=settings.image_sets_dir,
            image_name=settings.image_name,
            published_dir=settings.build_dir / "images",
            raw_image_dir=settings.build_dir,
        )


@dataclass(frozen=True)
class VerificationReport:
    """Aggregate of one verification run."""

    results: tuple[VerificationResult, ...]

    @property
    def passed(self) -> bool:
        return all(r.passed for r in self.results)

    @property
    def failures(self) -> list[VerificationResult]:
        return [r for r in self.results if not r.passed]

    def to_dict(self) -> dict[str, object]:
        return {
            "status": CheckStatus.PASS.value if self.passed else CheckStatus.FAIL.value,
            "checks": [
                {"name": r.name, "status": r.status.value, "detail": r.detail}
                for r in self.results
            ],
        }


def _pass(name: str, detail: str | None = None) -> VerificationResult:
    return VerificationResult(name=name, status=CheckStatus.PASS, detail=detail)


def _fail(name: str, detail: str) -> VerificationResult:
    logger.warning("FAIL: %s (%s)", name, detail)
    return VerificationResult(name=name, status=CheckStatus.FAIL, detail=detail)


def check_files(manifest: Manifest, extract_dir: Path) -> list[VerificationResult]:
    """Check presence and digest of every manifest file."""
    results: list[VerificationResult] = []
    for entry in manifest.files:
        path = extract_dir / entry.name
        if not path.is_file():
            results.append(_fail(f"extract:{entry.name}", f"missing: {path}"))
            continue
        results.append(_pass(f"extract:{entry.name}"))

        try:
            actual = compute_file_sha256(path)
        except OSError as e:
            results.append(_fail(f"hash:{entry.name}", f"cannot read {path}: {e}"))
            continue
        if actual == entry.sha256:
            results.append(_pass(f"hash:{entry.name}"))
        else:
            results.append(
                _fail(
                    f"hash:{entry.name}",
                    f"expected {entry.sha256}, got {actual}",
                )
            )
    return results


def check_boot_config(
    boot_config_path: Path, transport: Transport, options: GeneratorOptions
) -> VerificationResult:
    """Check the boot config carries the transport's locator token."""
    name = "boot-config-transport"
    try:
        transport_argument(transport, "check", options)
    except TransportMisconfigurationError as e:
        return _fail(name, e.message)

    if not boot_config_path.is_file():
        return _fail(name, f"boot config not found: {boot_config_path}")

    token = transport_token(transport, options)
    try:
        content = boot_config_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        return _fail(name, f"cannot read {boot_config_path}: {e}")
    if token in content:
        return _pass(name, token)
    return _fail(name, f"token '{token}' not found in {boot_config_path}")


def check_image_present(image_sets_dir: Path, image_name: str) -> VerificationResult:
    """Check the image set referenced by restore entries exists."""
    path = image_sets_dir / image_name
    if path.is_dir():
        return _pass("image-present", str(path))
    return _fail("image-present", f"image set not found: {path}")


def check_image_digest(path: Path, recorded: str | None = None) -> VerificationResult:
    """Check ``path`` against its ``.sha256`` sidecar.

    Args:
        path: Raw or compressed image.
        recorded: Digest recorded in the image manifest, compared as well
            when given.
    """
    name = f"image-digest:{path.name}"
    sidecar = path.with_name(path.name + ".sha256")
    try:
        expected = parse_sha256sums(sidecar.read_text(encoding="utf-8")).get(path.name)
        actual = compute_file_sha256(path)
    except (OSError, UnicodeDecodeError) as e:
        return _fail(name, f"cannot read {path} or its sidecar: {e}")

    if expected is None:
        return _fail(name, f"no entry for {path.name} in {sidecar}")
    if actual != expected:
        return _fail(name, f"expected {expected} (sidecar), got {actual}")
    if recorded is not None and actual != recorded:
        return _fail(name, f"expected {recorded} (image manifest), got {actual}")
    return _pass(name, actual)


def check_gzip_stream(path: Path) -> VerificationResult:
    """Decompress ``path`` to the end, discarding the output."""
    name = f"image-gzip:{path.name}"
    try:
        with gzip.open(path, "rb") as f:
            while f.read(GZIP_READ_CHUNK):
                pass
    except (OSError, EOFError, zlib.error) as e:
        return _fail(name, f"corrupt gzip stream: {e}")
    return _pass(name)


def check_image_layout(manifest: ImageManifest, raw_path: Path) -> VerificationResult:
    """Check recorded partitions tile the usable region of the raw image.

    Partitions must start at offset 0, follow each other without gaps or
    overlap and end exactly where the trailing GPT reserve begins. The raw
    file must have the recorded size.
    """
    name = "image-layout"
    usable = manifest.size_bytes - 2 * GPT_RESERVE_BYTES
    offset = 0
    for part in sorted(manifest.partitions, key=lambda p: p.offset):
        if part.offset < offset:
            return _fail(name, f"partition {part.name} overlaps at offset {part.offset}")
        if part.offset > offset:
            return _fail(name, f"gap before partition {part.name} at offset {offset}")
        offset = part.offset + part.length
    if offset != usable:
        return _fail(name, f"partitions end at {offset}, usable region is {usable} bytes")

    try:
        actual_size = raw_path.stat().st_size
    except OSError as e:
        return _fail(name, f"cannot stat {raw_path}: {e}")
    if actual_size != manifest.size_bytes:
        return _fail(name, f"{raw_path} is {actual_size} bytes, expected {manifest.size_bytes}")
    return _pass(name, f"{len(manifest.partitions)} partitions")


def check_published_image(published_dir: Path, raw_image_dir: Path) -> list[VerificationResult]:
    """Check the published disk image and its raw counterpart.

    Args:
        published_dir: Directory holding ``image-manifest.json`` and the
            compressed image.
        raw_image_dir: Directory holding the raw image and its sidecar.

    Returns:
        One result per check; a single failure when the image manifest
        itself cannot be loaded.
    """
    manifest_path = published_dir / IMAGE_MANIFEST_NAME
    try:
        manifest = load_image_manifest(manifest_path)
    except NetbootError as e:
        return [_fail("image-manifest", e.message)]

    raw_path = raw_image_dir / manifest.image
    compressed_path = published_dir / manifest.compressed.file
    return [
        _pass("image-manifest", str(manifest_path)),
        check_image_digest(raw_path, manifest.sha256),
        check_image_digest(compressed_path, manifest.compressed.sha256),
        check_gzip_stream(compressed_path),
        check_image_layout(manifest, raw_path),
    ]


def run(state: VerificationState) -> list[VerificationResult]:
    """Run every applicable check.

    Args:
        state: Locations and parameters to verify.

    Returns:
        One result per check, in a stable order.
    """
    results: list[VerificationResult] = []

    try:
        manifest = load_manifest(state.manifest_path)
    except NetbootError as e:
        results.append(_fail("manifest", e.message))
        # Without a manifest only file presence can be checked
        for name in REQUIRED_FILES:
            path = state.extract_dir / name
            if path.is_file():
                results.append(_pass(f"extract:{name}"))
            else:
                results.append(_fail(f"extract:{name}", f"missing: {path}"))
    else:
        results.append(_pass("manifest", str(state.manifest_path)))
        results.extend(check_files(manifest, state.extract_dir))

    results.append(check_boot_config(state.boot_config_path, state.transport, state.options))

    if state.mode is InstallMode.AUTO_FULL:
        results.append(check_image_present(state.image_sets_dir, state.image_name))

    if (
        state.published_dir is not None
        and (state.published_dir / IMAGE_MANIFEST_NAME).is_file()
    ):
        results.extend(
            check_published_image(
                state.published_dir, state.raw_image_dir or state.published_dir.parent
            )
        )

    return results


def build_report(results: list[VerificationResult]) -> VerificationReport:
    """Aggregate results into a report and log the summary."""
    report = VerificationReport(results=tuple(results))
    passed = [r.name for r in results if r.passed]
    failed = [r.name for r in report.failures]
    logger.info("Verification summary: %d passed, %d failed", len(passed), len(failed))
    if failed:
        logger.error("Failed checks: %s", ", ".join(failed))
    return report


def verify_all(settings: Settings) -> VerificationReport:
    """Run all checks for ``settings`` and aggregate them."""
    return build_report(run(VerificationState.from_settings(settings)))


__all__ = [
    "VerificationReport",
    "VerificationState",
    "build_report",
    "check_boot_config",
    "check_files",
    "check_gzip_stream",
    "check_image_digest",
    "check_image_layout",
    "check_image_present",
    "check_published_image",
    "run",
    "verify_all",
]
