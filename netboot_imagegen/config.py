"""Configuration settings for netboot_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

The settings object is frozen: it is constructed once per invocation and
passed explicitly to every pipeline component.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict

from netboot_imagegen.types import InstallMode, Transport

MIB = 1024 * 1024

# Value the confirm option must carry to arm destructive boot entries
CONFIRM_TOKEN = "YES"

CLONEZILLA_ISO_URL_TEMPLATE = (
    "https://downloads.sourceforge.net/project/clonezilla/clonezilla_live_stable/"
    "{version}/clonezilla-live-{version}-amd64.iso"
)


def _default_artifacts_dir() -> Path:
    """Return the default artifacts directory."""
    return Path.home() / ".local" / "share" / "netboot-imagegen" / "artifacts"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "netboot-imagegen" / "cache.sqlite"
    return f"sqlite:///{db_path}"


def _default_ovmf_paths() -> list[Path]:
    return [
        Path("/usr/share/OVMF/OVMF_CODE.fd"),
        Path("/usr/share/OVMF/OVMF_CODE_4M.fd"),
    ]


class Settings(BaseSettings):
    """Pipeline settings.

    Settings are loaded from environment variables with the NETBOOT_ prefix.
    CLI flags can override these at runtime by constructing a new instance
    with explicit keyword arguments.
    """

    model_config = SettingsConfigDict(
        env_prefix="NETBOOT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Paths
    artifacts_dir: Path = Field(
        default_factory=_default_artifacts_dir,
        description="Root directory for fetched, generated and built artifacts",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database URL for the artifact cache ledger",
    )

    # Asset source
    version: str = Field(
        default="3.1.2-22",
        min_length=1,
        description="Clonezilla Live version to fetch",
    )
    iso_url: str | None = Field(
        default=None,
        description="ISO source locator (derived from version when unset)",
    )
    iso_sha256: str | None = Field(
        default=None,
        description="Expected SHA-256 digest of the ISO",
    )

    # Transport
    transport: Transport = Field(
        default=Transport.HTTP,
        description="Transport used to deliver the live payload",
    )
    server_host: str = Field(
        default="",
        description="PXE/NFS/TFTP server host",
    )
    http_base: str = Field(
        default="",
        description="Base URL of the HTTP tree serving the payload",
    )
    nfs_export: str = Field(
        default="",
        description="NFS export path holding the Clonezilla tree",
    )

    # Installation
    mode: InstallMode = Field(
        default=InstallMode.MANUAL,
        description="Installation mode for generated boot entries",
    )
    target_disk: str = Field(
        default="/dev/sda",
        description="Target disk for restore/capture operations",
    )
    target_parts: str = Field(
        default="sda1 sda2",
        description="Target partitions for partial restores",
    )
    image_name: str = Field(
        default="default-image",
        description="Clonezilla image set used by automated entries",
    )
    confirm: str = Field(
        default="",
        description=f"Must be '{CONFIRM_TOKEN}' to arm destructive entries",
    )
    dry_run: bool = Field(
        default=False,
        description="Wrap destructive commands so they only report",
    )

    # Operational modes
    offline: bool = Field(
        default=False,
        description="Offline mode - never download assets",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Network
    download_timeout: int = Field(
        default=3600,
        ge=1,
        description="Timeout for asset downloads (seconds)",
    )
    download_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum download attempts",
    )
    retry_backoff: float = Field(
        default=2.0,
        ge=0,
        description="Base backoff between download attempts (seconds)",
    )

    # Disk image sizing (MiB)
    max_image_size_mib: int = Field(
        default=51200,
        ge=1,
        description="Maximum total disk image size",
    )
    root_margin_mib: int = Field(
        default=1000,
        ge=0,
        description="Margin added to the root content size",
    )
    content_min_mib: int = Field(
        default=100,
        ge=0,
        description="Smallest plausible root content size",
    )
    content_max_mib: int = Field(
        default=10240,
        ge=1,
        description="Largest plausible root content size",
    )
    bootloader_id: str = Field(
        default="EdgeDevice",
        description="EFI boot loader identifier",
    )

    # Guard and smoke test
    guard_min_disk_bytes: int = Field(
        default=0,
        ge=0,
        description="Minimum target disk size accepted by the guard",
    )
    smoke_timeout: int = Field(
        default=300,
        ge=1,
        description="Timeout for the QEMU smoke test (seconds)",
    )
    ovmf_paths: list[Path] = Field(
        default_factory=_default_ovmf_paths,
        description="Candidate OVMF firmware paths",
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def source_locator(self) -> str:
        """ISO locator, derived from the version when not configured."""
        return self.iso_url or CLONEZILLA_ISO_URL_TEMPLATE.format(version=self.version)

    @property
    def armed(self) -> bool:
        """Whether destructive boot entries may be emitted."""
        return self.confirm == CONFIRM_TOKEN

    # Derived directory layout
    @property
    def clonezilla_dir(self) -> Path:
        return self.artifacts_dir / "clonezilla"

    @property
    def iso_dir(self) -> Path:
        return self.clonezilla_dir / "iso"

    @property
    def iso_path(self) -> Path:
        return self.iso_dir / f"clonezilla-live-{self.version}-amd64.iso"

    @property
    def extract_dir(self) -> Path:
        return self.clonezilla_dir / "extract" / self.version

    @property
    def manifest_path(self) -> Path:
        return self.extract_dir / "manifest.json"

    @property
    def manifests_dir(self) -> Path:
        return self.clonezilla_dir / "manifests"

    @property
    def image_sets_dir(self) -> Path:
        return self.clonezilla_dir / "image-sets"

    @property
    def pxe_files_dir(self) -> Path:
        return self.artifacts_dir / "pxe-files"

    @property
    def http_dir(self) -> Path:
        return self.artifacts_dir / "images"

    @property
    def guard_dir(self) -> Path:
        return self.http_dir / "clonezilla" / "guard"

    @property
    def integration_dir(self) -> Path:
        return self.artifacts_dir / "pxe-integration"

    @property
    def boot_config_path(self) -> Path:
        return self.integration_dir / "grub-entries-clonezilla.cfg"

    @property
    def build_dir(self) -> Path:
        return self.artifacts_dir / "build-env"

    @property
    def logs_dir(self) -> Path:
        return self.artifacts_dir / "logs"


def get_settings(**overrides: object) -> Settings:
    """Build the settings for one invocation.

    Args:
        **overrides: Explicit values (e.g., from CLI flags) that take
            precedence over environment variables.

    Returns:
        Frozen Settings instance.
    """
    return Settings(**{k: v for k, v in overrides.items() if v is not None})


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = [
    "CONFIRM_TOKEN",
    "MIB",
    "Settings",
    "get_settings",
    "print_settings_json",
]
