"""Shared fixtures for netboot_imagegen tests.

Provides an in-memory database, isolated settings and a block-device
backend double that records every call instead of touching real disks.
"""

import logging
import shutil
from collections.abc import Sequence
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from netboot_imagegen.db import Base
from netboot_imagegen.disk.backend import BlockDeviceBackend
from netboot_imagegen.errors import MountError, ToolError
from netboot_imagegen.types import FilesystemKind


class FakeBackend(BlockDeviceBackend):
    """Backend double.

    Attributes:
        calls: (operation, args) tuples in call order.
        mounted: Currently mounted targets.
        fail_on: Operation name -> exception raised when it is called.
        mount_sources: Source path -> directory whose contents appear at
            the mount point (simulates mounting an ISO).
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[object, ...]]] = []
        self.mounted: list[Path] = []
        self.attached: list[str] = []
        self.fail_on: dict[str, BaseException] = {}
        self.mount_sources: dict[str, Path] = {}
        self._populated: set[Path] = set()

    def _record(self, op: str, *args: object) -> None:
        self.calls.append((op, args))
        if op in self.fail_on:
            raise self.fail_on[op]

    def ops(self) -> list[str]:
        return [op for op, _ in self.calls]

    def attach_loop(self, image_path: Path) -> str:
        self._record("attach_loop", image_path)
        device = f"/dev/loop{len(self.attached)}"
        self.attached.append(device)
        return device

    def detach_loop(self, device: str) -> None:
        self._record("detach_loop", device)
        self.attached.remove(device)

    def write_partition_table(self, device, partitions, reserve_bytes) -> None:
        self._record("write_partition_table", device, tuple(partitions), reserve_bytes)

    def format(self, device: str, fs: FilesystemKind, label: str) -> None:
        self._record("format", device, fs, label)

    def get_uuid(self, device: str) -> str:
        self._record("get_uuid", device)
        return f"uuid-{Path(device).name}"

    def mount(self, source, target: Path, options: str | None = None) -> None:
        self._record("mount", str(source), target, options)
        self.mounted.append(target)
        contents = self.mount_sources.get(str(source))
        if contents is not None:
            shutil.copytree(contents, target, dirs_exist_ok=True)
            self._populated.add(target)

    def bind_mount(self, source: Path, target: Path) -> None:
        self._record("bind_mount", source, target)
        self.mounted.append(target)

    def unmount(self, target: Path) -> None:
        self._record("unmount", target)
        if target not in self.mounted:
            raise MountError(f"{target} is not mounted")
        self.mounted.remove(target)
        if target in self._populated:
            self._populated.discard(target)
            for child in target.iterdir():
                if child.is_dir():
                    shutil.rmtree(child)
                else:
                    child.unlink()

    def is_mounted(self, target: Path) -> bool:
        return target in self.mounted

    def copy_tree(self, source: Path, target: Path, excludes: Sequence[str] = ()) -> None:
        self._record("copy_tree", source, target, tuple(excludes))
        shutil.copytree(
            source,
            target,
            dirs_exist_ok=True,
            ignore=lambda d, names: [n for n in names if Path(d) == source and n in excludes],
        )

    def run_chroot(self, root: Path, argv: Sequence[str]) -> None:
        self._record("run_chroot", root, tuple(argv))

    def disk_size_bytes(self, device: str) -> int:
        self._record("disk_size_bytes", device)
        return 0


@pytest.fixture(autouse=True)
def _restore_root_logging():
    """Restore root logger handlers and level after each test."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def fake_backend():
    """Create a recording block-device backend."""
    return FakeBackend()


@pytest.fixture
def tool_error():
    """Factory for ToolError instances."""

    def _make(message: str = "tool failed") -> ToolError:
        return ToolError(message, argv=["false"], returncode=1)

    return _make


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine for testing."""
    from netboot_imagegen.artifacts import models as artifacts_models  # noqa: F401

    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session_factory(engine):
    """Create a session factory for testing."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """Create a session for testing."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def mock_settings(tmp_path):
    """Create settings with temp directories and fast retries."""
    from netboot_imagegen.config import Settings

    return Settings(
        artifacts_dir=tmp_path / "artifacts",
        db_url="sqlite:///:memory:",
        offline=False,
        retry_backoff=0,
        server_host="10.0.0.1",
        http_base="http://10.0.0.1/images",
        nfs_export="/srv/nfs/clonezilla",
    )


@pytest.fixture
def extracted_release(mock_settings):
    """Create extracted boot files plus a manifest for the settings' version."""
    from netboot_imagegen.artifacts.manifest import (
        INITRD_FILE,
        KERNEL_FILE,
        PAYLOAD_FILE,
        build_manifest,
        write_manifest,
    )

    extract_dir = mock_settings.extract_dir
    extract_dir.mkdir(parents=True)
    files = []
    for name, content in (
        (KERNEL_FILE, b"kernel-bytes"),
        (INITRD_FILE, b"initrd-bytes"),
        (PAYLOAD_FILE, b"squashfs-bytes" * 100),
    ):
        path = extract_dir / name
        path.write_bytes(content)
        files.append(path)

    manifest = build_manifest(mock_settings.version, files)
    write_manifest(manifest, mock_settings.manifest_path)
    return manifest
