"""Tests for the block-device backend helpers.

System tools are never executed: subprocess.run and run_tool are
monkeypatched to capture the argument vectors.
"""

import subprocess
from pathlib import Path

import pytest

from netboot_imagegen.config import MIB
from netboot_imagegen.disk import backend as backend_module
from netboot_imagegen.disk.backend import (
    SystemBackend,
    ToolResult,
    partition_device_path,
    render_sfdisk_script,
    run_tool,
)
from netboot_imagegen.disk.layout import DEFAULT_LAYOUT
from netboot_imagegen.disk.planner import GPT_RESERVE_BYTES, plan
from netboot_imagegen.errors import LoopDeviceError, MountError, ToolError
from netboot_imagegen.types import FilesystemKind


class TestPartitionDevicePath:
    """Tests for partition_device_path function."""

    @pytest.mark.parametrize(
        ("device", "expected"),
        [
            ("/dev/loop3", "/dev/loop3p2"),
            ("/dev/nvme0n1", "/dev/nvme0n1p2"),
            ("/dev/mmcblk0", "/dev/mmcblk0p2"),
            ("/dev/sda", "/dev/sda2"),
        ],
    )
    def test_separator(self, device, expected):
        """Should add a 'p' separator after a trailing digit."""
        assert partition_device_path(device, 2) == expected


class TestRenderSfdiskScript:
    """Tests for render_sfdisk_script function."""

    def test_default_layout(self):
        """Should render a GPT script with contiguous sectors."""
        result = plan(20000 * MIB, DEFAULT_LAYOUT.partitions, content_size=3000 * MIB)

        script = render_sfdisk_script(result.partitions, GPT_RESERVE_BYTES)
        lines = script.splitlines()

        assert lines[:3] == ["label: gpt", "unit: sectors", "first-lba: 2048"]
        assert lines[4] == (
            'start=2048, size=1048576, type=U, name="EFI", attrs="LegacyBIOSBootable"'
        )
        assert lines[5] == 'start=1050624, size=8192000, type=L, name="INIT-ROOT"'
        assert lines[6].endswith('type=S, name="SWAP"')
        assert len(lines) == 10


class TestRunTool:
    """Tests for run_tool function."""

    def test_success(self, monkeypatch):
        """Should capture output of a successful command."""

        def fake_run(argv, **kwargs):
            return subprocess.CompletedProcess(argv, 0, stdout="/dev/loop0\n", stderr="")

        monkeypatch.setattr(subprocess, "run", fake_run)

        result = run_tool(["losetup", "--show", "-f", Path("/tmp/x.img")])

        assert result.argv == ["losetup", "--show", "-f", "/tmp/x.img"]
        assert result.stdout == "/dev/loop0\n"

    def test_failure_raises(self, monkeypatch):
        """Should raise the requested error class on non-zero exit."""
        monkeypatch.setattr(
            subprocess,
            "run",
            lambda argv, **kw: subprocess.CompletedProcess(argv, 32, "", "not mounted"),
        )

        with pytest.raises(MountError) as exc_info:
            run_tool(["umount", "/mnt"], error_cls=MountError)

        assert exc_info.value.returncode == 32
        assert "not mounted" in exc_info.value.message

    def test_no_check(self, monkeypatch):
        """Should return failures when check is disabled."""
        monkeypatch.setattr(
            subprocess,
            "run",
            lambda argv, **kw: subprocess.CompletedProcess(argv, 1, "", ""),
        )

        assert run_tool(["udevadm", "settle"], check=False).returncode == 1

    def test_missing_executable(self, monkeypatch):
        """Should wrap OSError in ToolError."""

        def fake_run(argv, **kwargs):
            raise FileNotFoundError("no such file")

        monkeypatch.setattr(subprocess, "run", fake_run)

        with pytest.raises(ToolError) as exc_info:
            run_tool(["sfdisk"])

        assert exc_info.value.code == "execution_error"

    def test_timeout(self, monkeypatch):
        """Should raise ToolError on timeout."""

        def fake_run(argv, **kwargs):
            raise subprocess.TimeoutExpired(argv, kwargs["timeout"])

        monkeypatch.setattr(subprocess, "run", fake_run)

        with pytest.raises(ToolError) as exc_info:
            run_tool(["rsync"], timeout=5)

        assert exc_info.value.code == "timeout"


class TestSystemBackend:
    """Tests for SystemBackend command composition."""

    @pytest.fixture
    def recorded(self, monkeypatch):
        """Record run_tool calls and return canned output."""
        calls = []

        def fake_run_tool(argv, **kwargs):
            calls.append((list(argv), kwargs))
            stdout = {"losetup": "/dev/loop5\n", "blkid": "1234-ABCD\n"}.get(argv[0], "")
            return ToolResult(argv=list(argv), returncode=0, stdout=stdout, stderr="")

        monkeypatch.setattr(backend_module, "run_tool", fake_run_tool)
        return calls

    def test_attach_loop(self, recorded):
        """Should attach with partition scanning."""
        device = SystemBackend().attach_loop(Path("/tmp/disk.img"))

        assert device == "/dev/loop5"
        assert recorded[0][0] == ["losetup", "--show", "-f", "-P", "/tmp/disk.img"]
        assert recorded[0][1]["error_cls"] is LoopDeviceError

    def test_format_commands(self, recorded):
        """Should pick the mkfs tool by filesystem kind."""
        backend = SystemBackend()
        backend.format("/dev/loop5p1", FilesystemKind.VFAT, "EFI")
        backend.format("/dev/loop5p2", FilesystemKind.EXT4, "DATA")
        backend.format("/dev/loop5p3", FilesystemKind.SWAP, "SWAP")

        assert [argv for argv, _ in recorded] == [
            ["mkfs.fat", "-F32", "-n", "EFI", "/dev/loop5p1"],
            ["mkfs.ext4", "-F", "-L", "DATA", "/dev/loop5p2"],
            ["mkswap", "-L", "SWAP", "/dev/loop5p3"],
        ]

    def test_write_partition_table(self, recorded):
        """Should feed the sfdisk script and rescan the device."""
        result = plan(20000 * MIB, DEFAULT_LAYOUT.partitions, content_size=3000 * MIB)

        SystemBackend().write_partition_table("/dev/loop5", result.partitions, GPT_RESERVE_BYTES)

        argv, kwargs = recorded[0]
        assert argv == ["sfdisk", "--wipe", "always", "/dev/loop5"]
        assert kwargs["input_text"].startswith("label: gpt\n")
        assert [argv[0] for argv, _ in recorded[1:]] == ["partprobe", "udevadm"]

    def test_mount_and_copy(self, recorded):
        """Should compose mount and rsync invocations."""
        backend = SystemBackend()
        backend.mount("/tmp/cz.iso", Path("/mnt/iso"), options="loop,ro")
        backend.copy_tree(Path("/src"), Path("/mnt/root"), ["proc", "sys"])

        assert recorded[0][0] == ["mount", "-o", "loop,ro", "/tmp/cz.iso", "/mnt/iso"]
        assert recorded[1][0] == [
            "rsync",
            "-aHAX",
            "--numeric-ids",
            "--exclude=/proc/*",
            "--exclude=/sys/*",
            "/src/",
            "/mnt/root/",
        ]

    def test_get_uuid(self, recorded):
        """Should read the UUID with blkid."""
        assert SystemBackend().get_uuid("/dev/loop5p1") == "1234-ABCD"
