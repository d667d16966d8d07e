"""Tests for target disk validation."""

from unittest.mock import patch

import pytest

from netboot_imagegen.boot.device import (
    TargetDiskError,
    check_target_disk,
    get_device_size,
    get_mount_points,
    get_root_device,
    is_partition_path,
    partition_to_whole_device,
)

DEVICE = "netboot_imagegen.boot.device"


class TestPartitionPaths:
    """Tests for partition path helpers."""

    @pytest.mark.parametrize(
        "path",
        ["/dev/sda1", "/dev/vdb12", "/dev/nvme0n1p2", "/dev/mmcblk0p1", "/dev/loop3p1"],
    )
    def test_partitions(self, path):
        """Should recognize partition device paths."""
        assert is_partition_path(path)

    @pytest.mark.parametrize("path", ["/dev/sda", "/dev/nvme0n1", "/dev/mmcblk0", "/dev/loop3"])
    def test_whole_disks(self, path):
        """Should not flag whole disks."""
        assert not is_partition_path(path)

    @pytest.mark.parametrize(
        ("partition", "disk"),
        [
            ("/dev/sda1", "/dev/sda"),
            ("/dev/nvme0n1p2", "/dev/nvme0n1"),
            ("/dev/mmcblk0p1", "/dev/mmcblk0"),
            ("/dev/sdb", "/dev/sdb"),
        ],
    )
    def test_whole_device(self, partition, disk):
        """Should strip the partition suffix."""
        assert partition_to_whole_device(partition) == disk


class TestMounts:
    """Tests for /proc/mounts parsing."""

    @pytest.fixture
    def mounts_file(self, tmp_path):
        """A fake /proc/mounts."""
        path = tmp_path / "mounts"
        path.write_text(
            "/dev/nvme0n1p2 / ext4 rw 0 0\n"
            "/dev/sdb1 /media/usb vfat rw 0 0\n"
            "/dev/sdb2 /media/usb2 ext4 rw 0 0\n"
            "proc /proc proc rw 0 0\n"
        )
        return path

    def test_root_device(self, mounts_file):
        """Should find the disk holding the root filesystem."""
        assert get_root_device(mounts_file) == "/dev/nvme0n1"

    def test_mount_points(self, mounts_file):
        """Should list mount points of a disk's partitions."""
        assert get_mount_points("/dev/sdb", mounts_file) == ["/media/usb", "/media/usb2"]

    def test_unreadable_mounts(self, tmp_path):
        """Should return nothing when the mounts file is missing."""
        assert get_root_device(tmp_path / "absent") is None


class TestDeviceSize:
    """Tests for get_device_size function."""

    def test_reads_sectors(self, tmp_path):
        """Should convert sysfs sectors to bytes."""
        (tmp_path / "sdb").mkdir()
        (tmp_path / "sdb" / "size").write_text("2048\n")

        assert get_device_size("/dev/sdb", tmp_path) == 1024 * 1024

    def test_missing(self, tmp_path):
        """Should return None when sysfs has no entry."""
        assert get_device_size("/dev/sdz", tmp_path) is None


class TestCheckTargetDisk:
    """Tests for check_target_disk function."""

    def test_missing_device(self, tmp_path):
        """Should reject a path that does not exist."""
        with pytest.raises(TargetDiskError) as exc_info:
            check_target_disk(str(tmp_path / "nope"))
        assert exc_info.value.code == "device_not_found"

    def test_regular_file(self, tmp_path):
        """Should reject a regular file."""
        path = tmp_path / "disk.img"
        path.write_bytes(b"x")

        with pytest.raises(TargetDiskError) as exc_info:
            check_target_disk(str(path))
        assert exc_info.value.code == "not_block_device"

    def test_partition_rejected(self):
        """Should reject partitions."""
        with (
            patch("os.path.exists", return_value=True),
            patch(f"{DEVICE}.is_block_device", return_value=True),
            pytest.raises(TargetDiskError) as exc_info,
        ):
            check_target_disk("/dev/sdb1")
        assert exc_info.value.code == "partition_not_allowed"

    def test_system_disk_rejected(self):
        """Should reject the disk holding the root filesystem."""
        with (
            patch("os.path.exists", return_value=True),
            patch(f"{DEVICE}.is_block_device", return_value=True),
            patch(f"{DEVICE}.get_root_device", return_value="/dev/sdb"),
            pytest.raises(TargetDiskError) as exc_info,
        ):
            check_target_disk("/dev/sdb")
        assert exc_info.value.code == "system_device"

    def test_too_small(self):
        """Should enforce the minimum size."""
        with (
            patch("os.path.exists", return_value=True),
            patch(f"{DEVICE}.is_block_device", return_value=True),
            patch(f"{DEVICE}.get_root_device", return_value="/dev/nvme0n1"),
            patch(f"{DEVICE}.get_device_size", return_value=1000),
            pytest.raises(TargetDiskError) as exc_info,
        ):
            check_target_disk("/dev/sdb", min_bytes=2000)
        assert exc_info.value.code == "device_too_small"

    def test_valid_disk(self):
        """Should return the collected facts for a valid disk."""
        with (
            patch("os.path.exists", return_value=True),
            patch(f"{DEVICE}.is_block_device", return_value=True),
            patch(f"{DEVICE}.get_root_device", return_value="/dev/nvme0n1"),
            patch(f"{DEVICE}.get_device_size", return_value=4096),
            patch(f"{DEVICE}.get_mount_points", return_value=["/media/usb"]),
        ):
            result = check_target_disk("/dev/sdb", min_bytes=2000)

        assert result.path == "/dev/sdb"
        assert result.size_bytes == 4096
        assert result.mount_points == ["/media/usb"]
