"""Tests for disk layout definitions and YAML loading."""

import pytest
import yaml
from pydantic import ValidationError

from netboot_imagegen.disk.layout import (
    DEFAULT_DATA_DIRS,
    DEFAULT_LAYOUT,
    load_layout,
    parse_layout_data,
)
from netboot_imagegen.types import FilesystemKind, SizeMode


def _layout_data(**overrides):
    data = {
        "partitions": [
            {"name": "ESP", "size_mib": 256, "fs": "vfat", "label": "EFI", "boot": True},
            {"name": "ROOT", "size_mode": "content", "fs": "ext4", "label": "ROOT"},
            {"name": "DATA", "size_mode": "remainder", "min_mib": 64, "fs": "ext4",
             "label": "DATA"},
        ],
    }
    data.update(overrides)
    return data


class TestDefaultLayout:
    """Tests for the built-in layout."""

    def test_six_partitions(self):
        """Should describe the edge-device partition table."""
        names = [p.name for p in DEFAULT_LAYOUT.partitions]
        assert names == ["EFI", "ROOT", "SWAP", "OS1", "OS2", "DATA"]
        assert DEFAULT_LAYOUT.boot_partition.name == "EFI"
        assert DEFAULT_LAYOUT.boot_partition.fs is FilesystemKind.VFAT
        assert DEFAULT_LAYOUT.data_dirs == DEFAULT_DATA_DIRS


class TestParseLayoutData:
    """Tests for layout validation."""

    def test_valid_layout(self):
        """Should convert valid data into partition specs."""
        layout = parse_layout_data(_layout_data())

        assert [p.name for p in layout.partitions] == ["ESP", "ROOT", "DATA"]
        assert layout.partitions[1].size_mode is SizeMode.CONTENT
        assert layout.partitions[2].min_mib == 64
        assert layout.boot_partition.name == "ESP"

    def test_lowercase_name_rejected(self):
        """Should reject names that cannot appear in a placeholder."""
        data = _layout_data()
        data["partitions"][1]["name"] = "root"
        with pytest.raises(ValidationError):
            parse_layout_data(data)

    def test_fixed_without_size_rejected(self):
        """Should require a size for fixed partitions."""
        data = _layout_data()
        del data["partitions"][0]["size_mib"]
        with pytest.raises(ValidationError):
            parse_layout_data(data)

    def test_missing_boot_partition_rejected(self):
        """Should require exactly one vfat boot partition."""
        data = _layout_data()
        data["partitions"][0]["boot"] = False
        with pytest.raises(ValidationError):
            parse_layout_data(data)

    def test_root_role_must_exist(self):
        """Should reject a root role naming no ext4 partition."""
        with pytest.raises(ValidationError):
            parse_layout_data(_layout_data(root_partition="SYSTEM"))

    def test_data_role_optional(self):
        """Should allow layouts without a data partition."""
        layout = parse_layout_data(_layout_data(data_partition=None))
        assert layout.data_partition is None

    def test_duplicate_names_rejected(self):
        """Should reject duplicate partition names."""
        data = _layout_data()
        data["partitions"].append(dict(data["partitions"][2]))
        with pytest.raises(ValidationError):
            parse_layout_data(data)


class TestLoadLayout:
    """Tests for load_layout function."""

    def test_load_yaml(self, tmp_path):
        """Should load a layout from YAML."""
        path = tmp_path / "layout.yaml"
        path.write_text(yaml.safe_dump(_layout_data(data_dirs=["logs"])))

        layout = load_layout(path)

        assert layout.data_dirs == ("logs",)

    def test_non_mapping(self, tmp_path):
        """Should reject YAML that is not a mapping."""
        path = tmp_path / "layout.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ValueError):
            load_layout(path)
