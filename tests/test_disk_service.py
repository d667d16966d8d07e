"""Tests for the high-level image build service."""

import pytest

from netboot_imagegen.config import MIB
from netboot_imagegen.disk.layout import DiskLayout
from netboot_imagegen.disk.planner import PartitionSpec
from netboot_imagegen.disk.service import build_image, plan_for_tree
from netboot_imagegen.errors import MissingPrerequisiteError, SizeConstraintError
from netboot_imagegen.types import DiskImageState, FilesystemKind, SizeMode

CONTENT_LAYOUT = DiskLayout(
    partitions=(
        PartitionSpec("EFI", SizeMode.FIXED, FilesystemKind.VFAT, "EFI", size_mib=1, boot=True),
        PartitionSpec("ROOT", SizeMode.CONTENT, FilesystemKind.EXT4, "INIT-ROOT"),
        PartitionSpec("DATA", SizeMode.REMAINDER, FilesystemKind.EXT4, "DATA", min_mib=1),
    ),
)


@pytest.fixture
def small_settings(mock_settings):
    """Settings that accept a tiny root tree."""
    return mock_settings.model_copy(update={"content_min_mib": 0, "root_margin_mib": 2})


@pytest.fixture
def rootfs(tmp_path):
    """A small root tree."""
    root = tmp_path / "rootfs"
    (root / "etc").mkdir(parents=True)
    (root / "etc" / "hostname").write_text("edge\n")
    return root


class TestPlanForTree:
    """Tests for plan_for_tree function."""

    def test_sizes_root_from_content(self, small_settings, rootfs):
        """Should size the content partition from the tree plus margin."""
        result = plan_for_tree(small_settings, rootfs, CONTENT_LAYOUT, 16 * MIB)

        sizes = {p.name: p.size_mib for p in result.partitions}
        assert sizes == {"EFI": 1, "ROOT": 3, "DATA": 12}

    def test_content_below_minimum(self, mock_settings, rootfs):
        """Should reject implausibly small trees with the default bounds."""
        with pytest.raises(SizeConstraintError):
            plan_for_tree(mock_settings, rootfs, CONTENT_LAYOUT, 16 * MIB)

    def test_missing_tree(self, small_settings, tmp_path):
        """Should require the tree when a partition is content-sized."""
        with pytest.raises(MissingPrerequisiteError):
            plan_for_tree(small_settings, tmp_path / "absent", CONTENT_LAYOUT)


class TestBuildImage:
    """Tests for build_image function."""

    def test_build_and_publish(self, small_settings, rootfs, fake_backend):
        """Should assemble with the given backend and publish the result."""
        outcome = build_image(
            small_settings,
            rootfs,
            CONTENT_LAYOUT,
            16 * MIB,
            backend=fake_backend,
            image_name="edge.img",
        )

        assert outcome.image.state is DiskImageState.FINALIZED
        assert outcome.image.path == small_settings.build_dir / "edge.img"
        assert outcome.published.compressed_path == (
            small_settings.build_dir / "images" / "edge.img.gz"
        )
        assert fake_backend.mounted == []
        assert fake_backend.attached == []

    def test_plan_failure_allocates_nothing(self, small_settings, rootfs, fake_backend):
        """Should fail before touching the backend when the layout cannot fit."""
        with pytest.raises(SizeConstraintError):
            build_image(small_settings, rootfs, CONTENT_LAYOUT, 2 * MIB, backend=fake_backend)

        assert fake_backend.calls == []
        assert not small_settings.build_dir.exists()
