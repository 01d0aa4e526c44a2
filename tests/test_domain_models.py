"""Tests for domain models."""

from dataclasses import FrozenInstanceError
from pathlib import Path

import pytest

from rpi_image_shrinker.domain import (
    DeviceHandle,
    FilesystemGeometry,
    ImageArtifact,
    PartitionGeometry,
    PipelineResult,
    PipelineStage,
    ResizePlan,
    StageResult,
)


class TestDeviceHandle:
    @pytest.mark.parametrize(
        "path,root,number",
        [
            ("/dev/sda", "/dev/sda2", 2),
            ("/dev/mmcblk0", "/dev/mmcblk0p2", 2),
            ("/dev/nvme0n1", "/dev/nvme0n1p12", 12),
        ],
    )
    def test_root_partition_number(self, path, root, number):
        handle = DeviceHandle(path=path, boot_partition=f"{path}1", root_partition=root)

        assert handle.root_partition_number == number

    def test_name(self, device_handle):
        assert device_handle.name == "sda"

    def test_partition_without_number(self):
        handle = DeviceHandle(path="/dev/sda", boot_partition="/dev/sda1", root_partition="/dev/root")

        with pytest.raises(ValueError):
            handle.root_partition_number

    def test_is_frozen(self, device_handle):
        with pytest.raises(FrozenInstanceError):
            device_handle.path = "/dev/sdb"


class TestGeometry:
    @pytest.mark.parametrize("block_count,block_size", [(0, 4096), (100, 0), (-1, 1024)])
    def test_filesystem_geometry_must_be_positive(self, block_count, block_size):
        with pytest.raises(ValueError):
            FilesystemGeometry(block_count=block_count, block_size=block_size)

    def test_partition_geometry_validation(self):
        with pytest.raises(ValueError):
            PartitionGeometry(start_sector=-1, sector_size=512)
        with pytest.raises(ValueError):
            PartitionGeometry(start_sector=2048, sector_size=0)

    def test_partition_may_start_at_zero(self):
        assert PartitionGeometry(start_sector=0, sector_size=512).start_sector == 0

    def test_resize_plan_sizes(self):
        plan = ResizePlan(end_sector=8008191, sector_size=512)

        assert plan.sector_count == 8008192
        assert plan.image_size_bytes == 4100194304


class TestPipelineTypes:
    def test_stage_order(self):
        assert [stage.value for stage in PipelineStage] == [
            "sanitize",
            "check_initial",
            "defragment",
            "check_final",
            "shrink",
            "geometry",
            "resize",
            "recheck",
            "zero_fill",
            "auto_expand",
            "extract",
            "compress",
        ]

    def test_stage_label(self):
        assert PipelineStage.CHECK_FINAL.label == "check final"

    def test_completed_stages_skip_failed_results(self, device_handle):
        result = PipelineResult(handle=device_handle)
        result.stages.append(StageResult(PipelineStage.RESIZE))
        result.stages.append(StageResult(PipelineStage.ZERO_FILL, ok=False))

        assert result.completed_stages == [PipelineStage.RESIZE]

    def test_image_artifact(self):
        artifact = ImageArtifact(Path("/w/pi.img"), 4096, 7, 512)

        assert artifact.size_bytes == (artifact.end_sector + 1) * artifact.sector_size
