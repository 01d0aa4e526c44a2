"""Domain model for the shrink pipeline.

Typed results passed from one pipeline stage to the next. Every geometry value
is scoped to a single run and nothing here is persisted.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional


# ==============================================================================
# Device Domain
# ==============================================================================


@dataclass(frozen=True)
class DeviceHandle:
    """A whole block device and its boot and root partitions."""

    path: str  # e.g., "/dev/sda"
    boot_partition: str  # e.g., "/dev/sda1"
    root_partition: str  # e.g., "/dev/sda2"

    @property
    def name(self) -> str:
        """Device name without /dev/ (e.g., sda)."""
        return Path(self.path).name

    @property
    def root_partition_number(self) -> int:
        """Partition number of the root partition (e.g., 2 for mmcblk0p2)."""
        match = re.search(r"(\d+)$", self.root_partition)
        if not match:
            raise ValueError(f"No partition number in {self.root_partition}")
        return int(match.group(1))


# ==============================================================================
# Geometry Domain
# ==============================================================================


@dataclass(frozen=True)
class FilesystemGeometry:
    """Block count and block size of the root filesystem."""

    block_count: int
    block_size: int  # bytes

    def __post_init__(self) -> None:
        if self.block_count <= 0:
            raise ValueError(f"block_count must be positive, got {self.block_count}")
        if self.block_size <= 0:
            raise ValueError(f"block_size must be positive, got {self.block_size}")

    @property
    def byte_extent(self) -> int:
        return self.block_count * self.block_size


@dataclass(frozen=True)
class PartitionGeometry:
    """Start sector of the root partition and the device sector size."""

    start_sector: int
    sector_size: int  # bytes

    def __post_init__(self) -> None:
        if self.start_sector < 0:
            raise ValueError(
                f"start_sector must not be negative, got {self.start_sector}"
            )
        if self.sector_size <= 0:
            raise ValueError(f"sector_size must be positive, got {self.sector_size}")


@dataclass(frozen=True)
class ResizePlan:
    """Inclusive end sector that drives both the resize and the image read."""

    end_sector: int
    sector_size: int

    @property
    def sector_count(self) -> int:
        """Sectors from 0 through end_sector inclusive."""
        return self.end_sector + 1

    @property
    def image_size_bytes(self) -> int:
        return self.sector_count * self.sector_size


@dataclass(frozen=True)
class ImageArtifact:
    """Raw image file read from the device."""

    path: Path
    size_bytes: int
    end_sector: int
    sector_size: int


# ==============================================================================
# Pipeline Domain
# ==============================================================================


class PipelineStage(Enum):
    """Named stages of the shrink pipeline, in execution order."""

    SANITIZE = "sanitize"
    CHECK_INITIAL = "check_initial"
    DEFRAGMENT = "defragment"
    CHECK_FINAL = "check_final"
    SHRINK = "shrink"
    GEOMETRY = "geometry"
    RESIZE = "resize"
    RECHECK = "recheck"
    ZERO_FILL = "zero_fill"
    AUTO_EXPAND = "auto_expand"
    EXTRACT = "extract"
    COMPRESS = "compress"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ")


@dataclass(frozen=True)
class StageResult:
    """Outcome of a single stage."""

    stage: PipelineStage
    ok: bool = True
    detail: str = ""


@dataclass
class PipelineResult:
    """Everything a completed run produced."""

    handle: DeviceHandle
    plan: Optional[ResizePlan] = None
    image: Optional[ImageArtifact] = None
    archive_path: Optional[Path] = None
    stages: list[StageResult] = field(default_factory=list)

    @property
    def completed_stages(self) -> list[PipelineStage]:
        return [result.stage for result in self.stages if result.ok]
