"""Domain models for the shrink pipeline."""

from __future__ import annotations

from .models import (
    DeviceHandle,
    FilesystemGeometry,
    ImageArtifact,
    PartitionGeometry,
    PipelineResult,
    PipelineStage,
    ResizePlan,
    StageResult,
)


__all__ = [
    "DeviceHandle",
    "FilesystemGeometry",
    "ImageArtifact",
    "PartitionGeometry",
    "PipelineResult",
    "PipelineStage",
    "ResizePlan",
    "StageResult",
]
