"""Custom exceptions for image shrinking operations.

This module defines a hierarchy of exceptions for the shrink pipeline so callers
can tell a missing tool apart from an unreadable geometry or a failed resize.

Exception Hierarchy:
    ShrinkError (base)
        ├── PreconditionUnmet
        ├── DeviceValidationError
        ├── MountError
        ├── GeometryUnavailable
        ├── FilesystemInconsistent
        ├── ResizeFailed
        ├── AutoExpandFailed
        ├── ImagingFailed
        ├── CompressionFailed
        ├── OutputExists
        └── PipelineCancelled

Every exception is fatal for the run. The pipeline never continues past one.

Usage:
    from rpi_image_shrinker.storage.exceptions import GeometryUnavailable

    if block_count is None:
        raise GeometryUnavailable("block count", source="dumpe2fs")
"""

from __future__ import annotations

from typing import Iterable, Optional


class ShrinkError(Exception):
    """Base exception for all shrink pipeline operations."""


class PreconditionUnmet(ShrinkError):
    """One or more required external tools are not installed."""

    def __init__(self, missing_tools: Iterable[str]):
        self.missing_tools = list(missing_tools)
        super().__init__(
            f"Required tools not found: {', '.join(self.missing_tools)}"
        )


class DeviceValidationError(ShrinkError):
    """Device failed validation checks."""

    def __init__(self, device_name: str, reason: str):
        self.device_name = device_name
        self.reason = reason
        super().__init__(f"Device validation failed for {device_name}: {reason}")


class MountError(ShrinkError):
    """Failed to mount or unmount a partition."""

    def __init__(self, message: str, partition: Optional[str] = None):
        self.partition = partition
        super().__init__(message)


class GeometryUnavailable(ShrinkError):
    """A geometry value could not be located in diagnostic tool output."""

    def __init__(self, label: str, source: str = ""):
        self.label = label
        self.source = source
        msg = f"Could not determine {label}"
        if source:
            msg += f" from {source} output"
        super().__init__(msg)


class FilesystemInconsistent(ShrinkError):
    """A mandatory filesystem consistency check failed."""

    def __init__(self, partition: str, returncode: int, output: str = ""):
        self.partition = partition
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Filesystem on {partition} is inconsistent "
            f"(e2fsck exit code {returncode})"
        )


class ResizeFailed(ShrinkError):
    """Filesystem shrink or partition table resize failed."""

    def __init__(self, message: str, device: Optional[str] = None):
        self.device = device
        super().__init__(message)


class AutoExpandFailed(ShrinkError):
    """Writing the first-boot expansion files to the mounted partitions failed."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(message)


class ImagingFailed(ShrinkError):
    """Reading the device extent into an image file failed or came up short."""

    def __init__(
        self,
        message: str,
        expected_bytes: Optional[int] = None,
        actual_bytes: Optional[int] = None,
    ):
        self.expected_bytes = expected_bytes
        self.actual_bytes = actual_bytes
        super().__init__(message)


class CompressionFailed(ShrinkError):
    """The archive compressor failed."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(message)


class OutputExists(ShrinkError):
    """The finished image would replace a file already in the output directory."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Refusing to overwrite existing image {path}")


class PipelineCancelled(ShrinkError):
    """The caller cancelled the pipeline between two stages."""

    def __init__(self, stage: str, device_modified: bool):
        self.stage = stage
        self.device_modified = device_modified
        msg = f"Pipeline cancelled before {stage}"
        if device_modified:
            msg += (
                "; the partition table was already resized and the device "
                "holds a valid but incomplete image"
            )
        super().__init__(msg)
