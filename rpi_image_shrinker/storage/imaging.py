"""Read the shrunk device extent into a raw image file."""

from __future__ import annotations

from pathlib import Path

from rpi_image_shrinker.domain import ImageArtifact, ResizePlan
from rpi_image_shrinker.logging import LoggerFactory, ThrottledLogger

from .command_runners import run_checked_with_streaming_progress
from .exceptions import ImagingFailed

log = LoggerFactory.for_imaging()


def build_dd_command(device: str, plan: ResizePlan, output_path: Path) -> list[str]:
    return [
        "dd",
        f"if={device}",
        f"of={output_path}",
        f"bs={plan.sector_size}",
        f"count={plan.sector_count}",
        "status=progress",
        "conv=fsync",
    ]


def _remove_partial(output_path: Path) -> None:
    if output_path.exists():
        output_path.unlink()
        log.debug(f"Removed partial image {output_path}")


def extract_image(device: str, plan: ResizePlan, output_path: Path) -> ImageArtifact:
    """Copy sectors 0 through plan.end_sector of device into output_path.

    Raises:
        ImagingFailed: If dd fails or the image is not exactly
            (end_sector + 1) * sector_size bytes long
    """
    expected = plan.image_size_bytes
    progress_log = ThrottledLogger(log.bind(tags=["imaging", "progress"]))

    def report(bytes_copied: int) -> None:
        percent = bytes_copied * 100 / expected if expected else 0
        progress_log.info(
            "dd", f"Imaged {bytes_copied} of {expected} bytes ({percent:.1f}%)"
        )

    log.info(f"Reading {expected} bytes from {device} into {output_path}")
    try:
        run_checked_with_streaming_progress(
            build_dd_command(device, plan, output_path), progress_callback=report
        )
    except RuntimeError as error:
        _remove_partial(output_path)
        raise ImagingFailed(str(error), expected_bytes=expected) from error

    actual = output_path.stat().st_size if output_path.exists() else 0
    if actual != expected:
        _remove_partial(output_path)
        raise ImagingFailed(
            f"Image {output_path} is {actual} bytes, expected {expected}",
            expected_bytes=expected,
            actual_bytes=actual,
        )
    log.info(f"Image written: {output_path} ({actual} bytes)")
    return ImageArtifact(
        path=output_path,
        size_bytes=actual,
        end_sector=plan.end_sector,
        sector_size=plan.sector_size,
    )
