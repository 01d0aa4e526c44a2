"""Partition table resize of the root partition.

parted refuses to shrink a partition in script mode, so the resize runs with
``---pretend-input-tty`` and the confirmation is piped on stdin. After the
resize the table is flushed, re-read and checked against the plan, and the
filesystem gets a mandatory consistency check.
"""
from __future__ import annotations

from rpi_image_shrinker.domain import DeviceHandle, ResizePlan
from rpi_image_shrinker.logging import LoggerFactory

from .command_runners import run_command
from .exceptions import ResizeFailed
from .filesystem import check_filesystem
from .geometry import parse_partition_end_sector, read_partition_table

PARTED_CONFIRMATION = "Yes\n"

log = LoggerFactory.for_partition()


def build_resize_command(handle: DeviceHandle, plan: ResizePlan) -> list[str]:
    return [
        "parted",
        "---pretend-input-tty",
        handle.path,
        "unit",
        "s",
        "resizepart",
        str(handle.root_partition_number),
        f"{plan.end_sector}s",
    ]


def flush_partition_table(device: str) -> None:
    """Flush pending writes and ask the kernel to re-read the partition table."""
    run_command(["sync"])
    result = run_command(["partprobe", device])
    if result.returncode != 0:
        log.warning(f"partprobe {device} failed: {result.stderr.strip()}")


def verify_end_sector(handle: DeviceHandle, plan: ResizePlan) -> None:
    written_end = parse_partition_end_sector(
        read_partition_table(handle.path), handle.root_partition
    )
    if written_end != plan.end_sector:
        raise ResizeFailed(
            f"End sector of {handle.root_partition} not written correctly: "
            f"expected {plan.end_sector}, read {written_end}",
            device=handle.path,
        )


def resize_partition(handle: DeviceHandle, plan: ResizePlan) -> None:
    """Make the root partition end exactly at plan.end_sector and verify it."""
    log.info(
        f"Resizing partition {handle.root_partition_number} of {handle.path} "
        f"to end at sector {plan.end_sector}"
    )
    result = run_command(
        build_resize_command(handle, plan), input_text=PARTED_CONFIRMATION
    )
    if result.returncode != 0:
        message = (result.stderr or result.stdout).strip() or "parted failed"
        raise ResizeFailed(
            f"Resizing {handle.root_partition} failed: {message}", device=handle.path
        )
    flush_partition_table(handle.path)
    verify_end_sector(handle, plan)


def recheck_filesystem(handle: DeviceHandle) -> None:
    check_filesystem(handle.root_partition, mandatory=True)
