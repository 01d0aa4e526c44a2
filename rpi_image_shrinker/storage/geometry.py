"""Filesystem and partition geometry parsing and end sector calculation.

This module recovers the four numbers the resize depends on from diagnostic tool
output and turns them into a ResizePlan:

- ``dumpe2fs -h <root partition>`` gives ``Block count:`` and ``Block size:``
- ``fdisk -l <device>`` gives the root partition row (start sector) and the
  ``Units: sectors of 1 * 512 = 512 bytes`` row (sector size)

Parsing is strict. A value that cannot be located raises GeometryUnavailable;
there are no defaults. Bump GEOMETRY_PARSER_VERSION whenever the accepted
output format changes.
"""
from __future__ import annotations

import re
from typing import Optional

from rpi_image_shrinker.domain import (
    DeviceHandle,
    FilesystemGeometry,
    PartitionGeometry,
    ResizePlan,
)
from rpi_image_shrinker.logging import LoggerFactory

from .command_runners import run_command
from .exceptions import GeometryUnavailable

GEOMETRY_PARSER_VERSION = 1

_INTEGER_RE = re.compile(r"(\d+)")
_UNITS_RE = re.compile(r"=\s*(\d+)\s*bytes", re.IGNORECASE)

log = LoggerFactory.for_partition()


def _labelled_integer(text: str, label: str) -> Optional[int]:
    """Return the trailing integer of the first line starting with label."""
    label = label.lower()
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped.lower().startswith(label):
            continue
        matches = _INTEGER_RE.findall(stripped[len(label):])
        if matches:
            return int(matches[-1])
    return None


def parse_filesystem_geometry(dump_output: str) -> FilesystemGeometry:
    """Extract block count and block size from dumpe2fs header output."""
    block_count = _labelled_integer(dump_output, "block count:")
    if not block_count:
        raise GeometryUnavailable("block count", source="dumpe2fs")
    block_size = _labelled_integer(dump_output, "block size:")
    if not block_size:
        raise GeometryUnavailable("block size", source="dumpe2fs")
    return FilesystemGeometry(block_count=block_count, block_size=block_size)


def _partition_row(listing: str, partition: str) -> Optional[tuple[int, int]]:
    """Return (start, end) sectors from the fdisk row of partition."""
    for line in listing.splitlines():
        fields = line.split()
        if not fields or fields[0] != partition:
            continue
        numbers = [field for field in fields[1:] if field != "*"]
        if len(numbers) < 2 or not numbers[0].isdigit() or not numbers[1].isdigit():
            return None
        return int(numbers[0]), int(numbers[1])
    return None


def parse_sector_size(listing: str) -> Optional[int]:
    for line in listing.splitlines():
        stripped = line.strip()
        if not stripped.lower().startswith("units: sectors of"):
            continue
        match = _UNITS_RE.search(stripped)
        if match:
            return int(match.group(1))
    return None


def parse_partition_geometry(listing: str, partition: str) -> PartitionGeometry:
    """Extract the start sector of partition and the sector size from fdisk -l output."""
    row = _partition_row(listing, partition)
    if row is None:
        raise GeometryUnavailable(f"start sector of {partition}", source="fdisk")
    sector_size = parse_sector_size(listing)
    if not sector_size:
        raise GeometryUnavailable("sector size", source="fdisk")
    return PartitionGeometry(start_sector=row[0], sector_size=sector_size)


def parse_partition_end_sector(listing: str, partition: str) -> int:
    """Extract the inclusive end sector of partition from fdisk -l output."""
    row = _partition_row(listing, partition)
    if row is None:
        raise GeometryUnavailable(f"end sector of {partition}", source="fdisk")
    return row[1]


def read_filesystem_geometry(root_partition: str) -> FilesystemGeometry:
    result = run_command(["dumpe2fs", "-h", root_partition])
    if result.returncode != 0:
        raise GeometryUnavailable(
            f"filesystem geometry of {root_partition}", source="dumpe2fs"
        )
    geometry = parse_filesystem_geometry(result.stdout)
    log.debug(
        f"Filesystem geometry: {geometry.block_count} blocks of "
        f"{geometry.block_size} bytes"
    )
    return geometry


def read_partition_table(device: str) -> str:
    result = run_command(["fdisk", "-l", device])
    if result.returncode != 0:
        raise GeometryUnavailable(f"partition table of {device}", source="fdisk")
    return result.stdout


def read_partition_geometry(handle: DeviceHandle) -> PartitionGeometry:
    geometry = parse_partition_geometry(
        read_partition_table(handle.path), handle.root_partition
    )
    log.debug(
        f"Partition geometry: {handle.root_partition} starts at sector "
        f"{geometry.start_sector}, {geometry.sector_size}-byte sectors"
    )
    return geometry


def calculate_end_sector(
    fs_geometry: FilesystemGeometry, part_geometry: PartitionGeometry
) -> int:
    """Inclusive end sector of a partition that exactly holds the filesystem.

    Rounds the filesystem extent up to whole sectors so the partition can never
    end inside the filesystem.
    """
    sectors = -(-fs_geometry.byte_extent // part_geometry.sector_size)
    return part_geometry.start_sector + sectors - 1


def build_resize_plan(
    fs_geometry: FilesystemGeometry, part_geometry: PartitionGeometry
) -> ResizePlan:
    end_sector = calculate_end_sector(fs_geometry, part_geometry)
    log.info(
        f"Planned end sector {end_sector} "
        f"({fs_geometry.byte_extent} filesystem bytes from sector "
        f"{part_geometry.start_sector})"
    )
    return ResizePlan(end_sector=end_sector, sector_size=part_geometry.sector_size)
