"""Scoped partition mounting with guaranteed unmount.

Every stage that needs a filesystem mounted (defragmentation, sanitizing,
auto-expand installation) acquires it through ``mounted()``, which unmounts on
every exit path before the next stage runs. A stale mount would make the
following e2fsck or resize2fs refuse to run.

Functions:
    - validate_partition_path(): Reject anything that is not a plain /dev/ node
    - is_mounted(): Check whether a directory is an active mount point
    - mount_partition(): Mount a partition on a directory
    - unmount_partition(): Unmount a directory if mounted
    - mounted(): Context manager wrapping both

Example:
    >>> with mounted("/dev/sda2", workspace / "root") as root_dir:
    ...     sanitize_root(root_dir)
"""

import os
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Union

from rpi_image_shrinker.logging import LoggerFactory

from .exceptions import MountError


# Module logger
log = LoggerFactory.for_system()

_INVALID_CHARS = [";", "&", "|", "$", "`", "\n", "\r", " "]


def validate_partition_path(partition: str) -> None:
    """Raise ValueError unless partition is a /dev/ node without shell metacharacters."""
    if not isinstance(partition, str) or not partition.startswith("/dev/"):
        raise ValueError(f"Invalid partition path: {partition}")
    if any(char in partition for char in _INVALID_CHARS):
        raise ValueError(f"Partition path contains invalid characters: {partition}")


def is_mounted(path: Union[str, Path]) -> bool:
    """Check if path is an active mount point according to /proc/mounts."""
    target = os.fspath(path)
    try:
        with open("/proc/mounts", "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 1 and parts[1] == target:
                    return True
    except FileNotFoundError:
        return os.path.ismount(target)
    return False


def mount_partition(partition: str, mount_point: Union[str, Path]) -> None:
    """Mount partition on mount_point, creating the directory if needed.

    Raises:
        ValueError: If the partition path is invalid
        MountError: If mount fails
    """
    validate_partition_path(partition)
    mount_point = Path(mount_point)
    mount_point.mkdir(parents=True, exist_ok=True)
    try:
        subprocess.run(
            ["mount", partition, str(mount_point)],
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as e:
        raise MountError(
            f"Failed to mount {partition} to {mount_point}: {e.stderr.strip()}",
            partition=partition,
        ) from e
    log.debug(f"Mounted {partition} on {mount_point}")


def unmount_partition(mount_point: Union[str, Path]) -> None:
    """Unmount mount_point if it is mounted.

    Raises:
        MountError: If umount fails
    """
    if not is_mounted(mount_point):
        return
    try:
        subprocess.run(
            ["umount", str(mount_point)], check=True, capture_output=True, text=True
        )
    except subprocess.CalledProcessError as e:
        raise MountError(
            f"Failed to unmount {mount_point}: {e.stderr.strip()}"
        ) from e
    log.debug(f"Unmounted {mount_point}")


@contextmanager
def mounted(partition: str, mount_point: Union[str, Path]) -> Iterator[Path]:
    """Mount partition for the duration of the block, always unmounting afterwards."""
    mount_point = Path(mount_point)
    mount_partition(partition, mount_point)
    try:
        yield mount_point
    finally:
        unmount_partition(mount_point)
