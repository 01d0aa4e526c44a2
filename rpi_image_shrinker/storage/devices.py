"""Block device discovery and validation using lsblk.

Finds the SD cards that can be imaged and turns the one the operator picked
into a DeviceHandle, enforcing the canonical two-partition (boot + root)
layout with an ext root filesystem.

Filtering Logic:
    1. Must be a whole disk (type "disk")
    2. Must NOT hold the running system (/, /boot, /boot/firmware)
    3. Must be removable, attached over USB, or an MMC card slot
"""
import json
import re
from typing import Optional

from rpi_image_shrinker.domain import DeviceHandle
from rpi_image_shrinker.logging import LoggerFactory

from .command_runners import run_command
from .exceptions import DeviceValidationError
from .mount import unmount_partition

ROOT_MOUNTPOINTS = {"/", "/boot", "/boot/firmware"}
SUPPORTED_ROOT_FILESYSTEMS = {"ext2", "ext3", "ext4"}
LSBLK_COLUMNS = "NAME,PATH,TYPE,SIZE,MODEL,VENDOR,TRAN,RM,MOUNTPOINT,FSTYPE,LABEL"

log = LoggerFactory.for_system()


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def format_device_label(device):
    name = device.get("name") or ""
    size_label = re.sub(r"\.0([A-Z])", r"\1", human_size(device.get("size")))
    parts = [name, size_label]
    vendor_model = " ".join(
        (device.get(key) or "").strip() for key in ("vendor", "model")
    ).strip()
    if vendor_model:
        parts.append(vendor_model)
    return " ".join(parts)


def get_block_devices():
    """Return block device data from lsblk, or an empty list if lsblk fails."""
    result = run_command(["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS])
    if result.returncode != 0:
        log.error(f"lsblk failed: {result.stderr.strip()}")
        return []
    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError as error:
        log.error(f"lsblk returned invalid JSON: {error}")
        return []
    return data.get("blockdevices", [])


def get_children(device):
    return device.get("children", []) or []


def get_device_by_name(name):
    if not name:
        return None
    for device in get_block_devices():
        if device.get("name") == name:
            return device
    return None


def device_node(device) -> str:
    return device.get("path") or f"/dev/{device.get('name')}"


def has_root_mountpoint(device):
    if device.get("mountpoint") in ROOT_MOUNTPOINTS:
        return True
    return any(has_root_mountpoint(child) for child in get_children(device))


def is_root_device(device):
    if device.get("type") != "disk":
        return False
    return has_root_mountpoint(device)


def _is_removable(device) -> bool:
    return (
        device.get("rm") in (1, True, "1")
        or device.get("tran") == "usb"
        or (device.get("name") or "").startswith("mmcblk")
    )


def list_candidate_devices():
    """Disks that could hold an SD card to image, excluding the system disk."""
    return [
        device
        for device in get_block_devices()
        if device.get("type") == "disk"
        and not is_root_device(device)
        and _is_removable(device)
    ]


def _partition_number(partition) -> int:
    match = re.search(r"(\d+)$", partition.get("name") or "")
    return int(match.group(1)) if match else 0


def resolve_device_handle(device_path: str, device: Optional[dict] = None) -> DeviceHandle:
    """Build a DeviceHandle for device_path after validating its layout.

    Raises:
        DeviceValidationError: If the device is missing, is the system disk,
            does not have exactly two partitions, or the root filesystem is
            not ext2/3/4
    """
    name = device_path.replace("/dev/", "", 1)
    device = device or get_device_by_name(name)
    if not device:
        raise DeviceValidationError(name, "device not found")
    if is_root_device(device):
        raise DeviceValidationError(name, "device holds the running system")
    partitions = sorted(
        (child for child in get_children(device) if child.get("type") == "part"),
        key=_partition_number,
    )
    if len(partitions) != 2:
        raise DeviceValidationError(
            name, f"expected 2 partitions (boot, root), found {len(partitions)}"
        )
    boot, root = partitions
    fstype = root.get("fstype")
    if fstype not in SUPPORTED_ROOT_FILESYSTEMS:
        raise DeviceValidationError(
            name, f"root filesystem is {fstype or 'unknown'}, expected ext2/3/4"
        )
    handle = DeviceHandle(
        path=device_node(device),
        boot_partition=device_node(boot),
        root_partition=device_node(root),
    )
    log.debug(
        f"Resolved {handle.path}: boot {handle.boot_partition}, "
        f"root {handle.root_partition}"
    )
    return handle


def unmount_device(device) -> None:
    """Unmount every mounted partition of device.

    Raises:
        MountError: If any partition stays mounted
    """
    for child in get_children(device):
        mountpoint = child.get("mountpoint")
        if mountpoint:
            log.info(f"Unmounting {device_node(child)} from {mountpoint}")
            unmount_partition(mountpoint)
    run_command(["sync"])


__all__ = [
    "device_node",
    "format_device_label",
    "get_block_devices",
    "get_device_by_name",
    "human_size",
    "list_candidate_devices",
    "resolve_device_handle",
    "unmount_device",
]
