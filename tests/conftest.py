"""
Pytest configuration and shared fixtures for rpi-image-shrinker tests.

This module provides captured tool output and subprocess fakes used across all
test modules. No test touches a real block device.
"""

import json
import subprocess
from typing import Any, Callable, Dict

import pytest

from rpi_image_shrinker.config import settings
from rpi_image_shrinker.domain import DeviceHandle, ResizePlan


# ==============================================================================
# Tool Output Fixtures
# ==============================================================================


@pytest.fixture
def dumpe2fs_output() -> str:
    """Header of `dumpe2fs -h` for a shrunk root filesystem."""
    return """dumpe2fs 1.47.0 (5-Feb-2023)
Filesystem volume name:   rootfs
Last mounted on:          /
Filesystem UUID:          9c8a7b6d-1e2f-4a3b-8c9d-0e1f2a3b4c5d
Filesystem magic number:  0xEF53
Filesystem revision #:    1 (dynamic)
Filesystem features:      has_journal ext_attr resize_inode dir_index filetype extent flex_bg sparse_super large_file huge_file dir_nlink extra_isize metadata_csum
Filesystem state:         clean
Inode count:              245760
Block count:              1000000
Reserved block count:     50000
Free blocks:              12345
Free inodes:              120000
First block:              0
Block size:               4096
Fragment size:            4096
Blocks per group:         32768
"""


@pytest.fixture
def fdisk_output() -> str:
    """`fdisk -l /dev/sda` for a two-partition Raspberry Pi card."""
    return """Disk /dev/sda: 29.72 GiB, 31914983424 bytes, 62333952 sectors
Disk model: SD/MMC
Units: sectors of 1 * 512 = 512 bytes
Sector size (logical/physical): 512 bytes / 512 bytes
I/O size (minimum/optimal): 512 bytes / 512 bytes
Disklabel type: dos
Disk identifier: 0x8a438930

Device     Boot   Start      End  Sectors  Size Id Type
/dev/sda1          8192   532479   524288  256M  c W95 FAT32 (LBA)
/dev/sda2        532480 62333951 61801472 29.5G 83 Linux
"""


@pytest.fixture
def fdisk_output_after_resize() -> Callable[[int], str]:
    """Build `fdisk -l` output whose root partition ends at a given sector."""

    def build(end_sector: int) -> str:
        sectors = end_sector - 532480 + 1
        return f"""Disk /dev/sda: 29.72 GiB, 31914983424 bytes, 62333952 sectors
Units: sectors of 1 * 512 = 512 bytes

Device     Boot   Start      End  Sectors  Size Id Type
/dev/sda1          8192   532479   524288  256M  c W95 FAT32 (LBA)
/dev/sda2        532480 {end_sector} {sectors}  3.8G 83 Linux
"""

    return build


@pytest.fixture
def sd_card_device() -> Dict[str, Any]:
    """lsblk entry of a Raspberry Pi card in a USB reader."""
    return {
        "name": "sda",
        "path": "/dev/sda",
        "type": "disk",
        "size": 31914983424,
        "model": "SD/MMC",
        "vendor": "Generic ",
        "tran": "usb",
        "rm": True,
        "mountpoint": None,
        "fstype": None,
        "label": None,
        "children": [
            {
                "name": "sda1",
                "path": "/dev/sda1",
                "type": "part",
                "size": 268435456,
                "mountpoint": "/media/pi/bootfs",
                "fstype": "vfat",
                "label": "bootfs",
            },
            {
                "name": "sda2",
                "path": "/dev/sda2",
                "type": "part",
                "size": 31642222592,
                "mountpoint": "/media/pi/rootfs",
                "fstype": "ext4",
                "label": "rootfs",
            },
        ],
    }


@pytest.fixture
def system_disk() -> Dict[str, Any]:
    """lsblk entry of the disk the host itself runs from."""
    return {
        "name": "mmcblk0",
        "path": "/dev/mmcblk0",
        "type": "disk",
        "size": 31914983424,
        "rm": False,
        "tran": None,
        "mountpoint": None,
        "children": [
            {
                "name": "mmcblk0p1",
                "path": "/dev/mmcblk0p1",
                "type": "part",
                "mountpoint": "/boot/firmware",
                "fstype": "vfat",
            },
            {
                "name": "mmcblk0p2",
                "path": "/dev/mmcblk0p2",
                "type": "part",
                "mountpoint": "/",
                "fstype": "ext4",
            },
        ],
    }


@pytest.fixture
def lsblk_output(sd_card_device, system_disk) -> str:
    return json.dumps({"blockdevices": [system_disk, sd_card_device]})


# ==============================================================================
# Domain Fixtures
# ==============================================================================


@pytest.fixture
def device_handle() -> DeviceHandle:
    return DeviceHandle(
        path="/dev/sda", boot_partition="/dev/sda1", root_partition="/dev/sda2"
    )


@pytest.fixture
def resize_plan() -> ResizePlan:
    return ResizePlan(end_sector=8532479, sector_size=512)


# ==============================================================================
# Subprocess Mock Fixtures
# ==============================================================================


@pytest.fixture
def completed() -> Callable[..., subprocess.CompletedProcess]:
    """Factory for CompletedProcess results returned by a faked run_command."""

    def build(returncode: int = 0, stdout: str = "", stderr: str = ""):
        return subprocess.CompletedProcess(
            args=[], returncode=returncode, stdout=stdout, stderr=stderr
        )

    return build


# ==============================================================================
# File System Fixtures
# ==============================================================================


@pytest.fixture
def root_tree(tmp_path):
    """A minimal Raspberry Pi OS root filesystem laid out under tmp_path/root."""
    root = tmp_path / "root"
    (root / "etc" / "init.d").mkdir(parents=True)
    (root / "usr" / "lib" / "raspi-config").mkdir(parents=True)
    (root / "usr" / "lib" / "raspi-config" / "init_resize.sh").write_text("#!/bin/sh\n")
    (root / "etc" / "hostname").write_text("raspberrypi\n")
    (root / "etc" / "hosts").write_text(
        "127.0.0.1\tlocalhost\n::1\t\tlocalhost ip6-localhost\n127.0.1.1\traspberrypi\n"
    )
    return root


@pytest.fixture
def boot_tree(tmp_path):
    """Boot partition holding cmdline.txt."""
    boot = tmp_path / "boot"
    boot.mkdir()
    (boot / "cmdline.txt").write_text(
        "console=serial0,115200 console=tty1 root=PARTUUID=8a438930-02 "
        "rootfstype=ext4 fsck.repair=yes rootwait\n"
    )
    return boot


# ==============================================================================
# Settings Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def default_settings():
    """Run every test against the built-in defaults, not the operator's file."""
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    yield settings.settings_store
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
