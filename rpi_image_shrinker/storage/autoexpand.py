"""First-boot auto-expansion of the root filesystem.

Raspberry Pi OS grows the root partition on first boot when the kernel command
line carries ``init=/usr/lib/raspi-config/init_resize.sh``. That only grows the
partition, so a one-shot init script resizes the filesystem afterwards and then
removes its own runlevel link and itself.

Files touched:
    boot:  cmdline.txt (appended to, never rewritten)
    root:  etc/init.d/resize2fs_once
           etc/rc3.d/S01resize2fs_once -> ../init.d/resize2fs_once
"""
from __future__ import annotations

import os
import re
import stat
from pathlib import Path

from rpi_image_shrinker.config.settings import DEFAULT_INIT_RESIZE_PATH
from rpi_image_shrinker.logging import LoggerFactory

from .exceptions import AutoExpandFailed

SCRIPT_NAME = "resize2fs_once"
TRIGGER_NAME = f"S01{SCRIPT_NAME}"
TRIGGER_RUNLEVEL = "3"
CMDLINE_NAME = "cmdline.txt"

RESIZE_SCRIPT = """#!/bin/sh
### BEGIN INIT INFO
# Provides:          resize2fs_once
# Required-Start:
# Required-Stop:
# Default-Start: 3
# Default-Stop:
# Short-Description: Resize the root filesystem to fill partition
# Description:
### END INIT INFO
. /lib/lsb/init-functions
case "$1" in
  start)
    log_daemon_msg "Starting resize2fs_once"
    ROOT_DEV=$(findmnt / -o source -n) &&
    resize2fs "$ROOT_DEV" &&
    update-rc.d resize2fs_once remove &&
    rm /etc/init.d/resize2fs_once &&
    log_end_msg $?
    ;;
  *)
    echo "Usage: $0 start" >&2
    exit 3
    ;;
esac
"""

_INIT_OVERRIDE_RE = re.compile(r"(^|\s)init=")

log = LoggerFactory.for_system()


def has_init_override(cmdline: str) -> bool:
    return bool(_INIT_OVERRIDE_RE.search(cmdline))


def add_init_override(cmdline: str, init_path: str = DEFAULT_INIT_RESIZE_PATH) -> str:
    """Append an init= override unless the command line already carries one."""
    if has_init_override(cmdline):
        return cmdline
    return f"{cmdline.rstrip()} init={init_path}\n"


def install_resize_script(root_dir: Path) -> Path:
    script_path = root_dir / "etc" / "init.d" / SCRIPT_NAME
    script_path.parent.mkdir(parents=True, exist_ok=True)
    script_path.write_text(RESIZE_SCRIPT, encoding="utf-8")
    script_path.chmod(
        stat.S_IRWXU | stat.S_IRGRP | stat.S_IXGRP | stat.S_IROTH | stat.S_IXOTH
    )
    log.debug(f"Wrote {script_path}")
    return script_path


def install_boot_trigger(root_dir: Path) -> Path:
    link_path = root_dir / "etc" / f"rc{TRIGGER_RUNLEVEL}.d" / TRIGGER_NAME
    link_path.parent.mkdir(parents=True, exist_ok=True)
    if not link_path.is_symlink():
        os.symlink(os.path.join("..", "init.d", SCRIPT_NAME), link_path)
        log.debug(f"Created {link_path}")
    return link_path


def update_cmdline(boot_dir: Path, init_path: str = DEFAULT_INIT_RESIZE_PATH) -> bool:
    """Add the init override to cmdline.txt. Returns True if the file changed."""
    cmdline_path = boot_dir / CMDLINE_NAME
    cmdline = cmdline_path.read_text(encoding="utf-8")
    new_cmdline = add_init_override(cmdline, init_path)
    if new_cmdline == cmdline:
        log.info(f"{cmdline_path} already has an init= override, leaving it alone")
        return False
    log.debug(f"previous cmdline: {cmdline!r}")
    log.debug(f"new cmdline:      {new_cmdline!r}")
    cmdline_path.write_text(new_cmdline, encoding="utf-8")
    return True


def install_auto_expand(
    boot_dir: Path, root_dir: Path, init_path: str = DEFAULT_INIT_RESIZE_PATH
) -> bool:
    """Install first-boot expansion on mounted boot and root partitions.

    Returns False, after a warning, when the distribution's resize helper or the
    boot partition's cmdline.txt is missing; the image is still valid, it just
    will not grow on first boot. Nothing is written in that case.

    Raises:
        AutoExpandFailed: A file could not be written to either partition
    """
    helper = root_dir / init_path.lstrip("/")
    if not helper.exists():
        log.warning(
            f"{init_path} not found on the root filesystem, "
            "skipping auto-expand setup"
        )
        return False
    cmdline_path = boot_dir / CMDLINE_NAME
    if not cmdline_path.is_file():
        log.warning(
            f"{CMDLINE_NAME} not found on the boot partition, "
            "skipping auto-expand setup"
        )
        return False
    try:
        install_resize_script(root_dir)
        install_boot_trigger(root_dir)
        update_cmdline(boot_dir, init_path)
    except OSError as error:
        raise AutoExpandFailed(
            f"Could not install auto-expand: {error}", path=error.filename
        ) from error
    log.info("Auto-expand on first boot installed")
    return True
