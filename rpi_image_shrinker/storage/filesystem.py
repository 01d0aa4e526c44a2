"""Root filesystem check, defragmentation and shrink-to-minimum.

The sequence is fixed: check (best-effort), defragment, check (mandatory),
shrink. Defragmenting first lets resize2fs reach a smaller minimum, and the
second check guarantees resize2fs never touches an inconsistent filesystem.

e2fsck exit codes:
    0  no errors
    1  errors corrected
    2  errors corrected, reboot advised
    4+ errors left uncorrected, operational or usage error

Only ext2/3/4 is handled, which is what resize2fs supports.
"""
from __future__ import annotations

from pathlib import Path

from rpi_image_shrinker.logging import LoggerFactory

from .command_runners import run_command
from .exceptions import FilesystemInconsistent, ResizeFailed
from .mount import mounted

E2FSCK_MAX_OK_CODE = 2
DEFRAG_MOUNT_NAME = "defrag"

log = LoggerFactory.for_shrink()


def check_filesystem(partition: str, *, mandatory: bool = True) -> bool:
    """Force a check of partition, repairing anything e2fsck can fix unattended.

    Returns True when the filesystem is consistent afterwards. A failure of a
    mandatory check raises FilesystemInconsistent; a failure of a best-effort
    check is logged and reported as False.
    """
    result = run_command(["e2fsck", "-f", "-y", partition])
    if result.returncode <= E2FSCK_MAX_OK_CODE:
        if result.returncode:
            log.info(f"e2fsck repaired {partition} (exit code {result.returncode})")
        else:
            log.debug(f"e2fsck found {partition} clean")
        return True
    if not mandatory:
        log.warning(
            f"Initial e2fsck of {partition} exited with {result.returncode}, continuing"
        )
        return False
    raise FilesystemInconsistent(
        partition, result.returncode, (result.stderr or result.stdout).strip()
    )


def defragment_filesystem(partition: str, workspace: Path) -> None:
    """Defragment partition. e4defrag needs it mounted, so mount it for the duration."""
    with mounted(partition, workspace / DEFRAG_MOUNT_NAME) as mount_point:
        result = run_command(["e4defrag", str(mount_point)])
    if result.returncode != 0:
        message = (result.stderr or result.stdout).strip() or "e4defrag failed"
        raise ResizeFailed(
            f"Defragmentation of {partition} failed: {message}", device=partition
        )
    log.info(f"Defragmented {partition}")


def shrink_to_minimum(partition: str) -> None:
    result = run_command(["resize2fs", "-M", partition])
    if result.returncode != 0:
        message = (result.stderr or result.stdout).strip() or "resize2fs failed"
        raise ResizeFailed(
            f"Shrinking filesystem on {partition} failed: {message}", device=partition
        )
    log.info(f"Shrunk filesystem on {partition} to its minimum size")


def shrink_filesystem(partition: str, workspace: Path) -> None:
    """Run the full check, defragment, check, shrink sequence on partition."""
    check_filesystem(partition, mandatory=False)
    defragment_filesystem(partition, workspace)
    check_filesystem(partition, mandatory=True)
    shrink_to_minimum(partition)
