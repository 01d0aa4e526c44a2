"""Per-run temporary working directory.

The pipeline owns exactly one working directory for its lifetime. It holds the
mount points and the raw image until compression, and is removed on every exit
path. Mount points still active at cleanup are unmounted first so removal never
descends into a mounted filesystem.
"""

from __future__ import annotations

import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

from rpi_image_shrinker.logging import LoggerFactory

from .mount import is_mounted, unmount_partition


log = LoggerFactory.for_system()

WORKSPACE_PREFIX = "rpi-image-shrinker-"


def _release_mounts(workspace: Path) -> None:
    for child in sorted(workspace.iterdir()):
        if child.is_dir() and is_mounted(child):
            log.warning(f"Releasing stale mount {child}")
            unmount_partition(child)


@contextmanager
def working_directory(
    parent: Optional[Union[str, Path]] = None,
) -> Iterator[Path]:
    """Create a private temporary directory and remove it when the block exits."""
    workspace = Path(tempfile.mkdtemp(prefix=WORKSPACE_PREFIX, dir=parent))
    log.debug(f"Created working directory {workspace}")
    try:
        yield workspace
    finally:
        if workspace.exists():
            _release_mounts(workspace)
            shutil.rmtree(workspace)
            log.debug(f"Removed working directory {workspace}")
