"""Compression of the finished image."""

from __future__ import annotations

import shutil
from pathlib import Path

from rpi_image_shrinker.logging import LoggerFactory

from .command_runners import run_command
from .exceptions import CompressionFailed

COMPRESSION_SUFFIXES = {
    "xz": ".xz",
    "gzip": ".gz",
    "zip": ".zip",
}

log = LoggerFactory.for_imaging()


def archive_path(path: Path, method: str) -> Path:
    """Return the archive path that compressing path with method produces.

    zip replaces the image suffix; xz and gzip append to it.
    """
    try:
        suffix = COMPRESSION_SUFFIXES[method]
    except KeyError:
        raise ValueError(f"Unsupported compression method: {method}") from None
    if method == "zip":
        return path.with_suffix(suffix)
    return Path(f"{path}{suffix}")


def build_compress_command(path: Path, method: str) -> tuple[list[str], Path]:
    """Return the compressor command line and the archive it will produce."""
    archive = archive_path(path, method)
    if method == "xz":
        return ["xz", "-T0", "-9", "--force", str(path)], archive
    if method == "gzip":
        return ["gzip", "-9", "--force", str(path)], archive
    return ["zip", "-9", "-j", str(archive), str(path)], archive


def compress_image(path: Path, method: str) -> Path:
    """Compress path in place and return the archive path.

    xz and gzip replace the input file; zip leaves it for the caller to remove.
    """
    command, archive = build_compress_command(path, method)
    if not shutil.which(command[0]):
        raise CompressionFailed(f"{command[0]} not found", path=str(path))
    log.info(f"Compressing {path} with {method}")
    result = run_command(command)
    if result.returncode != 0:
        message = (result.stderr or result.stdout).strip() or f"{method} failed"
        raise CompressionFailed(
            f"Compressing {path} failed: {message}", path=str(path)
        )
    log.info(f"Archive written: {archive}")
    return archive
