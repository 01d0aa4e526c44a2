"""Pre-imaging cleanup of the root filesystem.

Removes shell history, logs, package caches and temporary files so they are
neither shipped nor counted towards the minimum filesystem size, optionally
renames the host, and zero-fills free blocks so the image compresses well.
"""
from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import Iterable

from rpi_image_shrinker.config.settings import DEFAULT_SANITIZE_PATHS
from rpi_image_shrinker.logging import LoggerFactory

from .command_runners import run_command

HOSTNAME_RE = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")

log = LoggerFactory.for_system()


def _is_inside(path: Path, root_dir: Path) -> bool:
    try:
        path.parent.resolve().relative_to(root_dir.resolve())
    except ValueError:
        return False
    return True


def _remove(entry: Path, *, files_only: bool) -> bool:
    if entry.is_symlink() or entry.is_file():
        entry.unlink()
        return True
    if entry.is_dir() and not files_only:
        shutil.rmtree(entry)
        return True
    return False


def sanitize_root(
    root_dir: Path, patterns: Iterable[str] = DEFAULT_SANITIZE_PATHS
) -> int:
    """Delete entries matching patterns (globs relative to root_dir).

    Recursive ``**`` patterns only remove files so directory layouts such as
    var/log survive for the services that write into them. Returns the number
    of removed entries.
    """
    removed = 0
    for pattern in patterns:
        files_only = "**" in pattern
        # Deepest first so files go before the directories holding them
        matches = sorted(root_dir.glob(pattern.lstrip("/")), reverse=True)
        for entry in matches:
            if not _is_inside(entry, root_dir):
                log.warning(f"Skipping {entry}, it resolves outside {root_dir}")
                continue
            if _remove(entry, files_only=files_only):
                removed += 1
                log.trace(f"Removed {entry}")
    log.info(f"Sanitized root filesystem, removed {removed} entries")
    return removed


def set_hostname(root_dir: Path, hostname: str) -> None:
    """Rewrite etc/hostname and the 127.0.1.1 entry of etc/hosts."""
    if not HOSTNAME_RE.match(hostname):
        raise ValueError(f"Invalid hostname: {hostname!r}")
    etc = root_dir / "etc"
    hostname_path = etc / "hostname"
    old_hostname = ""
    if hostname_path.exists():
        old_hostname = hostname_path.read_text(encoding="utf-8").strip()
    hostname_path.write_text(f"{hostname}\n", encoding="utf-8")

    hosts_path = etc / "hosts"
    lines = []
    if hosts_path.exists():
        lines = hosts_path.read_text(encoding="utf-8").splitlines()
    replaced = False
    for index, line in enumerate(lines):
        if line.split()[:1] == ["127.0.1.1"]:
            lines[index] = f"127.0.1.1\t{hostname}"
            replaced = True
    if not replaced:
        lines.append(f"127.0.1.1\t{hostname}")
    hosts_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    log.info(f"Hostname changed from {old_hostname or '(unset)'} to {hostname}")


def zero_free_space(partition: str) -> bool:
    """Zero free blocks of an unmounted ext partition. Returns False if skipped."""
    if not shutil.which("zerofree"):
        log.warning("zerofree not installed, compressed image will be larger")
        return False
    result = run_command(["zerofree", partition])
    if result.returncode != 0:
        log.warning(
            f"zerofree {partition} failed ({result.stderr.strip()}), "
            "compressed image will be larger"
        )
        return False
    log.info(f"Zeroed free blocks on {partition}")
    return True
