"""Command execution utilities with progress tracking.

Tools run in their own session so a Ctrl-C on the terminal never reaches them,
and a KeyboardInterrupt raised in Python while a tool runs is held back until
the tool has exited. A resize or shrink is never stopped half way.

Tool output is parsed, so every tool runs under the C locale.
"""

import os
import re
import shutil
import subprocess
from typing import Callable, Iterable, Optional

from rpi_image_shrinker.logging import LoggerFactory, get_logger

from .exceptions import PreconditionUnmet


log = LoggerFactory.for_system()
_tool_log = get_logger(source="system", tags=["system", "tool-output"])

REQUIRED_TOOLS = (
    "e2fsck",
    "e4defrag",
    "resize2fs",
    "dumpe2fs",
    "fdisk",
    "parted",
    "partprobe",
    "sync",
    "dd",
    "mount",
    "umount",
    "lsblk",
)


def require_tools(tools: Iterable[str] = REQUIRED_TOOLS) -> dict[str, str]:
    """Resolve every tool on PATH, raising PreconditionUnmet if any is missing."""
    resolved: dict[str, str] = {}
    missing: list[str] = []
    for tool in tools:
        path = shutil.which(tool)
        if path:
            resolved[tool] = path
        else:
            missing.append(tool)
    if missing:
        raise PreconditionUnmet(missing)
    log.debug(f"All required tools present: {', '.join(resolved)}")
    return resolved


def tool_environment() -> dict[str, str]:
    env = os.environ.copy()
    env["LANG"] = "C"
    env["LC_ALL"] = "C"
    return env


def _communicate_to_completion(process, command, input_text):
    """Wait for process to exit even if the caller is interrupted meanwhile.

    Returns (stdout, stderr, interrupted).
    """
    interrupted = False
    while True:
        try:
            stdout, stderr = process.communicate(None if interrupted else input_text)
            return stdout, stderr, interrupted
        except KeyboardInterrupt:
            interrupted = True
            log.warning(f"Waiting for {command[0]} to finish before stopping")


def run_command(command, input_text=None):
    """Run a command and return the CompletedProcess without checking it.

    A KeyboardInterrupt received while the command runs is re-raised once the
    command has exited on its own.
    """
    log.debug(f"Running command: {' '.join(command)}")
    process = subprocess.Popen(
        command,
        stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        start_new_session=True,
        env=tool_environment(),
    )
    stdout, stderr, interrupted = _communicate_to_completion(
        process, command, input_text
    )
    if stdout:
        _tool_log.trace(f"stdout: {stdout.strip()}")
    if stderr:
        _tool_log.trace(f"stderr: {stderr.strip()}")
    log.debug(f"Command completed with return code {process.returncode}")
    if interrupted:
        raise KeyboardInterrupt
    return subprocess.CompletedProcess(
        command, process.returncode, stdout=stdout, stderr=stderr
    )


def parse_dd_progress(line: str) -> Optional[int]:
    """Return the byte count from a dd status=progress line, if any."""
    match = re.match(r"\s*(\d+)\s+bytes", line)
    if not match:
        return None
    return int(match.group(1))


def run_checked_with_streaming_progress(
    command,
    progress_callback: Optional[Callable[[int], None]] = None,
):
    """Run a command, reporting dd-style byte counts from stderr as they arrive.

    Text mode translates dd's carriage-return progress updates into lines. Only
    read-only copies run through here, so an interrupted copy is terminated and
    reaped rather than waited for.
    """
    log.debug(f"Running command: {' '.join(command)}")
    process = subprocess.Popen(
        command,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        start_new_session=True,
        env=tool_environment(),
    )
    stderr_lines = []
    try:
        for line in process.stderr:
            stderr_lines.append(line)
            _tool_log.trace(f"stderr: {line.strip()}")
            bytes_copied = parse_dd_progress(line)
            if bytes_copied is not None and progress_callback:
                progress_callback(bytes_copied)
        stdout_data = process.stdout.read() if process.stdout else ""
        process.wait()
    finally:
        if process.poll() is None:
            log.warning(f"Stopping {command[0]}")
            process.terminate()
            process.wait()
    stderr_output = "".join(stderr_lines)
    if process.returncode != 0:
        message = stderr_output.strip() or stdout_data.strip() or "Command failed"
        raise RuntimeError(f"Command failed ({' '.join(command)}): {message}")
    return subprocess.CompletedProcess(
        command, process.returncode, stdout=stdout_data, stderr=stderr_output
    )


__all__ = [
    "REQUIRED_TOOLS",
    "parse_dd_progress",
    "require_tools",
    "run_command",
    "run_checked_with_streaming_progress",
    "tool_environment",
]
