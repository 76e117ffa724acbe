"""Run external tools, raising RuntimeError with their output on failure."""

from __future__ import annotations

import re
import select
import subprocess
import time
from typing import Callable, Optional

from growclone.logging import EventLogger, LoggerFactory, ThrottledLogger
from growclone.storage.devices import human_size

log = LoggerFactory.for_system()

# dd: "<n> bytes (...) copied, <t> s, <r> MB/s"
_BYTES_PATTERN = re.compile(r"(\d+)\s+bytes")

ProgressCallback = Callable[[int, Optional[float]], None]


def format_eta(seconds):
    """Format ETA in HH:MM:SS or MM:SS format."""
    if seconds is None or seconds < 0:
        return None
    hours, remainder = divmod(int(seconds), 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours:d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def _failure(command, stdout: str, stderr: str) -> RuntimeError:
    detail = stderr.strip() or stdout.strip() or "Command failed"
    return RuntimeError(f"Command failed ({' '.join(command)}): {detail}")


def run_checked_command(command, input_text=None):
    """Run a command to completion and return its stdout."""
    log.debug(f"Running command: {' '.join(command)}")
    result = subprocess.run(command, input=input_text, text=True, capture_output=True)
    if result.returncode != 0:
        raise _failure(command, result.stdout, result.stderr)
    return result.stdout


def _bytes_copied(line: str) -> Optional[int]:
    match = _BYTES_PATTERN.search(line)
    return int(match.group(1)) if match else None


def run_checked_with_streaming_progress(
    command,
    total_bytes: Optional[int] = None,
    title: str = "copy",
    progress_callback: Optional[ProgressCallback] = None,
    refresh_interval: float = 1.0,
):
    """Run a command, streaming its stderr and logging throttled progress.

    Every stderr line carrying a byte count updates the progress log and,
    when given, ``progress_callback(bytes_copied, ratio)``; ratio is None
    without ``total_bytes``.
    """
    progress_log = ThrottledLogger(LoggerFactory.for_progress(title), interval_seconds=5.0)
    log.debug(f"Running command: {' '.join(command)}")
    process = subprocess.Popen(
        command,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
    )
    started = time.monotonic()
    captured: list[str] = []

    def report(bytes_copied: int) -> None:
        ratio = None
        if total_bytes:
            ratio = max(0.0, min(1.0, bytes_copied / total_bytes))
        elapsed = time.monotonic() - started
        rate = bytes_copied / elapsed if elapsed > 0 else 0.0
        message = f"{title}: {human_size(bytes_copied)}"
        if ratio is not None:
            message += f" ({ratio * 100:.1f}%)"
            if rate > 0 and bytes_copied <= total_bytes:
                message += f" ETA {format_eta((total_bytes - bytes_copied) / rate)}"
        progress_log.info(title, message)
        EventLogger.log_copy_progress(
            LoggerFactory.for_progress(title),
            (ratio or 0.0) * 100,
            bytes_copied,
            rate / (1024 * 1024),
        )
        if progress_callback:
            progress_callback(bytes_copied, ratio)

    while True:
        ready, _, _ = select.select([process.stderr], [], [], refresh_interval)
        line = process.stderr.readline() if ready else None
        if line:
            captured.append(line)
            bytes_copied = _bytes_copied(line)
            if bytes_copied is not None:
                report(bytes_copied)
        if process.poll() is not None and not line:
            break

    if process.stderr:
        captured.append(process.stderr.read() or "")
    stdout_data = process.stdout.read() if process.stdout else ""
    process.wait()
    stderr_output = "".join(captured)
    if process.returncode != 0:
        raise _failure(command, stdout_data, stderr_output)
    log.debug(f"Command finished: {' '.join(command)}")
    return subprocess.CompletedProcess(
        command, process.returncode, stdout=stdout_data, stderr=stderr_output
    )
