"""Loguru configuration for growclone runs.

Console output goes to stderr so stdout stays free for the plan report and
the ``--calc-only`` answer. File sinks keep a record of every destructive run:

- ``operations.log``: state transitions, plan summary and each step (INFO+)
- ``debug.log``: every external command and its output (``--debug``/``--trace``)
- ``structured.jsonl``: serialized records for later analysis
"""

from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

from loguru import logger

if TYPE_CHECKING:
    from loguru import Logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "GROWCLONE_LOG_DIR",
        Path.home() / ".local" / "state" / "growclone" / "logs",
    )
)

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> "
    "<level>{level: <8}</level> "
    "<cyan>[{extra[source]}]</cyan> {message}"
)
FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} {level: <8} "
    "[{extra[source]}] [{extra[job_id]}] {message}"
)


def _should_log_progress(record) -> bool:
    """Copy progress lines are only interesting on the console in DEBUG mode."""
    if "progress" not in record["extra"].get("tags", []):
        return True
    return record["level"].no >= logger.level("DEBUG").no


def _file_sinks(log_dir: Path, debug: bool, trace: bool) -> list[tuple[Path, dict[str, Any]]]:
    sinks = [
        (
            log_dir / "operations.log",
            {"level": "INFO", "rotation": "5 MB", "retention": "7 days"},
        ),
        (
            log_dir / "structured.jsonl",
            {
                "level": "INFO",
                "rotation": "10 MB",
                "retention": "7 days",
                "serialize": True,
                "format": "{message}",
            },
        ),
    ]
    if debug or trace:
        sinks.append(
            (
                log_dir / "debug.log",
                {
                    "level": "TRACE" if trace else "DEBUG",
                    "rotation": "10 MB",
                    "retention": "3 days",
                    "backtrace": True,
                    "diagnose": True,
                    "format": FILE_FORMAT + " {extra[tags]}",
                },
            )
        )
    return sinks


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
    file_logging: bool = True,
) -> Logger:
    """
    Replace loguru's default handler with the growclone sinks.

    Args:
        debug: Show DEBUG records (external commands) on the console
        trace: Show TRACE records as well
        log_dir: Directory for the log files (default ~/.local/state/growclone/logs)
        file_logging: False keeps everything on stderr, as --calc-only does
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "growclone"})

    console_level = "TRACE" if trace else "DEBUG" if debug else "INFO"
    logger.add(
        sys.stderr,
        level=console_level,
        format=CONSOLE_FORMAT,
        filter=_should_log_progress,
        colorize=True,
        backtrace=False,
        diagnose=False,
    )
    if not file_logging:
        return logger

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    for path, options in _file_sinks(log_dir, debug, trace):
        options.setdefault("format", FILE_FORMAT)
        options.setdefault("backtrace", False)
        options.setdefault("diagnose", False)
        logger.add(path, compression="zip", **options)
    return logger


@contextmanager
def operation_context(operation: str, **details):
    """Log start, completion or failure of a long step, with its duration.

    The yielded logger carries a fresh job id, and records emitted by other
    loggers inside the block are contextualized with it too.
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"
    log = logger.bind(source=operation, job_id=job_id, tags=[operation])
    started = time.monotonic()

    def elapsed() -> float:
        return round(time.monotonic() - started, 2)

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        log.info(f"{operation} started", **details)
        try:
            yield log
        except Exception as error:
            log.error(
                f"{operation} failed",
                error=str(error),
                error_type=type(error).__name__,
                duration_seconds=elapsed(),
            )
            raise
        log.success(f"{operation} completed", duration_seconds=elapsed())


class LoggerFactory:
    """Bound loggers for each part of a run."""

    @staticmethod
    def for_estimate() -> Logger:
        return logger.bind(source="estimate", tags=["estimate", "ntfs"])

    @staticmethod
    def for_plan() -> Logger:
        return logger.bind(source="plan", tags=["plan"])

    @staticmethod
    def for_clone(job_id: str | None = None, **details) -> Logger:
        """Logger for one orchestrated run; a job id is generated when omitted."""
        return logger.bind(
            job_id=job_id or f"clone-{uuid.uuid4().hex[:8]}",
            source="clone",
            tags=["clone", "storage"],
            **details,
        )

    @staticmethod
    def for_progress(job_id: str | None = None) -> Logger:
        return logger.bind(source="progress", job_id=job_id or "-", tags=["progress"])

    @staticmethod
    def for_system() -> Logger:
        """Device queries and external commands."""
        return logger.bind(source="system", tags=["system"])


class ThrottledLogger:
    """Emit at most one record per key every ``interval_seconds``.

    dd prints a progress line several times a second; only some of them are
    worth keeping.
    """

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        self.log = log
        self.interval = interval_seconds
        self._last_emitted: dict[str, float] = {}

    def debug(self, key: str, message: str, **kwargs) -> None:
        self._emit(self.log.debug, key, message, **kwargs)

    def info(self, key: str, message: str, **kwargs) -> None:
        self._emit(self.log.info, key, message, **kwargs)

    def _emit(self, method, key: str, message: str, **kwargs) -> None:
        now = time.monotonic()
        last = self._last_emitted.get(key)
        if last is not None and now - last < self.interval:
            return
        self._last_emitted[key] = now
        method(message, **kwargs)


class EventLogger:
    """Structured records with stable ``event_type`` names."""

    @staticmethod
    def log_state_transition(log: Logger, previous: str, current: str, **extra) -> None:
        log.info(
            f"State {previous} -> {current}",
            event_type="state_transition",
            previous_state=previous,
            state=current,
            **extra,
        )

    @staticmethod
    def log_plan_partition(
        log: Logger, number: int, start: int, end: int, role: str, **extra
    ) -> None:
        fields = dict(number=number, start_sector=start, end_sector=end, role=role)
        log.debug(
            f"Planned p{number}: {start}s - {end}s ({role})",
            event_type="plan_partition",
            **fields,
            **extra,
        )

    @staticmethod
    def log_copy_progress(
        log: Logger, percent: float, bytes_copied: int, speed_mbps: float, **extra
    ) -> None:
        fields = {
            "percent": round(percent, 2),
            "bytes_copied": bytes_copied,
            "speed_mbps": round(speed_mbps, 2),
        }
        log.debug("Copy progress", event_type="copy_progress", **fields, **extra)
