from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "DEPLOYKIT_LOG_DIR",
        "/var/log/deploykit",
    )
)


def _should_log_websocket(record) -> bool:
    """Filter WebSocket connection/disconnection logs to reduce noise."""
    message = record["message"].lower()
    tags = record["extra"].get("tags", [])

    if record["level"].no >= logger.level("WARNING").no:
        return True

    if "ws" in tags or "websocket" in tags:
        if "connected" in message or "disconnected" in message:
            return record["level"].no >= logger.level("DEBUG").no

    return True


def _should_log_transfer(record) -> bool:
    """Filter per-file rsync chatter - only show in TRACE mode."""
    tags = record["extra"].get("tags", [])

    if "rsync" in tags and record["level"].no < logger.level("INFO").no:
        return record["level"].no <= logger.level("TRACE").no

    return True


def _combined_filter(record) -> bool:
    """Combined filter for all log suppression rules."""
    return _should_log_websocket(record) and _should_log_transfer(record)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: Install failures, cleanup failures
    - SUCCESS/INFO: Step transitions, disk operations, quirk selection
    - DEBUG: Command execution and captured output
    - TRACE: Ultra-verbose (rsync batches, every WebSocket message)

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - trace.log: TRACE+ events when --trace is enabled (1 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to /var/log/deploykit)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr) - operator-facing, filtered
    logger.add(
        sys.stderr,
        level=console_level,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "<blue>{extra[job_id]: <17}</blue> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log - Important events only (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <17} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log - Detailed diagnostics (DEBUG+ when debug=True)
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <17} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Trace Log - Ultra-verbose (TRACE only, when trace=True)
    if trace:
        logger.add(
            log_dir / "trace.log",
            level="TRACE",
            rotation="50 MB",
            retention="1 day",
            compression="zip",
            enqueue=True,
            backtrace=False,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <17} | "
                "{message}"
            ),
        )

    # SINK 5: Structured JSON Log - For analysis tools (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["install", "disk"])
        source: Source component (e.g., "disk", "install", "web")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking disk operations with automatic timing.

    Logs operation start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "partition", "format", "mount")
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("partition", device="/dev/sda") as log:
            log.debug("Writing sfdisk script")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed",
                duration_seconds=round(duration, 2),
            )
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source, tags, and context for the domain.
    """

    @staticmethod
    def for_install(job_id: str | None = None, **details) -> Logger:
        """Logger for install pipeline runs."""
        if job_id is None:
            job_id = f"install-{uuid.uuid4().hex[:8]}"
        return logger.bind(
            job_id=job_id, source="install", tags=["install"], **details
        )

    @staticmethod
    def for_disk() -> Logger:
        """Logger for block device probing, partitioning and mounts."""
        return logger.bind(source="disk", tags=["disk", "storage"])

    @staticmethod
    def for_quirk() -> Logger:
        """Logger for quirk registry loading and lookups."""
        return logger.bind(source="quirk", tags=["quirk", "hardware"])

    @staticmethod
    def for_web(connection_id: str | None = None) -> Logger:
        """Logger for the frontend transport."""
        if connection_id is None:
            connection_id = "-"
        return logger.bind(
            source="web", tags=["web", "ws"], connection_id=connection_id
        )

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, shutdown, config)."""
        return logger.bind(source="system", tags=["system"])


class ThrottledLogger:
    """
    Logger wrapper that throttles high-frequency log events.

    Used for root filesystem population where every batch would otherwise
    produce a line.
    """

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        self.log = log
        self.interval = interval_seconds
        self.last_log_time: dict[str, float] = {}

    def debug(self, key: str, message: str, **kwargs) -> None:
        """Log at DEBUG level, throttled by key."""
        self._throttled_log("DEBUG", key, message, **kwargs)

    def info(self, key: str, message: str, **kwargs) -> None:
        """Log at INFO level, throttled by key."""
        self._throttled_log("INFO", key, message, **kwargs)

    def _throttled_log(self, level: str, key: str, message: str, **kwargs) -> None:
        now = time.time()
        last_time = self.last_log_time.get(key, 0)

        if now - last_time >= self.interval:
            log_method = getattr(self.log, level.lower())
            log_method(message, **kwargs)
            self.last_log_time[key] = now


class EventLogger:
    """
    Structured event logger using standardized schemas.

    Keeps step transitions and install results uniform in structured.jsonl.
    """

    @staticmethod
    def log_install_started(log: Logger, target: str, firmware: str, **extra) -> None:
        """Log install start."""
        log.info(
            "Install started",
            event_type="install_started",
            target=target,
            firmware_mode=firmware,
            **extra,
        )

    @staticmethod
    def log_step_changed(log: Logger, step: str, percentage: int, **extra) -> None:
        """Log a pipeline step transition."""
        log.info(
            f"Entering step {step}",
            event_type="step_changed",
            step=step,
            percentage=percentage,
            **extra,
        )

    @staticmethod
    def log_install_finished(
        log: Logger, outcome: str, duration_seconds: float, **extra
    ) -> None:
        """Log install terminal state."""
        method = log.success if outcome == "Finished" else log.warning
        method(
            f"Install ended: {outcome}",
            event_type="install_finished",
            outcome=outcome,
            duration_seconds=round(duration_seconds, 2),
            **extra,
        )
