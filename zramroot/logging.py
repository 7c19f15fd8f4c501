from __future__ import annotations

import contextlib
import sys
import time
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, TextIO

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_KMSG_PATH = Path("/dev/kmsg")
LOG_FILE_PREFIX = "zramroot"

# Sink id of the log file on physical storage, if attached
_physical_sink_id: int | None = None
_physical_log_path: Path | None = None


def _kmsg_filter(debug: bool):
    threshold = "DEBUG" if debug else "WARNING"

    def _filter(record) -> bool:
        return record["level"].no >= logger.level(threshold).no

    return _filter


def _make_kmsg_sink(kmsg_path: Path):
    """Build a sink mirroring records into the kernel log buffer."""

    def _kmsg_sink(message) -> None:
        record = message.record
        line = f"zramroot: {record['level'].name}: {record['message']}\n"
        # The kernel log is a mirror only; a missing /dev/kmsg must not break boot
        with contextlib.suppress(OSError):
            with open(kmsg_path, "w", encoding="utf-8") as kmsg:
                kmsg.write(line)

    return _kmsg_sink


def setup_logging(
    *,
    debug: bool = False,
    kmsg_path: Path | None = DEFAULT_KMSG_PATH,
    console: TextIO | None = None,
) -> Logger:
    """
    Setup boot-time logging sinks.

    Logging Tiers:
    - ERROR/WARNING: failures that send the boot back to the physical root
    - SUCCESS/INFO: stage transitions, sizes, devices
    - DEBUG: command execution, per-unit copy detail

    Sinks:
    - console (stderr): INFO+, DEBUG+ with debug enabled
    - kernel log (/dev/kmsg): WARNING+, everything with debug enabled
    - physical log file: attached later with attach_physical_log(), since the
      physical root is not mounted yet at this point

    Args:
        debug: Enable DEBUG level logging
        kmsg_path: Kernel log device, None disables the mirror
        console: Stream for the console sink (defaults to sys.stderr)
    """
    global _physical_sink_id, _physical_log_path
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "zramroot"})
    _physical_sink_id = None
    _physical_log_path = None

    console_level = "DEBUG" if debug else "INFO"

    # SINK 1: Console - what the user sees during boot
    logger.add(
        console or sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        colorize=False,
        format=(
            "{time:HH:mm:ss} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <15} | "
            "{message}"
        ),
    )

    # SINK 2: Kernel log buffer mirror
    if kmsg_path is not None:
        logger.add(
            _make_kmsg_sink(kmsg_path),
            level="DEBUG",
            filter=_kmsg_filter(debug),
            format="{message}",
        )

    return logger


def attach_physical_log(
    log_dir: Path,
    *,
    debug: bool = False,
    timestamp: datetime | None = None,
) -> Path | None:
    """
    Attach a log file on physical storage.

    Errors are always written; INFO and DEBUG lines only with debug enabled.
    The file must never live on the RAM device, which may itself be the
    point of failure.

    Args:
        log_dir: Directory on the physical root (or dedicated log device)
        debug: Also persist INFO/DEBUG lines
        timestamp: Time used for the file name (defaults to now)

    Returns:
        Path of the log file, or None if the directory is not writable
    """
    global _physical_sink_id, _physical_log_path
    detach_physical_log()

    stamp = (timestamp or datetime.now()).strftime("%Y%m%d-%H%M%S")
    log_path = Path(log_dir) / f"{LOG_FILE_PREFIX}-{stamp}.log"
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.touch()
    except OSError as error:
        logger.warning(f"Cannot create physical log file {log_path}: {error}")
        return None

    _physical_sink_id = logger.add(
        log_path,
        level="DEBUG" if debug else "ERROR",
        backtrace=debug,
        diagnose=False,
        format="{time:YYYY-MM-DD HH:mm:ss} ZRAMROOT {level}: {message}",
    )
    _physical_log_path = log_path
    return log_path


def detach_physical_log() -> None:
    """Flush and close the physical log file before its filesystem goes away."""
    global _physical_sink_id, _physical_log_path
    if _physical_sink_id is None:
        return
    logger.complete()
    with contextlib.suppress(ValueError):
        logger.remove(_physical_sink_id)
    _physical_sink_id = None
    _physical_log_path = None


def physical_log_path() -> Path | None:
    return _physical_log_path


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
        tags: Tags for filtering (e.g., ["copy", "storage"])
        source: Source component (e.g., "resolver", "copy")

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
    Context manager for tracking a boot stage with automatic timing.

    Logs stage start, completion, and failure with duration.

    Args:
        operation: Stage name (e.g., "resolve", "copy", "format")
        **details: Stage-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("format", device="/dev/zram0") as log:
            log.debug("Running mkfs.ext4")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started")

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed",
                duration_seconds=round(duration, 2),
            )
        except Exception as e:
            duration = time.time() - start_time
            # error text may contain braces, keep it out of str.format
            log.bind(
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            ).error(f"{operation.capitalize()} failed: {e}")
            raise


class LoggerFactory:
    """
    Factory for creating component loggers with automatic context.

    Each factory method returns a logger pre-configured with the
    component's source and tags.
    """

    @staticmethod
    def for_resolver() -> Logger:
        """Logger for root device resolution."""
        return logger.bind(source="resolver", tags=["resolver", "storage"])

    @staticmethod
    def for_planner() -> Logger:
        """Logger for RAM device capacity planning."""
        return logger.bind(source="planner", tags=["planner"])

    @staticmethod
    def for_zram() -> Logger:
        """Logger for RAM block device provisioning."""
        return logger.bind(source="zram", tags=["zram", "storage"])

    @staticmethod
    def for_format() -> Logger:
        return logger.bind(source="format", tags=["format", "storage"])

    @staticmethod
    def for_mount() -> Logger:
        return logger.bind(source="mount", tags=["mount", "storage"])

    @staticmethod
    def for_copy(job_id: str | None = None) -> Logger:
        """Logger for the migration copy."""
        if job_id is None:
            job_id = f"copy-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="copy", tags=["copy", "storage"])

    @staticmethod
    def for_fstab() -> Logger:
        return logger.bind(source="fstab", tags=["fstab"])

    @staticmethod
    def for_boot() -> Logger:
        """Logger for the boot state machine and handoff."""
        return logger.bind(source="boot", tags=["boot"])


class EventLogger:
    """
    Structured event logger using standardized schemas.

    Provides methods for logging common events with consistent
    structure and fields.
    """

    @staticmethod
    def log_stage_transition(log: Logger, previous: str, current: str, **extra) -> None:
        log.bind(
            event_type="stage_transition",
            previous_stage=previous,
            current_stage=current,
            **extra,
        ).debug(f"Stage {previous} -> {current}")

    @staticmethod
    def log_copy_progress(
        log: Logger, percent: int, active_workers: int, total_workers: int, **extra
    ) -> None:
        """Log copy progress update."""
        log.bind(
            event_type="copy_progress",
            percent=percent,
            active_workers=active_workers,
            total_workers=total_workers,
            **extra,
        ).debug(f"Copy progress {percent}% ({active_workers}/{total_workers} workers)")

    @staticmethod
    def log_unit_failed(log: Logger, unit: str, attempts: int, exit_code: int, **extra) -> None:
        log.bind(
            event_type="unit_failed",
            unit=unit,
            attempts=attempts,
            exit_code=exit_code,
            **extra,
        ).error(f"FAILED after {attempts} attempts: {unit} (exit code: {exit_code})")

    @staticmethod
    def log_operation_metric(
        log: Logger, operation: str, metric_name: str, value: float, unit: str = "", **extra
    ) -> None:
        """Log operation performance metric."""
        log.bind(
            event_type="operation_metric",
            operation=operation,
            metric=metric_name,
            value=round(value, 2),
            unit=unit,
            **extra,
        ).info(f"{operation} metric: {metric_name}={round(value, 2)}{unit}")
