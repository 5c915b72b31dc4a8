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
        "SDBACKUP_LOG_DIR",
        Path.home() / ".local" / "state" / "sd-image-backup" / "logs",
    )
)

# Note: TRACE level already exists in loguru at level 5 (below DEBUG which is 10)


def _should_log_command_output(record) -> bool:
    """Keep raw subprocess chatter (rsync file lists, pv output) off INFO consoles."""
    tags = record["extra"].get("tags", [])
    if "output" in tags:
        return record["level"].no <= logger.level("DEBUG").no or (
            record["level"].no >= logger.level("WARNING").no
        )
    return True


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup console and file logging.

    Logging Tiers:
    - ERROR: user-visible failures, always followed by a non-zero exit
    - SUCCESS/INFO: lifecycle progress (attach, mount, sync, compress)
    - DEBUG: every external command line and its captured output
    - TRACE: per-line output of long-running tools (rsync, pv)

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug or --trace is enabled (3 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/sd-image-backup/logs)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr) - User-facing
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=_should_log_command_output,
        colorize=sys.stderr.isatty(),
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <8}</cyan> | "
            "<level>{message}</level>"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        logger.warning(f"File logging disabled, cannot create {log_dir}: {error}")
        return logger

    # SINK 2: Operations Log - Important events only (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        backtrace=False,
        diagnose=False,
        filter=_should_log_command_output,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <8} | "
            "{extra[job_id]: <16} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log - Detailed diagnostics (DEBUG+ when debug=True)
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <8} | "
                "{extra[job_id]: <16} | "
                "{extra[tags]} | "
                "{message}"
            ),
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
        tags: Tags for filtering (e.g., ["sync", "output"])
        source: Source component (e.g., "mount", "sync")

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
    Context manager for tracking lifecycle commands with automatic timing.

    Logs operation start, completion and failure with the elapsed duration.

    Args:
        operation: Operation name (e.g., "start", "gzip", "resize")
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("start", image="/backup/cubox.img") as log:
            log.info("Mounting image")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.debug(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed in {duration:.1f}s",
                duration_seconds=round(duration, 2),
            )
        except Exception as e:
            duration = time.time() - start_time
            log.debug(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating component loggers with automatic context.

    Each factory method returns a logger pre-configured with the source and
    tags of one lifecycle component.
    """

    @staticmethod
    def for_attach() -> Logger:
        """Logger for loop device resolution, attach and detach."""
        return logger.bind(source="loop", tags=["loop", "storage"])

    @staticmethod
    def for_image() -> Logger:
        """Logger for image file creation and growth."""
        return logger.bind(source="image", tags=["image", "storage"])

    @staticmethod
    def for_disk() -> Logger:
        """Logger for partitioning, formatting and identity cloning."""
        return logger.bind(source="disk", tags=["disk", "storage"])

    @staticmethod
    def for_mount() -> Logger:
        """Logger for mount and unmount operations."""
        return logger.bind(source="mount", tags=["mount", "storage"])

    @staticmethod
    def for_sync() -> Logger:
        """Logger for rsync runs."""
        return logger.bind(source="sync", tags=["sync"])

    @staticmethod
    def for_compress() -> Logger:
        """Logger for image compression."""
        return logger.bind(source="gzip", tags=["compress"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for startup, validation and signal handling."""
        return logger.bind(source="system", tags=["system"])

    @staticmethod
    def for_output(source: str) -> Logger:
        """Logger for raw line output of an external program."""
        return logger.bind(source=source, tags=[source, "output"])
