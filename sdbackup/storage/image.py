"""Sparse image file creation, growth and companion paths."""

from __future__ import annotations

import contextlib
from datetime import datetime
from pathlib import Path
from typing import Optional

from sdbackup.domain.models import Image
from sdbackup.logging import LoggerFactory
from sdbackup.storage.commands import run_checked_command
from sdbackup.storage.exceptions import CreationFailedError, ValidationError


log = LoggerFactory.for_image()

MIB = 1024 * 1024
LOG_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


def query_source_geometry(device: str) -> tuple[int, int]:
    """Return (sector count, sector size) of the source block device."""
    sectors = run_checked_command(["blockdev", "--getsz", device]).output()
    sector_size = run_checked_command(["blockdev", "--getss", device]).output()
    try:
        return int(sectors), int(sector_size)
    except ValueError:
        raise ValidationError(
            f"Cannot read the size of {device}: blockdev reported "
            f"{sectors!r} sectors of {sector_size!r} bytes"
        ) from None


def create_image(path: Path, size_blocks: int, block_size: int) -> Image:
    """Allocate a sparse image of ``size_blocks * block_size`` bytes.

    dd writes nothing (count=0) and only seeks, so the file keeps its
    apparent size without consuming storage. The caller is responsible for
    choosing a size large enough for the data being backed up.

    Raises:
        CreationFailedError: If the file is missing or empty afterwards
    """
    with contextlib.suppress(FileNotFoundError):
        path.unlink()
    log.info(
        f"Creating sparse {path} with an apparent size of "
        f"{size_blocks * block_size // MIB} MiB"
    )
    run_checked_command(
        [
            "dd",
            "if=/dev/zero",
            f"of={path}",
            f"bs={block_size}",
            "count=0",
            f"seek={size_blocks}",
        ]
    )
    if not path.is_file() or path.stat().st_size == 0:
        raise CreationFailedError(str(path))
    return Image(path=path, size_blocks=size_blocks, block_size=block_size)


def grow_image(path: Path, increment: str) -> None:
    """Grow the image file in place, keeping the new space sparse."""
    log.info(f"Growing {path} by {increment}")
    run_checked_command(["truncate", f"--size={increment}", str(path)])


def companion_log_path(
    path: Path, explicit: Optional[Path] = None, now: Optional[datetime] = None
) -> Path:
    """Return the sync log path: explicit wins, else ``<image>-<timestamp>.log``."""
    if explicit is not None:
        return explicit
    stamp = (now or datetime.now()).strftime(LOG_TIMESTAMP_FORMAT)
    return path.with_name(f"{path.name}-{stamp}.log")


def default_mount_dir(path: Path, mount_root: Path) -> Path:
    """Default mount directory ``<mount_root>/<image file name>``."""
    return mount_root / path.name
