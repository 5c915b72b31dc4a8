"""Compress an image to ``<image>.gz`` through a temporary file.

The compressor writes to ``<image>.gz.tmp``. Only a complete, non-empty
temporary file replaces ``<image>.gz`` (atomic rename), so an existing
archive is never overwritten by a truncated or empty one.
"""

from __future__ import annotations

import contextlib
import os
from pathlib import Path
from typing import Callable, Optional

from sdbackup.domain.models import Image
from sdbackup.logging import LoggerFactory
from sdbackup.storage.commands import run_pipeline
from sdbackup.storage.exceptions import BackupError, CompressionFailedError


log = LoggerFactory.for_compress()

PV_COMMAND = ("pv", "-tpreb")
GZIP_COMMAND = ("gzip", "-c")


def has_partial_output(image: Image) -> bool:
    """True when a non-empty temporary archive is on disk."""
    temp = image.temp_compressed_path
    return temp.is_file() and temp.stat().st_size > 0


def discard_partial_output(image: Image) -> bool:
    """Remove the temporary archive; return True if it held data."""
    had_data = has_partial_output(image)
    with contextlib.suppress(FileNotFoundError):
        image.temp_compressed_path.unlink()
        log.info(f"Removed incomplete {image.temp_compressed_path}")
    return had_data


def _check_cancelled(image: Image, check_cancelled: Optional[Callable[[], None]]) -> None:
    if check_cancelled is None:
        return
    try:
        check_cancelled()
    except BackupError:
        discard_partial_output(image)
        raise


def compress_image(
    image: Image,
    delete_source: bool = False,
    check_cancelled: Optional[Callable[[], None]] = None,
) -> Path:
    """Stream the image through gzip and promote the result atomically.

    ``check_cancelled`` is called once the pipeline returns and again before
    the source is deleted. Raising before promotion removes the temporary
    archive and leaves an existing archive in place; raising afterwards keeps
    the source image.

    Raises:
        CompressionFailedError: If pv or gzip fail or nothing was written
    """
    temp = image.temp_compressed_path
    final = image.compressed_path
    log.info(f"Compressing {image.path} to {final}")
    with temp.open("wb") as output:
        reader, compressor = run_pipeline(
            [*PV_COMMAND, str(image.path)], GZIP_COMMAND, output
        )
    _check_cancelled(image, check_cancelled)
    if not reader.ok or not compressor.ok:
        discard_partial_output(image)
        raise CompressionFailedError(
            str(image.path),
            f"pv exited {reader.returncode}, gzip exited {compressor.returncode}",
        )
    if not has_partial_output(image):
        discard_partial_output(image)
        raise CompressionFailedError(str(image.path), "compressor produced no output")
    os.replace(temp, final)
    log.info(f"Compressed image written to {final}")
    if delete_source:
        _check_cancelled(image, check_cancelled)
        log.info(f"Deleting {image.path}")
        image.path.unlink()
    return final
