"""Partition, format and seed a freshly created image with the bootloader.

Layout of an initialized image:
    - MBR (msdos) partition table
    - bytes 1024..: SPL, first bootloader stage (1 KiB offset)
    - bytes 70656..: U-Boot, second bootloader stage (69 KiB offset)
    - partition 1 from 4 MiB to the end of the image, ext4

Sequence:
    1. attach the image
    2. write the partition table and the single primary partition
    3. expose the partition and create the filesystem
    4. write both bootloader stages to the raw loop device (synchronous writes)
    5. detach
    6. clone the source card's identity onto the image

A failure aborts the sequence. Partially partitioned images are not rolled
back; the next ``start -c`` on a removed image starts from scratch.

The bootloader stages are downloaded once into a local cache directory and
reused afterwards.
"""

from __future__ import annotations

import contextlib
from pathlib import Path

import requests

from sdbackup.domain.models import BootloaderLayout
from sdbackup.logging import LoggerFactory
from sdbackup.storage import loop
from sdbackup.storage.commands import run_checked_command
from sdbackup.storage.exceptions import BootloaderAssetMissingError
from sdbackup.storage.identity import FSCK_ACCEPT_CODES, clone_identity
from sdbackup.storage.mount import MountSession
from sdbackup.storage.validation import validate_filesystem


log = LoggerFactory.for_disk()

DOWNLOAD_CHUNK_SIZE = 64 * 1024

MKFS_COMMAND = ("mkfs.ext4", "-F", "-q")


def _download(url: str, destination: Path, timeout: int) -> None:
    partial = destination.with_name(f"{destination.name}.part")
    log.info(f"Downloading {url}")
    try:
        with requests.get(url, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            with partial.open("wb") as handle:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    handle.write(chunk)
        if partial.stat().st_size > 0:
            partial.replace(destination)
    finally:
        with contextlib.suppress(FileNotFoundError):
            partial.unlink()


def fetch_bootloader_assets(layout: BootloaderLayout) -> tuple[Path, Path]:
    """Return cached (SPL, U-Boot) paths, downloading missing ones first.

    Raises:
        BootloaderAssetMissingError: If a payload is still missing afterwards
    """
    layout.cache_dir.mkdir(parents=True, exist_ok=True)
    assets = ((layout.spl_url, layout.spl_path), (layout.uboot_url, layout.uboot_path))
    for url, path in assets:
        if path.is_file():
            log.debug(f"Using cached {path}")
            continue
        try:
            _download(url, path, layout.download_timeout)
        except (requests.RequestException, OSError) as error:
            raise BootloaderAssetMissingError(path.name, str(error)) from error
        if not path.is_file():
            raise BootloaderAssetMissingError(path.name, f"empty download from {url}")
    return layout.spl_path, layout.uboot_path


def _create_partition_table(device: str) -> None:
    log.info(f"Creating partitions on {device}")
    run_checked_command(["parted", "-s", device, "mktable", "msdos"])


def _create_partition(device: str, start: str, filesystem: str) -> None:
    run_checked_command(
        ["parted", "-s", device, "mkpart", "primary", filesystem, start, "100%"]
    )


def _format_filesystem(partition: str, filesystem: str) -> None:
    validate_filesystem(filesystem)
    command = list(MKFS_COMMAND)
    if filesystem != "ext4":
        command.extend(["-t", filesystem])
    log.info(f"Formatting {partition} as {filesystem}")
    run_checked_command([*command, partition])


def write_bootloader(device: str, payload: Path, offset_kib: int) -> None:
    """Write ``payload`` at ``offset_kib`` KiB from the start of the raw device."""
    log.info(f"Writing {payload.name} to {device} at {offset_kib * 1024} bytes")
    run_checked_command(
        [
            "dd",
            f"if={payload}",
            f"of={device}",
            "bs=1k",
            f"seek={offset_kib}",
            "oflag=sync",
        ]
    )


def initialize_disk(
    session: MountSession,
    layout: BootloaderLayout,
    source_device: str,
    partition_start: str = "4MiB",
    filesystem: str = "ext4",
) -> None:
    """Turn a freshly created, unattached image into a bootable disk image."""
    spl, uboot = fetch_bootloader_assets(layout)
    device = session.binding.device

    # a blank image has no partition table to expose yet
    session.attach(expose=False)
    _create_partition_table(device)
    _create_partition(device, partition_start, filesystem)
    log.debug(f"Re-scanning partitions on {device}")
    loop.expose_partitions(session.binding)
    _format_filesystem(session.binding.partition, filesystem)
    write_bootloader(device, spl, layout.spl_offset_kib)
    write_bootloader(device, uboot, layout.uboot_offset_kib)
    session.detach()

    clone_identity(session, source_device)


def resize_partition(session: MountSession) -> None:
    """Grow partition 1 and its filesystem to fill an enlarged image."""
    device = session.binding.device
    session.attach()
    log.info(f"Growing partition 1 of {device} to 100%")
    run_checked_command(["parted", "-s", device, "resizepart", "1", "100%"])
    loop.expose_partitions(session.binding)
    run_checked_command(
        ["e2fsck", "-f", "-y", session.binding.partition],
        accept_codes=FSCK_ACCEPT_CODES,
    )
    log.info(f"Growing filesystem on {session.binding.partition}")
    run_checked_command(["resize2fs", session.binding.partition])
    session.detach()
