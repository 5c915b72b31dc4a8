"""Loop device resolution, attach and detach.

The loop device slot space is global to the host. This module asks the host
which device already holds an image (``losetup -j``) and which device is the
next free one (``losetup -f``), then attaches to that device in a separate
step. Another process can take the free device in between; :func:`attach`
detects that and raises :class:`AttachmentError` instead of binding to a
device owned by someone else. Replacing :func:`next_free_device` and
:func:`attach` with ``losetup --find --show`` would close the window where
the host supports it.

Resolution rules:
    - ``umount`` and ``check`` operate on the existing binding and fail with
      NoBindingError when there is none.
    - Every other command needs an unattached image and fails with
      AlreadyAttachedError when a binding exists.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import psutil

from sdbackup.domain.models import Binding, Command
from sdbackup.logging import LoggerFactory
from sdbackup.storage.commands import run_checked_command, run_command
from sdbackup.storage.exceptions import (
    AlreadyAttachedError,
    AttachmentError,
    NoBindingError,
)


log = LoggerFactory.for_attach()


def list_bindings(image: Path) -> list[str]:
    """Return the loop devices currently associated with ``image``."""
    result = run_checked_command(["losetup", "-j", str(image)])
    devices = []
    for line in result.stdout.splitlines():
        device = line.split(":", 1)[0].strip()
        if device:
            devices.append(device)
    return devices


def next_free_device() -> str:
    """Return the first unused loop device offered by the host."""
    return run_checked_command(["losetup", "-f"]).output()


def find_mountpoint(device: str) -> Optional[str]:
    """Best-effort lookup of where ``device`` or its partitions are mounted."""
    try:
        partitions = psutil.disk_partitions(all=True)
    except OSError as error:
        log.debug(f"Mount table lookup failed: {error}")
        return None
    for partition in partitions:
        if partition.device == device or partition.device.startswith(f"{device}p"):
            return partition.mountpoint
    return None


def resolve_binding(image: Path, command: Command) -> Binding:
    """Pick the loop device ``command`` should use for ``image``.

    Raises:
        NoBindingError: ``command`` needs an existing binding and there is none
        AlreadyAttachedError: ``command`` needs a fresh binding but one exists
    """
    existing = list_bindings(image)
    if command.reuses_binding:
        if not existing:
            raise NoBindingError(str(image))
        log.debug(f"Reusing {existing[0]} attached to {image}")
        return Binding(device=existing[0], image=image)
    if existing:
        device = existing[0]
        raise AlreadyAttachedError(str(image), device, find_mountpoint(device))
    device = next_free_device()
    log.debug(f"Next free loop device for {image} is {device}")
    return Binding(device=device, image=image)


def is_attached(binding: Binding) -> bool:
    return binding.device in list_bindings(binding.image)


def is_device_free(device: str) -> bool:
    """True when no image is bound to ``device``; losetup fails for unused devices."""
    return not run_command(["losetup", device], log_output=False).ok


def attach(binding: Binding) -> None:
    """Bind the image to its resolved loop device."""
    if not is_device_free(binding.device):
        raise AttachmentError(binding.device, str(binding.image))
    log.info(f"Attaching {binding.image} to {binding.device}")
    run_checked_command(["losetup", binding.device, str(binding.image)])


def expose_partitions(binding: Binding) -> None:
    """Ask the kernel to create partition sub-devices for the binding."""
    run_checked_command(["partx", "--update", binding.device])


def hide_partitions(binding: Binding) -> None:
    result = run_command(["partx", "--delete", binding.device])
    if not result.ok:
        log.debug(f"partx --delete {binding.device} returned {result.returncode}")


def detach(binding: Binding) -> None:
    """Remove partition sub-devices and release the loop device."""
    log.info(f"Detaching {binding.image} from {binding.device}")
    hide_partitions(binding)
    run_checked_command(["losetup", "-d", binding.device])
