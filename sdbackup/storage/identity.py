"""Clone the source card's filesystem UUID and partition table id onto an image.

Boot loaders and ``/etc/fstab`` on the card refer to the root filesystem by
UUID and to the disk by PTUUID, so an image carrying both identifiers can be
written back to a card and boot without edits.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from sdbackup.logging import LoggerFactory
from sdbackup.storage.commands import run_checked_command, sync_filesystems
from sdbackup.storage.mount import MountSession


log = LoggerFactory.for_disk()

# e2fsck: 0 clean, 1 errors corrected, 2 corrected and reboot advised
FSCK_ACCEPT_CODES = (0, 1, 2)
DOS_DISK_ID = re.compile(r"^(0x)?[0-9a-fA-F]{8}$")


@dataclass(frozen=True)
class Identity:
    """Filesystem UUID and partition table UUID of a device."""

    fs_uuid: str
    ptuuid: str


def partition_node(device: str, number: int = 1) -> str:
    """Partition device node, e.g. /dev/sda -> /dev/sda1, /dev/mmcblk1 -> /dev/mmcblk1p1."""
    suffix = "p" if device[-1].isdigit() else ""
    return f"{device}{suffix}{number}"


def _blkid_value(tag: str, device: str) -> str:
    return run_checked_command(["blkid", "-s", tag, "-o", "value", device]).output()


def read_identity(device: str) -> Identity:
    """Read UUID of the first partition and PTUUID of ``device``."""
    return Identity(
        fs_uuid=_blkid_value("UUID", partition_node(device)),
        ptuuid=_blkid_value("PTUUID", device),
    )


def _disk_identifier(ptuuid: str) -> str:
    if DOS_DISK_ID.match(ptuuid) and not ptuuid.startswith("0x"):
        return f"0x{ptuuid}"
    return ptuuid


def _fdisk_disk_id_script(ptuuid: str) -> str:
    # expert mode, change disk identifier, return to main menu, write
    return "\n".join(["x", "i", _disk_identifier(ptuuid), "r", "w", ""])


def write_identity(session: MountSession, identity: Identity) -> None:
    binding = session.binding
    log.info(f"Checking {binding.partition} before changing its UUID")
    run_checked_command(
        ["e2fsck", "-f", "-y", binding.partition], accept_codes=FSCK_ACCEPT_CODES
    )
    log.info(f"Setting filesystem UUID of {binding.partition} to {identity.fs_uuid}")
    run_checked_command(["tune2fs", "-U", identity.fs_uuid, binding.partition])
    log.info(f"Setting partition table UUID of {binding.device} to {identity.ptuuid}")
    run_checked_command(
        ["fdisk", binding.device], input_text=_fdisk_disk_id_script(identity.ptuuid)
    )
    sync_filesystems()


def clone_identity(session: MountSession, source_device: str) -> Identity:
    """Copy the identity of ``source_device`` onto the session's image.

    Attaches the image when no binding holds it and always detaches it
    afterwards, so the image is left unattached on return.
    """
    identity = read_identity(source_device)
    log.debug(f"Source identity: UUID={identity.fs_uuid} PTUUID={identity.ptuuid}")
    session.ensure_attached()
    write_identity(session, identity)
    session.detach()
    return identity
