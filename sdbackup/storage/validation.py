"""Eager precondition checks run before any mutating step.

All validation functions raise specific exceptions from the exceptions module
rather than returning boolean values, so a failed check ends the command
before an image is created, attached or mounted.

Example:
    from sdbackup.storage.validation import validate_image_presence

    try:
        validate_image_presence(Command.UMOUNT, image, create=False)
    except ImageMissingError:
        # Report and exit
        pass
"""

import os
from pathlib import Path
from typing import Callable, Optional

from sdbackup.domain.models import Command, Image
from sdbackup.storage.commands import require_programs
from sdbackup.storage.exceptions import (
    CompressedExistsError,
    DirectoryExistsError,
    ImageMissingError,
    PrivilegeError,
    ValidationError,
)


BASE_PROGRAMS = (
    "blockdev",
    "dd",
    "losetup",
    "parted",
    "sfdisk",
    "fdisk",
    "partx",
    "blkid",
    "mkfs.ext4",
    "e2fsck",
    "tune2fs",
    "mountpoint",
    "rsync",
)
RESIZE_PROGRAMS = ("truncate", "resize2fs")
COMPRESSION_PROGRAMS = ("pv", "gzip")

# e2fsck, tune2fs and resize2fs only handle the ext family
EXT_FILESYSTEMS = ("ext2", "ext3", "ext4")


def validate_privileges(geteuid: Optional[Callable[[], int]] = None) -> None:
    """Raise PrivilegeError unless running as root."""
    if (geteuid or os.geteuid)() != 0:
        raise PrivilegeError()


def validate_image_presence(command: Command, image: Image, create: bool) -> None:
    """The image must exist, except for start/mount when creation is allowed."""
    if image.exists():
        return
    if command.may_create:
        if not create:
            raise ImageMissingError(str(image), creatable=True)
        return
    raise ImageMissingError(str(image))


def validate_compression_target(image: Image, force: bool) -> None:
    """Refuse to overwrite a non-empty ``<image>.gz`` unless forced."""
    compressed = image.compressed_path
    if compressed.is_file() and compressed.stat().st_size > 0 and not force:
        raise CompressedExistsError(str(compressed))


def validate_filesystem(filesystem: str) -> None:
    if filesystem not in EXT_FILESYSTEMS:
        raise ValidationError(
            f"Unsupported filesystem type: {filesystem} "
            f"(expected one of {', '.join(EXT_FILESYSTEMS)})"
        )


def validate_mount_dir(command: Command, mount_dir: Path, user_supplied: bool) -> None:
    """Check the mount directory against the command's expectations.

    - a user-supplied directory must exist
    - umount needs the (default) directory to exist
    - commands that mount need the default directory to be absent
    """
    if not command.uses_mount_dir:
        return
    if user_supplied:
        if not mount_dir.is_dir():
            raise ValidationError(f"Mount point {mount_dir} does not exist")
        return
    if command is Command.UMOUNT:
        if not mount_dir.is_dir():
            raise ValidationError(f"Default mount point {mount_dir} does not exist")
        return
    if mount_dir.exists():
        raise DirectoryExistsError(str(mount_dir))


def required_programs(command: Command, compress: bool = False) -> list[str]:
    programs = list(BASE_PROGRAMS)
    if command is Command.RESIZE:
        programs.extend(RESIZE_PROGRAMS)
    if compress or command is Command.GZIP:
        programs.extend(COMPRESSION_PROGRAMS)
    return programs


def validate_dependencies(command: Command, compress: bool = False) -> None:
    """Raise DependencyMissingError for the first program not installed."""
    require_programs(required_programs(command, compress))
