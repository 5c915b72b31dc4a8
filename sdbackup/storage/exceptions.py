"""Custom exceptions for image backup operations.

This module defines a hierarchy of exceptions so the dispatcher can report
every failure with a specific message and a single exit status.

Exception Hierarchy:
    BackupError (base)
        ├── ValidationError
        │   ├── ImageMissingError
        │   ├── CompressedExistsError
        │   ├── DirectoryExistsError
        │   ├── AlreadyAttachedError
        │   └── NoBindingError
        ├── PrivilegeError
        ├── DependencyMissingError
        ├── CommandFailedError
        ├── AttachmentError
        ├── CreationFailedError
        ├── BootloaderAssetMissingError
        ├── CompressionFailedError
        └── OperationInterruptedError

Usage:
    from sdbackup.storage.exceptions import NoBindingError

    if not bindings:
        raise NoBindingError(image)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from sdbackup.storage.commands import CommandResult


class BackupError(Exception):
    """Base exception for all backup operations."""


class ValidationError(BackupError):
    """Bad arguments or a precondition that does not hold."""


class ImageMissingError(ValidationError):
    """The image file does not exist and creation was not requested."""

    def __init__(self, image: str, creatable: bool = False):
        self.image = image
        msg = f"{image} does not exist"
        if creatable:
            msg += "\nUse -c to allow creation"
        super().__init__(msg)


class CompressedExistsError(ValidationError):
    """The compressed companion exists and overwriting was not forced."""

    def __init__(self, compressed: str):
        self.compressed = compressed
        super().__init__(f"{compressed} already exists\nUse -f to force overwriting")


class DirectoryExistsError(ValidationError):
    """A default mount directory already exists before mounting."""

    def __init__(self, directory: str):
        self.directory = directory
        super().__init__(f"Default mount point {directory} already exists")


class AlreadyAttachedError(ValidationError):
    """The image is already bound to a loop device."""

    def __init__(self, image: str, device: str, mountpoint: Optional[str] = None):
        self.image = image
        self.device = device
        self.mountpoint = mountpoint
        msg = f"{image} already attached to {device}"
        if mountpoint:
            msg += f" mounted on {mountpoint}"
        super().__init__(msg)


class NoBindingError(ValidationError):
    """No loop device is attached to the image."""

    def __init__(self, image: str):
        self.image = image
        super().__init__(f"No loop device attached to {image}")


class PrivilegeError(BackupError):
    """Not running with root privileges."""

    def __init__(self):
        super().__init__("Please run as root. Try sudo.")


class DependencyMissingError(BackupError):
    """A required external program is not installed."""

    def __init__(self, program: str):
        self.program = program
        super().__init__(f"Required program {program} is not installed")


class CommandFailedError(BackupError):
    """An external program exited with a failure status."""

    def __init__(self, result: CommandResult):
        self.result = result
        message = result.stderr.strip() or result.stdout.strip() or "Command failed"
        super().__init__(
            f"Command failed ({' '.join(result.command)}, "
            f"rc={result.returncode}): {message}"
        )


class AttachmentError(BackupError):
    """The resolved loop device was taken by someone else before attaching."""

    def __init__(self, device: str, image: str):
        self.device = device
        self.image = image
        super().__init__(
            f"Cannot attach {image}: {device} is no longer free, run the command again"
        )


class CreationFailedError(BackupError):
    """The sparse image file was not created or has zero size."""

    def __init__(self, image: str):
        self.image = image
        super().__init__(f"{image} was not created or has zero size")


class BootloaderAssetMissingError(BackupError):
    """A bootloader payload is missing after the download attempt."""

    def __init__(self, asset: str, reason: str = ""):
        self.asset = asset
        self.reason = reason
        msg = f"Bootloader payload {asset} not found"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class CompressionFailedError(BackupError):
    """The compressor produced no output or failed."""

    def __init__(self, image: str, reason: str = ""):
        self.image = image
        self.reason = reason
        msg = f"Compression of {image} failed"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class OperationInterruptedError(BackupError):
    """The operator cancelled the run with SIGINT or SIGTERM."""

    def __init__(self, message: str = "SD Image backup process interrupted"):
        super().__init__(message)
