"""Domain model for image backup operations.

Type-safe objects passed explicitly between the dispatcher, the orchestrator
and the storage components instead of process-wide variables.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional


# ==============================================================================
# Commands
# ==============================================================================


class Command(Enum):
    """Commands accepted on the command line."""

    START = "start"
    MOUNT = "mount"
    UMOUNT = "umount"
    CHECK = "check"
    RESIZE = "resize"
    GZIP = "gzip"
    CLONEID = "cloneid"
    SHOWDF = "showdf"
    VERSION = "version"

    @property
    def reuses_binding(self) -> bool:
        """True when the command operates on an already attached image."""
        return self in (Command.UMOUNT, Command.CHECK)

    @property
    def may_create(self) -> bool:
        return self in (Command.START, Command.MOUNT)

    @property
    def uses_mount_dir(self) -> bool:
        """True when the command mounts or unmounts at the mount directory."""
        return self in (Command.START, Command.MOUNT, Command.UMOUNT, Command.SHOWDF)


class State(Enum):
    """Lifecycle states of one orchestrated command."""

    IDLE = "idle"
    VALIDATING = "validating"
    ATTACHING = "attaching"
    INITIALIZING = "initializing"
    MOUNTED = "mounted"
    SYNCING = "syncing"
    UNMOUNTING = "unmounting"
    COMPRESSING = "compressing"
    DONE = "done"
    ABORTED = "aborted"


# ==============================================================================
# Image and Binding
# ==============================================================================


@dataclass(frozen=True)
class Binding:
    """A loop device exposing an image file as a partitioned block device."""

    device: str  # e.g., "/dev/loop0"
    image: Path

    @property
    def partition(self) -> str:
        """Device node of the first partition (e.g., /dev/loop0p1)."""
        return f"{self.device}p1"

    def __str__(self) -> str:
        return self.device


@dataclass(frozen=True)
class Image:
    """A sparse disk image file on persistent storage."""

    path: Path
    size_blocks: Optional[int] = None
    block_size: Optional[int] = None

    @property
    def compressed_path(self) -> Path:
        """Final compressed companion: ``<image>.gz``."""
        return self.path.with_name(f"{self.path.name}.gz")

    @property
    def temp_compressed_path(self) -> Path:
        """Temporary compressor output promoted to :attr:`compressed_path`."""
        return self.path.with_name(f"{self.path.name}.gz.tmp")

    @property
    def apparent_size(self) -> Optional[int]:
        if self.size_blocks is None or self.block_size is None:
            return None
        return self.size_blocks * self.block_size

    def exists(self) -> bool:
        return self.path.is_file()

    def __str__(self) -> str:
        return str(self.path)


# ==============================================================================
# Invocation configuration
# ==============================================================================


@dataclass(frozen=True)
class BootloaderLayout:
    """Where the two bootloader stages come from and where they are written."""

    cache_dir: Path
    spl_url: str
    uboot_url: str
    spl_offset_kib: int = 1
    uboot_offset_kib: int = 69
    download_timeout: int = 60

    @property
    def spl_path(self) -> Path:
        return self.cache_dir / self.spl_url.rsplit("/", 1)[-1]

    @property
    def uboot_path(self) -> Path:
        return self.cache_dir / self.uboot_url.rsplit("/", 1)[-1]


@dataclass(frozen=True)
class BackupConfig:
    """Everything one invocation needs, built once after validation."""

    command: Command
    image: Image
    source_device: str
    mount_dir: Path
    mount_dir_user_supplied: bool = False
    create: bool = False
    compress: bool = False
    delete_source: bool = False
    force: bool = False
    log_enabled: bool = False
    log_path: Optional[Path] = None
    binding: Optional[Binding] = None
    bootloader: Optional[BootloaderLayout] = None
    partition_start: str = "4MiB"
    filesystem: str = "ext4"
    resize_increment: str = "+1G"

    @property
    def wants_creation(self) -> bool:
        """True when the image is missing and the command may create it."""
        return self.create and self.command.may_create and not self.image.exists()

    @property
    def wants_compression(self) -> bool:
        return self.command is Command.GZIP or (
            self.compress and self.command is Command.START
        )
