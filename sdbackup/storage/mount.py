"""Mount lifecycle of an image's first partition.

A :class:`MountSession` owns one binding and one mount directory for the
duration of a command and records what it has done (attached, mounted,
created the directory) so that the orchestrator can tear down exactly that
state after a failure or an interrupt.

Mount directory rules:
    - A default directory (``/mnt/<image name>``) is created right before
      mounting and removed right after unmounting.
    - A user-supplied directory must already exist and is never created or
      removed.
"""

from __future__ import annotations

from pathlib import Path
from typing import NamedTuple, Optional

import psutil

from sdbackup.domain.models import Binding
from sdbackup.logging import LoggerFactory
from sdbackup.storage import loop
from sdbackup.storage.commands import run_checked_command, run_command, sync_filesystems
from sdbackup.storage.exceptions import BackupError, DirectoryExistsError


log = LoggerFactory.for_mount()

MIB = 1024 * 1024


class DiskUsage(NamedTuple):
    total_mib: int
    used_mib: int
    free_mib: int
    percent: float


def is_mountpoint(path: Path) -> bool:
    return run_command(["mountpoint", "-q", str(path)], log_command=False).ok


class MountSession:
    """Attach/mount/unmount/detach bookkeeping for one binding."""

    def __init__(
        self,
        binding: Binding,
        mount_dir: Path,
        user_supplied: bool = False,
        attached: bool = False,
    ):
        self.binding = binding
        self.mount_dir = mount_dir
        self.user_supplied = user_supplied
        self.attached = attached
        self.mounted = False

    @property
    def active(self) -> bool:
        return self.attached or self.mounted

    def attach(self, expose: bool = True) -> None:
        loop.attach(self.binding)
        self.attached = True
        if expose:
            loop.expose_partitions(self.binding)

    def ensure_attached(self) -> None:
        """Attach unless the binding already holds the image."""
        if self.attached or loop.is_attached(self.binding):
            self.attached = True
            return
        self.attach()

    def detach(self) -> None:
        loop.detach(self.binding)
        self.attached = False

    def mount(self) -> None:
        self.ensure_attached()
        if not self.user_supplied:
            try:
                self.mount_dir.mkdir(parents=True)
            except FileExistsError as error:
                raise DirectoryExistsError(str(self.mount_dir)) from error
        log.info(f"Mounting {self.binding.partition} to {self.mount_dir}")
        try:
            run_checked_command(["mount", self.binding.partition, str(self.mount_dir)])
        except BackupError:
            if not self.user_supplied:
                self.mount_dir.rmdir()
            raise
        self.mounted = True

    def unmount_filesystem(self) -> None:
        """Flush and unmount, removing a default mount directory afterwards."""
        log.info("Flushing to disk")
        sync_filesystems(passes=2)
        if self.mounted or is_mountpoint(self.mount_dir):
            log.info(f"Unmounting {self.binding.partition} from {self.mount_dir}")
            run_checked_command(["umount", str(self.mount_dir)])
        else:
            log.debug(f"{self.mount_dir} is not a mount point")
        self.mounted = False
        if not self.user_supplied and self.mount_dir.is_dir():
            self.mount_dir.rmdir()

    def unmount(self) -> None:
        self.unmount_filesystem()
        self.detach()

    def teardown(self) -> None:
        """Best-effort unmount and detach after a failure; never raises."""
        if self.mounted or (self.attached and self.mount_dir.is_dir()):
            try:
                self.unmount_filesystem()
            except (BackupError, OSError) as error:
                log.error(f"Unmounting {self.mount_dir} failed: {error}")
        if self.attached:
            try:
                self.detach()
            except BackupError as error:
                log.error(f"Detaching {self.binding.device} failed: {error}")

    def usage(self) -> Optional[DiskUsage]:
        """Allocation of the mounted partition in MiB, None when not mounted."""
        if not is_mountpoint(self.mount_dir):
            return None
        usage = psutil.disk_usage(str(self.mount_dir))
        return DiskUsage(
            total_mib=usage.total // MIB,
            used_mib=usage.used // MIB,
            free_mib=usage.free // MIB,
            percent=usage.percent,
        )
