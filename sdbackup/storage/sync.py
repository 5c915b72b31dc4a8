"""rsync of the running system into the mounted image."""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence

from sdbackup.logging import LoggerFactory
from sdbackup.storage.commands import CommandResult, run_streaming_command
from sdbackup.storage.mount import is_mountpoint


log = LoggerFactory.for_sync()
output_log = LoggerFactory.for_output("sync")

# archive, executability, xattrs, verbose, one filesystem
RSYNC_OPTIONS = ("-aEXvx", "--del", "--stats")

# Pseudo filesystems, caches, swap and container state are never copied.
SYNC_EXCLUDES = (
    ".gvfs/**",
    "tmp/**",
    "proc/**",
    "run/**",
    "sys/**",
    "mnt/**",
    "lost+found/**",
    "var/swap",
    "home/*/.cache/**",
    "var/cache/apt/archives/**",
    "var/lib/docker/",
    "var/lib/containerd/",
)

# rsync: "some files vanished before they could be transferred"
RSYNC_VANISHED = 24


def build_rsync_command(
    source: Path,
    destination: Path,
    excludes: Sequence[str] = SYNC_EXCLUDES,
    log_path: Optional[Path] = None,
) -> list[str]:
    command = ["rsync", *RSYNC_OPTIONS]
    if log_path is not None:
        command.extend(["--log-file", str(log_path)])
    command.extend(f"--exclude={pattern}" for pattern in excludes)
    # trailing slashes copy directory contents, not the directory itself
    command.extend([f"{str(source).rstrip('/')}/", f"{str(destination).rstrip('/')}/"])
    return command


def run_sync(
    destination: Path,
    source: Path = Path("/"),
    log_path: Optional[Path] = None,
    excludes: Sequence[str] = SYNC_EXCLUDES,
) -> Optional[CommandResult]:
    """Mirror ``source`` into ``destination``.

    Returns None without copying anything when ``destination`` is not a
    mount point, so an unmounted image never receives files on the host's
    root filesystem.
    """
    if not is_mountpoint(destination):
        log.warning(f"Skipping rsync since {destination} is not a mount point")
        return None
    log.info(f"Starting rsync backup of {source} to {destination}")
    result = run_streaming_command(
        build_rsync_command(source, destination, excludes, log_path),
        on_line=output_log.trace,
        accept_codes=(0, RSYNC_VANISHED),
    )
    if result.returncode == RSYNC_VANISHED:
        log.warning("Some files vanished during the transfer; the live system changed")
    for line in result.stdout.splitlines():
        if line.startswith(("Number of", "Total", "sent ", "total size")):
            log.info(line)
    return result
