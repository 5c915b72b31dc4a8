"""Command line entry point.

Parses the command and its options, validates every precondition before
anything is mutated, builds one :class:`BackupConfig` and hands it to the
orchestrator. Any :class:`BackupError` ends the process with exit status 1.
"""

import argparse
import sys
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from sdbackup.__version__ import __version__
from sdbackup.config import settings
from sdbackup.domain.models import BackupConfig, BootloaderLayout, Command, Image
from sdbackup.logging import LoggerFactory, setup_logging
from sdbackup.orchestrator import execute
from sdbackup.storage import image as image_store
from sdbackup.storage.exceptions import BackupError, ValidationError
from sdbackup.storage.loop import resolve_binding
from sdbackup.storage.validation import (
    validate_compression_target,
    validate_dependencies,
    validate_filesystem,
    validate_image_presence,
    validate_mount_dir,
    validate_privileges,
)


log = LoggerFactory.for_system()

PROG = "sd-image-backup"

EPILOG = f"""\
examples:
  {PROG} start -c /path/to/imx6_backup.img
      back up to imx6_backup.img, creating it if it does not exist

  {PROG} start -c -s 8000 /path/to/imx6_backup.img
      create the image with a size of 8000 MiB; the size must hold all data

  {PROG} start -cz /path/to/$(uname -n)-$(date +%Y-%m-%d).img
      create if needed, back up, then compress to <image>.gz

  {PROG} mount /path/to/$(uname -n).img /mnt/cubox_image
      mount the image in /mnt/cubox_image

  {PROG} umount /path/to/$(uname -n).img
      unmount the image from its default mount point /mnt/<image name>/
"""


class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that reports usage errors as ValidationError."""

    def error(self, message):
        raise ValidationError(f"{message}\nSee '{PROG} --help' for usage")


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid size: {value!r}") from None
    if number <= 0:
        raise argparse.ArgumentTypeError(f"size must be positive: {value!r}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog=PROG,
        description="Incremental live backup of an SD card to a sparse disk image.",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Also show raw tool output")
    commands = parser.add_subparsers(dest="command", metavar="command", required=True)

    def add_image(subparser):
        subparser.add_argument("image", type=Path, help="SD image file")

    def add_source(subparser):
        subparser.add_argument(
            "-i",
            dest="source",
            metavar="sdcard",
            help=f"SD card location (default: {settings.get_setting('source_device')})",
        )

    def add_creation(subparser):
        subparser.add_argument(
            "-c", dest="create", action="store_true",
            help="create the SD image if it does not exist",
        )
        subparser.add_argument(
            "-s", dest="size", metavar="MB", type=_positive_int,
            help="size of a created image in MiB (default: size of the SD card)",
        )
        add_source(subparser)

    def add_compression(subparser):
        subparser.add_argument(
            "-d", dest="delete_source", action="store_true",
            help="delete the SD image after successful compression",
        )
        subparser.add_argument(
            "-f", dest="force", action="store_true",
            help="overwrite <image>.gz if it exists",
        )

    start = commands.add_parser("start", help="back up the SD card to the image")
    add_creation(start)
    start.add_argument(
        "-z", dest="compress", action="store_true",
        help="compress the image to <image>.gz after the backup",
    )
    add_compression(start)
    start.add_argument(
        "-l", dest="log", action="store_true",
        help="write the rsync log to <image>-YYYYmmddHHMMSS.log",
    )
    start.add_argument(
        "-L", dest="log_file", metavar="logfile", type=Path,
        help="write the rsync log to logfile",
    )
    add_image(start)

    mount = commands.add_parser("mount", help="mount the image (default: /mnt/<image>/)")
    add_creation(mount)
    add_image(mount)
    mount.add_argument("mountdir", nargs="?", type=Path, help="existing mount point")

    umount = commands.add_parser("umount", help="unmount the image")
    add_image(umount)
    umount.add_argument("mountdir", nargs="?", type=Path, help="mount point used")

    add_image(commands.add_parser("check", help="filesystem check of the image"))
    add_image(commands.add_parser("resize", help="grow the image by 1 GiB"))

    gzip = commands.add_parser("gzip", help="compress the image to <image>.gz")
    add_compression(gzip)
    add_image(gzip)

    cloneid = commands.add_parser(
        "cloneid", help="clone UUID/PTUUID of the SD card onto the image"
    )
    add_source(cloneid)
    add_image(cloneid)

    add_image(commands.add_parser("showdf", help="show allocation of the image"))
    commands.add_parser("version", help="show version")
    return parser


def _bootloader_layout() -> BootloaderLayout:
    return BootloaderLayout(
        cache_dir=Path(settings.get_setting("bootloader_dir")).expanduser(),
        spl_url=settings.get_setting("spl_url"),
        uboot_url=settings.get_setting("uboot_url"),
        spl_offset_kib=settings.get_int("spl_offset_kib", 1),
        uboot_offset_kib=settings.get_int("uboot_offset_kib", 69),
        download_timeout=settings.get_int("download_timeout_seconds", 60),
    )


def build_config(
    args: argparse.Namespace,
    now: Optional[datetime] = None,
    geteuid: Optional[Callable[[], int]] = None,
) -> BackupConfig:
    """Validate ``args`` against the host and build the invocation config.

    Nothing is created, attached or mounted here.
    """
    command = Command(args.command)
    validate_privileges(geteuid)

    create = getattr(args, "create", False)
    compress = getattr(args, "compress", False)
    force = getattr(args, "force", False)
    validate_dependencies(command, compress)
    filesystem = settings.get_setting("filesystem")
    validate_filesystem(filesystem)

    path = args.image.absolute()
    image = Image(path=path)
    validate_image_presence(command, image, create)
    if compress or command is Command.GZIP:
        validate_compression_target(image, force)

    source_device = getattr(args, "source", None) or settings.get_setting("source_device")
    if create and command.may_create and not image.exists():
        if getattr(args, "size", None):
            image = Image(path, args.size, image_store.MIB)
        else:
            sectors, sector_size = image_store.query_source_geometry(source_device)
            image = Image(path, sectors, sector_size)

    log_file = getattr(args, "log_file", None)
    log_enabled = getattr(args, "log", False) or log_file is not None
    log_path = (
        image_store.companion_log_path(path, explicit=log_file, now=now)
        if log_enabled
        else None
    )

    binding = resolve_binding(path, command)

    mount_dir_arg = getattr(args, "mountdir", None)
    user_supplied = mount_dir_arg is not None
    if user_supplied:
        mount_dir = mount_dir_arg.absolute()
    else:
        mount_root = Path(settings.get_setting("mount_root"))
        mount_dir = image_store.default_mount_dir(path, mount_root)
    validate_mount_dir(command, mount_dir, user_supplied)

    return BackupConfig(
        command=command,
        image=image,
        source_device=source_device,
        mount_dir=mount_dir,
        mount_dir_user_supplied=user_supplied,
        create=create,
        compress=compress,
        delete_source=getattr(args, "delete_source", False),
        force=force,
        log_enabled=log_enabled,
        log_path=log_path,
        binding=binding,
        bootloader=_bootloader_layout(),
        partition_start=settings.get_setting("partition_start"),
        filesystem=filesystem,
        resize_increment=settings.get_setting("resize_increment"),
    )


def main(argv=None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except ValidationError as error:
        setup_logging()
        log.error(str(error))
        return 1
    setup_logging(debug=args.debug, trace=args.trace)

    if args.command == Command.VERSION.value:
        log.info(f"{PROG} {__version__}")
        return 0

    try:
        config = build_config(args)
        execute(config)
    except BackupError as error:
        log.error(str(error))
        return 1
    except OSError as error:
        log.error(f"{type(error).__name__}: {error}")
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
