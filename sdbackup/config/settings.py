"""Settings storage for application configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "SDBACKUP_SETTINGS_PATH",
        Path.home() / ".config" / "sd-image-backup" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_SOURCE_DEVICE = "/dev/mmcblk1"
DEFAULT_MOUNT_ROOT = "/mnt"
DEFAULT_BOOTLOADER_DIR = str(
    Path.home() / ".local" / "share" / "sd-image-backup" / "uboot"
)
DEFAULT_SPL_URL = "https://images.solid-build.xyz/IMX6/U-Boot/spl-imx6-sdhc.bin"
DEFAULT_UBOOT_URL = "https://images.solid-build.xyz/IMX6/U-Boot/u-boot-imx6-sdhc.img"
DEFAULT_RESIZE_INCREMENT = "+1G"

DEFAULT_SETTINGS: dict[str, Any] = {
    "source_device": DEFAULT_SOURCE_DEVICE,
    "mount_root": DEFAULT_MOUNT_ROOT,
    "bootloader_dir": DEFAULT_BOOTLOADER_DIR,
    "spl_url": DEFAULT_SPL_URL,
    "uboot_url": DEFAULT_UBOOT_URL,
    "spl_offset_kib": 1,
    "uboot_offset_kib": 69,
    "partition_start": "4MiB",
    "filesystem": "ext4",
    "resize_increment": DEFAULT_RESIZE_INCREMENT,
    "download_timeout_seconds": 60,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def get_int(key: str, default: int = 0) -> int:
    try:
        return int(get_setting(key, default))
    except (TypeError, ValueError):
        return default


load_settings()
