"""
Pytest configuration and shared fixtures for sd-image-backup tests.

This module provides common fixtures and utilities used across all test modules.
"""

from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple
from unittest.mock import Mock

import pytest
from loguru import logger

from sdbackup.config import settings
from sdbackup.domain.models import Binding, BootloaderLayout, Image


# ==============================================================================
# Host Command Fakes
# ==============================================================================


class FakeHost:
    """Scripted stand-in for ``subprocess.run``.

    Responses are registered per command prefix; the longest matching prefix
    wins and unmatched commands succeed with empty output. Every invocation is
    recorded in ``calls`` as a tuple of strings.
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[str, ...]] = []
        self.inputs: List[Optional[str]] = []
        self.responses: Dict[Tuple[str, ...], Tuple[int, str, str]] = {}
        self.effects: Dict[str, Callable[[Tuple[str, ...]], None]] = {}

    def respond(self, *prefix: str, returncode: int = 0, stdout: str = "", stderr: str = ""):
        self.responses[tuple(prefix)] = (returncode, stdout, stderr)

    def on(self, program: str, effect: Callable[[Tuple[str, ...]], None]) -> None:
        """Run ``effect(command)`` whenever ``program`` is invoked."""
        self.effects[program] = effect

    def __call__(self, command, input=None, **kwargs):
        command = tuple(str(part) for part in command)
        self.calls.append(command)
        self.inputs.append(input)
        if command[0] in self.effects:
            self.effects[command[0]](command)
        matches = [
            prefix for prefix in self.responses if command[: len(prefix)] == prefix
        ]
        returncode, stdout, stderr = (0, "", "")
        if matches:
            returncode, stdout, stderr = self.responses[max(matches, key=len)]
        return Mock(returncode=returncode, stdout=stdout, stderr=stderr)

    def free_loop_device(self, device: str, image) -> None:
        """Report ``device`` as unused so that attaching ``image`` to it succeeds."""
        self.respond("losetup", device, returncode=1, stderr=f"{device}: No such device")
        self.respond("losetup", device, str(image))

    def ran(self, *prefix: str) -> bool:
        return any(call[: len(prefix)] == prefix for call in self.calls)

    def commands(self, program: str) -> List[Tuple[str, ...]]:
        return [call for call in self.calls if call[0] == program]


@pytest.fixture
def fake_host(mocker) -> FakeHost:
    """Patch subprocess.run with a FakeHost and return it."""
    host = FakeHost()
    mocker.patch("subprocess.run", side_effect=host)
    return host


@pytest.fixture
def all_programs_installed(mocker):
    """Pretend every external program is on PATH."""
    return mocker.patch(
        "sdbackup.storage.commands.shutil.which",
        side_effect=lambda program: f"/usr/sbin/{program}",
    )


# ==============================================================================
# Image Fixtures
# ==============================================================================


@pytest.fixture
def image_path(tmp_path) -> Path:
    """Path of an existing, non-empty image file."""
    path = tmp_path / "cubox.img"
    path.write_bytes(b"\0" * 4096)
    return path


@pytest.fixture
def image(image_path) -> Image:
    return Image(path=image_path)


@pytest.fixture
def binding(image_path) -> Binding:
    return Binding(device="/dev/loop3", image=image_path)


@pytest.fixture
def mount_root(tmp_path) -> Path:
    root = tmp_path / "mnt"
    root.mkdir()
    return root


@pytest.fixture
def bootloader_layout(tmp_path) -> BootloaderLayout:
    return BootloaderLayout(
        cache_dir=tmp_path / "uboot",
        spl_url="https://example.com/u-boot/spl.bin",
        uboot_url="https://example.com/u-boot/u-boot.img",
    )


# ==============================================================================
# Settings and Logging Fixtures
# ==============================================================================


@pytest.fixture
def isolated_settings(tmp_path, monkeypatch, mount_root, bootloader_layout):
    """Load default settings from a temporary path with test directories."""
    settings_file = tmp_path / "config" / "settings.json"
    monkeypatch.setattr("sdbackup.config.settings.SETTINGS_PATH", settings_file)
    settings.load_settings()
    settings.settings_store.values.update(
        {
            "mount_root": str(mount_root),
            "bootloader_dir": str(bootloader_layout.cache_dir),
            "spl_url": bootloader_layout.spl_url,
            "uboot_url": bootloader_layout.uboot_url,
            "source_device": "/dev/mmcblk1",
        }
    )
    yield settings
    settings.load_settings()


@pytest.fixture
def log_records():
    """Capture loguru records emitted during the test."""
    records: List[dict] = []
    handler_id = logger.add(lambda message: records.append(message.record), level="TRACE")
    yield records
    logger.remove(handler_id)

