"""Tests for storage/image.py - sparse image files and companion paths."""

import shutil
from datetime import datetime
from pathlib import Path
from unittest.mock import patch

import pytest

from sdbackup.storage import image as image_store
from sdbackup.storage.exceptions import (
    CommandFailedError,
    CreationFailedError,
    ValidationError,
)


def allocate(path, size):
    with path.open("wb") as handle:
        handle.truncate(size)


class TestCreateImage:
    """Tests for create_image()."""

    @patch("sdbackup.storage.image.run_checked_command")
    def test_dd_arguments(self, mock_run, tmp_path):
        path = tmp_path / "new.img"
        mock_run.side_effect = lambda command: allocate(path, 100 * image_store.MIB)

        created = image_store.create_image(path, 100, image_store.MIB)

        mock_run.assert_called_once_with(
            ["dd", "if=/dev/zero", f"of={path}", "bs=1048576", "count=0", "seek=100"]
        )
        assert created.path == path
        assert created.apparent_size == 100 * image_store.MIB

    @patch("sdbackup.storage.image.run_checked_command")
    def test_replaces_existing_file(self, mock_run, tmp_path):
        path = tmp_path / "new.img"
        path.write_bytes(b"stale")

        with pytest.raises(CreationFailedError):
            image_store.create_image(path, 10, 512)

        # the stale file was removed before dd ran
        assert not path.exists()

    @patch("sdbackup.storage.image.run_checked_command")
    def test_zero_size_is_failure(self, mock_run, tmp_path):
        path = tmp_path / "new.img"
        mock_run.side_effect = lambda command: path.touch()

        with pytest.raises(CreationFailedError):
            image_store.create_image(path, 10, 512)

    def test_dd_failure_propagates(self, fake_host, tmp_path):
        fake_host.respond("dd", returncode=1, stderr="dd: No space left on device")

        with pytest.raises(CommandFailedError):
            image_store.create_image(tmp_path / "new.img", 10, 512)

    @pytest.mark.skipif(shutil.which("dd") is None, reason="needs dd")
    def test_real_image_is_sparse(self, tmp_path):
        path = tmp_path / "sparse.img"

        image_store.create_image(path, 64, image_store.MIB)

        stat = path.stat()
        assert stat.st_size == 64 * image_store.MIB
        assert stat.st_blocks * 512 < stat.st_size


class TestQueries:
    def test_query_source_geometry(self, fake_host):
        fake_host.respond("blockdev", "--getsz", stdout="15523840\n")
        fake_host.respond("blockdev", "--getss", stdout="512\n")

        assert image_store.query_source_geometry("/dev/mmcblk1") == (15523840, 512)

    def test_unreadable_source_geometry(self, fake_host):
        fake_host.respond("blockdev", "--getsz", stdout="")
        fake_host.respond("blockdev", "--getss", stdout="512\n")

        with pytest.raises(ValidationError, match="Cannot read the size of /dev/mmcblk1"):
            image_store.query_source_geometry("/dev/mmcblk1")

    def test_grow_image(self, fake_host, image_path):
        image_store.grow_image(image_path, "+1G")

        assert fake_host.calls == [("truncate", "--size=+1G", str(image_path))]


class TestCompanionPaths:
    def test_log_path_timestamp(self):
        path = Path("/backup/cubox.img")

        log_path = image_store.companion_log_path(path, now=datetime(2024, 1, 2, 3, 4, 5))

        assert log_path == Path("/backup/cubox.img-20240102030405.log")

    def test_explicit_log_path_wins(self):
        explicit = Path("/var/log/backup.log")

        assert image_store.companion_log_path(Path("/backup/cubox.img"), explicit) == explicit

    def test_default_mount_dir(self):
        mount_dir = image_store.default_mount_dir(Path("/backup/cubox.img"), Path("/mnt"))

        assert mount_dir == Path("/mnt/cubox.img")
