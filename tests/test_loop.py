"""Tests for storage/loop.py - loop device resolution, attach and detach."""

from collections import namedtuple
from unittest.mock import patch

import pytest

from sdbackup.domain.models import Binding, Command
from sdbackup.storage import loop
from sdbackup.storage.exceptions import (
    AlreadyAttachedError,
    AttachmentError,
    CommandFailedError,
    NoBindingError,
)


Partition = namedtuple("Partition", ["device", "mountpoint", "fstype", "opts"])


def losetup_j_line(device, image):
    return f"{device}: [66306]:1835010 ({image})\n"


class TestListBindings:
    def test_parses_devices(self, fake_host, image_path):
        fake_host.respond(
            "losetup", "-j",
            stdout=losetup_j_line("/dev/loop0", image_path)
            + losetup_j_line("/dev/loop5", image_path),
        )

        assert loop.list_bindings(image_path) == ["/dev/loop0", "/dev/loop5"]
        assert fake_host.calls == [("losetup", "-j", str(image_path))]

    def test_no_bindings(self, fake_host, image_path):
        assert loop.list_bindings(image_path) == []

    def test_losetup_failure_raises(self, fake_host, image_path):
        fake_host.respond("losetup", "-j", returncode=1, stderr="losetup: failed")

        with pytest.raises(CommandFailedError):
            loop.list_bindings(image_path)


class TestResolveBinding:
    """Resolution rules for reusing versus allocating a loop device."""

    @pytest.mark.parametrize("command", [Command.UMOUNT, Command.CHECK])
    def test_reuse_without_binding_fails(self, fake_host, image_path, command):
        with pytest.raises(NoBindingError) as exc_info:
            loop.resolve_binding(image_path, command)

        assert str(image_path) in str(exc_info.value)

    def test_umount_reuses_existing(self, fake_host, image_path):
        fake_host.respond("losetup", "-j", stdout=losetup_j_line("/dev/loop2", image_path))

        binding = loop.resolve_binding(image_path, Command.UMOUNT)

        assert binding == Binding(device="/dev/loop2", image=image_path)
        assert not fake_host.ran("losetup", "-f")

    @patch("psutil.disk_partitions")
    def test_start_on_attached_image_fails(self, mock_partitions, fake_host, image_path):
        fake_host.respond("losetup", "-j", stdout=losetup_j_line("/dev/loop2", image_path))
        mock_partitions.return_value = [
            Partition("/dev/mmcblk1p1", "/", "ext4", "rw"),
            Partition("/dev/loop2p1", "/mnt/cubox.img", "ext4", "rw"),
        ]

        with pytest.raises(AlreadyAttachedError) as exc_info:
            loop.resolve_binding(image_path, Command.START)

        assert exc_info.value.device == "/dev/loop2"
        assert exc_info.value.mountpoint == "/mnt/cubox.img"

    def test_start_allocates_next_free(self, fake_host, image_path):
        fake_host.respond("losetup", "-f", stdout="/dev/loop7\n")

        binding = loop.resolve_binding(image_path, Command.START)

        assert binding.device == "/dev/loop7"
        assert binding.partition == "/dev/loop7p1"


class TestFindMountpoint:
    @patch("psutil.disk_partitions")
    def test_not_mounted(self, mock_partitions):
        mock_partitions.return_value = [Partition("/dev/loop20p1", "/mnt/other", "ext4", "rw")]

        assert loop.find_mountpoint("/dev/loop2") is None

    @patch("psutil.disk_partitions")
    def test_lookup_failure(self, mock_partitions):
        mock_partitions.side_effect = OSError("no /proc")

        assert loop.find_mountpoint("/dev/loop2") is None


class TestAttachDetach:
    def test_attach_free_device(self, fake_host, binding):
        # `losetup <device>` fails for an unused device
        fake_host.respond("losetup", binding.device, returncode=1)
        fake_host.respond("losetup", binding.device, str(binding.image), returncode=0)

        loop.attach(binding)

        assert fake_host.calls[-1] == ("losetup", binding.device, str(binding.image))

    def test_attach_taken_device(self, fake_host, binding):
        fake_host.respond(
            "losetup", binding.device, stdout=f"{binding.device}: [0]:1 (/other.img)"
        )

        with pytest.raises(AttachmentError):
            loop.attach(binding)

        assert fake_host.calls == [("losetup", binding.device)]

    def test_expose_partitions(self, fake_host, binding):
        loop.expose_partitions(binding)

        assert fake_host.calls == [("partx", "--update", binding.device)]

    def test_detach(self, fake_host, binding):
        loop.detach(binding)

        assert fake_host.calls == [
            ("partx", "--delete", binding.device),
            ("losetup", "-d", binding.device),
        ]

    def test_detach_tolerates_partx_failure(self, fake_host, binding):
        fake_host.respond("partx", "--delete", returncode=1, stderr="no partitions")

        loop.detach(binding)

        assert fake_host.ran("losetup", "-d", binding.device)

    def test_detach_failure_raises(self, fake_host, binding):
        fake_host.respond("losetup", "-d", returncode=1, stderr="busy")

        with pytest.raises(CommandFailedError):
            loop.detach(binding)

    def test_is_attached(self, fake_host, binding):
        fake_host.respond(
            "losetup", "-j", stdout=losetup_j_line(binding.device, binding.image)
        )

        assert loop.is_attached(binding) is True
