"""Tests for storage/identity.py - UUID and PTUUID cloning."""

from unittest.mock import Mock

import pytest

from sdbackup.storage import identity
from sdbackup.storage.exceptions import CommandFailedError
from sdbackup.storage.identity import Identity


class TestPartitionNode:
    @pytest.mark.parametrize(
        "device,expected",
        [
            ("/dev/sda", "/dev/sda1"),
            ("/dev/mmcblk1", "/dev/mmcblk1p1"),
            ("/dev/loop0", "/dev/loop0p1"),
            ("/dev/nvme0n1", "/dev/nvme0n1p1"),
        ],
    )
    def test_first_partition(self, device, expected):
        assert identity.partition_node(device) == expected


class TestReadIdentity:
    def test_reads_uuid_and_ptuuid(self, fake_host):
        fake_host.respond(
            "blkid", "-s", "UUID", stdout="3f2b8c1e-5b1d-4b8e-9a5c-1d2e3f4a5b6c\n"
        )
        fake_host.respond("blkid", "-s", "PTUUID", stdout="1a2b3c4d\n")

        result = identity.read_identity("/dev/mmcblk1")

        assert result == Identity(
            fs_uuid="3f2b8c1e-5b1d-4b8e-9a5c-1d2e3f4a5b6c", ptuuid="1a2b3c4d"
        )
        assert fake_host.calls == [
            ("blkid", "-s", "UUID", "-o", "value", "/dev/mmcblk1p1"),
            ("blkid", "-s", "PTUUID", "-o", "value", "/dev/mmcblk1"),
        ]


class TestDiskIdentifier:
    def test_dos_id_gets_hex_prefix(self):
        assert identity._disk_identifier("1a2b3c4d") == "0x1a2b3c4d"

    def test_prefixed_id_unchanged(self):
        assert identity._disk_identifier("0x1a2b3c4d") == "0x1a2b3c4d"

    def test_gpt_uuid_unchanged(self):
        ptuuid = "8c2a4f9e-1b3d-4e5f-a6b7-c8d9e0f1a2b3"
        assert identity._disk_identifier(ptuuid) == ptuuid

    def test_fdisk_script(self):
        assert identity._fdisk_disk_id_script("1a2b3c4d") == "x\ni\n0x1a2b3c4d\nr\nw\n"


class TestWriteIdentity:
    def test_sequence(self, fake_host, binding):
        session = Mock(binding=binding)
        fake_host.respond("e2fsck", returncode=1)

        identity.write_identity(session, Identity(fs_uuid="uuid-1", ptuuid="1a2b3c4d"))

        assert fake_host.calls == [
            ("e2fsck", "-f", "-y", binding.partition),
            ("tune2fs", "-U", "uuid-1", binding.partition),
            ("fdisk", binding.device),
            ("sync",),
        ]
        assert fake_host.inputs[2] == "x\ni\n0x1a2b3c4d\nr\nw\n"

    def test_uncorrected_fsck_errors_abort(self, fake_host, binding):
        fake_host.respond("e2fsck", returncode=4)

        with pytest.raises(CommandFailedError):
            identity.write_identity(Mock(binding=binding), Identity("uuid-1", "1a2b3c4d"))

        assert not fake_host.ran("tune2fs")


class TestCloneIdentity:
    def test_attaches_writes_and_detaches(self, mocker, binding):
        source = Identity(fs_uuid="uuid-1", ptuuid="1a2b3c4d")
        mocker.patch.object(identity, "read_identity", return_value=source)
        write = mocker.patch.object(identity, "write_identity")
        session = Mock(binding=binding)

        result = identity.clone_identity(session, "/dev/mmcblk1")

        assert result == source
        session.ensure_attached.assert_called_once_with()
        write.assert_called_once_with(session, source)
        session.detach.assert_called_once_with()

    def test_source_read_failure_leaves_image_alone(self, fake_host, binding):
        fake_host.respond("blkid", returncode=2)
        session = Mock(binding=binding)

        with pytest.raises(CommandFailedError):
            identity.clone_identity(session, "/dev/mmcblk1")

        session.ensure_attached.assert_not_called()
