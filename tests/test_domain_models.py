"""Tests for the provisioning domain model."""

from pathlib import Path

import pytest

from efi_image_builder.domain.models import (
    MIB,
    AttachState,
    ChrootSession,
    FilesystemKind,
    FstabEntry,
    Image,
    LoopDevice,
    Partition,
    PartitionRole,
    TeardownFailure,
)


def _esp(start=0, end=16 * MIB):
    return Partition(1, PartitionRole.ESP, FilesystemKind.FAT32, start, end)


def _root(start=16 * MIB, end=64 * MIB):
    return Partition(2, PartitionRole.ROOT, FilesystemKind.EXT4, start, end)


class TestImage:
    def test_valid_layout(self):
        image = Image(Path("efi.img"), 64 * MIB, [_esp(), _root()])

        assert image.esp.number == 1
        assert image.root.number == 2
        assert image.root.size_bytes == 48 * MIB

    def test_partition_outside_image_rejected(self):
        with pytest.raises(ValueError, match="outside the image"):
            Image(Path("efi.img"), 32 * MIB, [_esp(), _root()])

    def test_overlapping_partitions_rejected(self):
        with pytest.raises(ValueError, match="overlap"):
            Image(Path("efi.img"), 64 * MIB, [_esp(), _root(start=8 * MIB)])

    def test_empty_partition_rejected(self):
        with pytest.raises(ValueError, match="empty"):
            Image(Path("efi.img"), 64 * MIB, [_esp(end=0)])

    def test_esp_must_come_first(self):
        esp = Partition(2, PartitionRole.ESP, FilesystemKind.FAT32, 48 * MIB, 64 * MIB)
        root = Partition(1, PartitionRole.ROOT, FilesystemKind.EXT4, 0, 48 * MIB)

        with pytest.raises(ValueError, match="ESP must precede"):
            Image(Path("efi.img"), 64 * MIB, [root, esp])

    def test_adjacent_partitions_do_not_overlap(self):
        assert not _esp().overlaps(_root())

    def test_missing_role_raises_key_error(self):
        image = Image(Path("efi.img"), 64 * MIB, [_esp()])
        with pytest.raises(KeyError):
            image.partition(PartitionRole.ROOT)


class TestFilesystemKind:
    def test_parted_names(self):
        assert FilesystemKind.FAT32.parted_name == "fat32"
        assert FilesystemKind.EXT4.parted_name == "ext4"

    def test_values_are_mount_types(self):
        assert FilesystemKind.FAT32.value == "vfat"
        assert FilesystemKind.EXT4.value == "ext4"


class TestLoopDevice:
    def test_partition_path_for_numbered_device(self, image):
        loop = LoopDevice("/dev/loop0", image)
        assert loop.partition_path(2) == "/dev/loop0p2"

    def test_partition_path_without_trailing_digit(self, image):
        loop = LoopDevice("/dev/loopa", image)
        assert loop.partition_path(1) == "/dev/loopa1"

    def test_attached_by_default(self, image):
        loop = LoopDevice("/dev/loop0", image)

        assert loop.is_attached
        loop.state = AttachState.DETACHED
        assert not loop.is_attached


class TestChrootSession:
    def test_host_path(self, unbound_session, target_root):
        assert unbound_session.host_path("/boot/efi") == target_root / "boot" / "efi"
        assert unbound_session.host_path("/") == target_root

    def test_missing_binds_until_all_bound(self, unbound_session, target_root):
        assert unbound_session.missing_binds() == ["/dev", "/proc", "/sys"]
        assert not unbound_session.is_ready

        unbound_session.mounts.mount_bind("/dev", target_root / "dev")
        unbound_session.mounts.mount_bind("/proc", target_root / "proc")

        assert unbound_session.missing_binds() == ["/sys"]

    def test_ready_session(self, session):
        assert session.is_ready
        assert isinstance(session, ChrootSession)


class TestFstabEntry:
    def test_render_with_comment(self):
        entry = FstabEntry(
            uuid="3A1F-22C0",
            mount_path="/boot/efi",
            kind="vfat",
            options="umask=0077",
            dump=0,
            passno=1,
            comment="/boot/efi was on /dev/loop0p1 during installation",
        )

        assert entry.render() == (
            "# /boot/efi was on /dev/loop0p1 during installation\n"
            "UUID=3A1F-22C0 /boot/efi vfat umask=0077 0 1\n"
        )

    def test_render_without_comment(self):
        entry = FstabEntry("abc", "/", "ext4", "errors=remount-ro")
        assert entry.render() == "UUID=abc / ext4 errors=remount-ro 0 1\n"


def test_teardown_failure_str():
    failure = TeardownFailure("detach", "/dev/loop0", "busy")
    assert str(failure) == "detach /dev/loop0: busy"
