"""Domain model for a provisioning run.

Type-safe objects for the image being built, the loop device it is attached
to, the mount stack built on top of it and the identities written into the
installed system's fstab.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from efi_image_builder.storage.mount import MountStack


MIB = 1024**2
GIB = 1024**3


# ==============================================================================
# Image Domain
# ==============================================================================


class PartitionRole(Enum):
    """Role of a partition in the image."""

    ESP = "esp"  # EFI System Partition, mounted at /boot/efi
    ROOT = "root"  # Root filesystem, mounted at /


class FilesystemKind(Enum):
    """Filesystem created on a partition."""

    FAT32 = "vfat"
    EXT4 = "ext4"

    @property
    def parted_name(self) -> str:
        """Filesystem type hint understood by parted mkpart."""
        return "fat32" if self is FilesystemKind.FAT32 else "ext4"


@dataclass
class Partition:
    """A partition inside the backing image.

    Offsets are byte offsets from the image start; end is exclusive.
    ``device_path`` is only set while the owning loop device is attached.
    """

    number: int  # 1-based partition number
    role: PartitionRole
    filesystem: FilesystemKind
    start_bytes: int
    end_bytes: int
    device_path: Optional[str] = None  # e.g., "/dev/loop0p1"

    @property
    def size_bytes(self) -> int:
        return self.end_bytes - self.start_bytes

    def overlaps(self, other: Partition) -> bool:
        return self.start_bytes < other.end_bytes and other.start_bytes < self.end_bytes


class PartitionTableKind(Enum):
    GPT = "gpt"


@dataclass
class Image:
    """The backing file and its partition layout."""

    path: Path
    size_bytes: int
    partitions: list[Partition] = field(default_factory=list)
    table: PartitionTableKind = PartitionTableKind.GPT

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Check partitions are ordered, in bounds, non-overlapping, ESP first.

        Raises:
            ValueError: If the layout violates any of these constraints
        """
        previous: Optional[Partition] = None
        for partition in self.partitions:
            if partition.start_bytes < 0 or partition.end_bytes > self.size_bytes:
                raise ValueError(
                    f"Partition {partition.number} lies outside the image "
                    f"({partition.start_bytes}-{partition.end_bytes} of {self.size_bytes})"
                )
            if partition.end_bytes <= partition.start_bytes:
                raise ValueError(f"Partition {partition.number} is empty")
            if previous is not None:
                if partition.start_bytes < previous.start_bytes:
                    raise ValueError("Partitions must be ordered by start offset")
                if partition.overlaps(previous):
                    raise ValueError(
                        f"Partitions {previous.number} and {partition.number} overlap"
                    )
            previous = partition

        roles = [partition.role for partition in self.partitions]
        if PartitionRole.ESP in roles and PartitionRole.ROOT in roles:
            if roles.index(PartitionRole.ESP) > roles.index(PartitionRole.ROOT):
                raise ValueError("ESP must precede the root partition")

    def partition(self, role: PartitionRole) -> Partition:
        for partition in self.partitions:
            if partition.role is role:
                return partition
        raise KeyError(role)

    @property
    def esp(self) -> Partition:
        return self.partition(PartitionRole.ESP)

    @property
    def root(self) -> Partition:
        return self.partition(PartitionRole.ROOT)


# ==============================================================================
# Loop Device Domain
# ==============================================================================


class AttachState(Enum):
    DETACHED = "detached"
    ATTACHED = "attached"


@dataclass
class LoopDevice:
    """A kernel loop device backed by the image file."""

    path: str  # e.g., "/dev/loop0"
    image: Image
    state: AttachState = AttachState.ATTACHED

    @property
    def is_attached(self) -> bool:
        return self.state is AttachState.ATTACHED

    def partition_path(self, number: int) -> str:
        """Partition sub-device path (e.g., /dev/loop0p1)."""
        suffix = "p" if self.path[-1].isdigit() else ""
        return f"{self.path}{suffix}{number}"


# ==============================================================================
# Mount Domain
# ==============================================================================


@dataclass(frozen=True)
class MountPoint:
    """A mount performed during this run."""

    source: str  # device node or host path for binds
    target: Path
    kind: Optional[str]  # filesystem type, None for binds
    options: tuple[str, ...] = ()
    sequence: int = 0  # position in mount order, starting at 1
    is_bind: bool = False


@dataclass
class ChrootSession:
    """The mounted target root used as a chroot.

    Commands may only run once every path in ``required_binds`` is bind
    mounted below ``root``.
    """

    root: Path
    mounts: MountStack
    required_binds: tuple[str, ...] = ("/dev", "/proc", "/sys")

    def host_path(self, path: str) -> Path:
        """Translate a path inside the chroot to the host path."""
        return self.root / path.lstrip("/")

    def missing_binds(self) -> list[str]:
        return [
            bind
            for bind in self.required_binds
            if not self.mounts.is_mounted(self.host_path(bind))
        ]

    @property
    def is_ready(self) -> bool:
        return not self.missing_binds()


# ==============================================================================
# Identity Domain
# ==============================================================================


@dataclass(frozen=True)
class FilesystemIdentity:
    """Device and filesystem UUID backing a mount path inside the chroot."""

    device: str  # transient device path, e.g., "/dev/loop0p2"
    uuid: str
    mount_path: str  # path inside the chroot, e.g., "/"
    kind: str  # fstab filesystem type, e.g., "ext4"


@dataclass(frozen=True)
class FstabEntry:
    """One persisted mount table record (comment line plus entry line)."""

    uuid: str
    mount_path: str
    kind: str
    options: str
    dump: int = 0
    passno: int = 1
    comment: Optional[str] = None

    def render(self) -> str:
        lines = []
        if self.comment:
            lines.append(f"# {self.comment}")
        lines.append(
            f"UUID={self.uuid} {self.mount_path} {self.kind} "
            f"{self.options} {self.dump} {self.passno}"
        )
        return "\n".join(lines) + "\n"


# ==============================================================================
# Teardown Domain
# ==============================================================================


@dataclass(frozen=True)
class TeardownFailure:
    """A release action that did not succeed."""

    action: str  # e.g., "unmount", "detach", "rmdir"
    target: str
    diagnostic: str

    def __str__(self) -> str:
        return f"{self.action} {self.target}: {self.diagnostic}"
