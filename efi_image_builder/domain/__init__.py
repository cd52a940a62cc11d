"""Domain models for a provisioning run."""

from __future__ import annotations

from .models import (
    GIB,
    MIB,
    AttachState,
    ChrootSession,
    FilesystemIdentity,
    FilesystemKind,
    FstabEntry,
    Image,
    LoopDevice,
    MountPoint,
    Partition,
    PartitionRole,
    PartitionTableKind,
    TeardownFailure,
)


__all__ = [
    "GIB",
    "MIB",
    "AttachState",
    "ChrootSession",
    "FilesystemIdentity",
    "FilesystemKind",
    "FstabEntry",
    "Image",
    "LoopDevice",
    "MountPoint",
    "Partition",
    "PartitionRole",
    "PartitionTableKind",
    "TeardownFailure",
]
