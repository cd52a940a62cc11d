"""Filesystem creation on the image partitions.

Supported Filesystems:
    vfat:   FAT32 for the EFI System Partition (mkfs.fat -F 32)
    ext4:   Linux native filesystem for the root partition (mkfs.ext4 -F)

The partition's sub-device only exists while the loop device is attached,
so formatting an unattached partition is refused up front.
"""

from __future__ import annotations

from typing import Optional

from efi_image_builder.domain.models import FilesystemKind, Partition
from efi_image_builder.exceptions import CommandError, FormatError
from efi_image_builder.logging import LoggerFactory
from efi_image_builder.storage.commands import ExecutionContext


log = LoggerFactory.for_format()


def build_format_command(
    device_path: str, filesystem: FilesystemKind, label: Optional[str] = None
) -> list[str]:
    if filesystem is FilesystemKind.FAT32:
        command = ["mkfs.fat", "-F", "32"]
        if label:
            command.extend(["-n", label])
    elif filesystem is FilesystemKind.EXT4:
        command = ["mkfs.ext4", "-F"]
        if label:
            command.extend(["-L", label])
    else:
        raise FormatError(device_path, f"unsupported filesystem type: {filesystem}")
    command.append(device_path)
    return command


def format_partition(
    ctx: ExecutionContext,
    partition: Partition,
    label: Optional[str] = None,
) -> None:
    """Create the partition's filesystem on its loop sub-device.

    Raises:
        FormatError: If the partition is not attached or mkfs fails
    """
    device_path = partition.device_path
    if not device_path:
        raise FormatError(
            f"partition {partition.number}",
            "loop device is not attached, no sub-device to format",
        )

    command = build_format_command(device_path, partition.filesystem, label)
    log.info(f"Formatting {device_path} as {partition.filesystem.value}")
    try:
        ctx.run(command)
    except CommandError as error:
        log.error(f"Command: {' '.join(command)}")
        log.error(f"Error output: {error.diagnostic}")
        raise FormatError(device_path, error.diagnostic) from error
    log.debug(f"Successfully formatted {device_path} as {partition.filesystem.value}")
