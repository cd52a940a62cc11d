"""Backing image allocation and GPT partitioning.

The image is a sparse file of fixed size holding a GUID partition table with
two partitions:

    1. ESP   FAT32  image start .. ESP boundary (256 MiB by default)
    2. root  ext4   ESP boundary .. image end

Partitioning runs parted against the plain file, so it needs no privileges.
Offsets at the image edges are handed to parted as percentages ("0%",
"100%") so parted can apply its own alignment and leave room for the backup
GPT header.

Example:
    >>> image = plan_image(Path("efi.img"))
    >>> allocate_image(image)
    >>> write_partition_table(ctx, image)
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import psutil

from efi_image_builder.config.settings import (
    DEFAULT_ESP_END_BYTES,
    DEFAULT_IMAGE_SIZE_BYTES,
)
from efi_image_builder.domain.models import (
    MIB,
    FilesystemKind,
    Image,
    Partition,
    PartitionRole,
)
from efi_image_builder.exceptions import AllocationError, CommandError
from efi_image_builder.logging import LoggerFactory
from efi_image_builder.storage.commands import ExecutionContext


log = LoggerFactory.for_image()


@dataclass(frozen=True)
class PartitionTableEntry:
    """A partition as reported by ``parted -m``; end is exclusive."""

    number: int
    start_bytes: int
    end_bytes: int
    filesystem: str
    flags: tuple[str, ...] = ()


def plan_image(
    path: Path,
    size_bytes: int = DEFAULT_IMAGE_SIZE_BYTES,
    esp_end_bytes: int = DEFAULT_ESP_END_BYTES,
) -> Image:
    """Build the two-partition layout for an image.

    Raises:
        AllocationError: If the ESP boundary does not fit inside the image
    """
    try:
        return Image(
            path=Path(path),
            size_bytes=size_bytes,
            partitions=[
                Partition(1, PartitionRole.ESP, FilesystemKind.FAT32, 0, esp_end_bytes),
                Partition(
                    2, PartitionRole.ROOT, FilesystemKind.EXT4, esp_end_bytes, size_bytes
                ),
            ],
        )
    except ValueError as error:
        raise AllocationError(str(path), str(error)) from error


def allocate_image(image: Image) -> None:
    """Create (or overwrite) the backing file at the image size.

    The file is sparse, so unwritten regions read back as zeros. Any previous
    content at the path is destroyed.

    Raises:
        AllocationError: If the path is unwritable or the filesystem holding it
            has less free space than the image size
    """
    path = image.path
    try:
        usage = psutil.disk_usage(str(path.parent))
    except OSError as error:
        raise AllocationError(str(path), str(error)) from error

    # st_blocks is in 512-byte units regardless of the filesystem block size
    reclaimable = path.stat().st_blocks * 512 if path.is_file() else 0
    if usage.free + reclaimable < image.size_bytes:
        raise AllocationError(
            str(path),
            f"insufficient space ({usage.free + reclaimable} bytes free, "
            f"{image.size_bytes} required)",
        )

    log.info(f"Allocating {image.size_bytes // MIB} MiB image at {path}")
    try:
        with open(path, "wb") as backing:
            backing.truncate(image.size_bytes)
    except OSError as error:
        raise AllocationError(str(path), str(error)) from error


def _parted_offset(offset: int, image_size: int) -> str:
    if offset == 0:
        return "0%"
    if offset >= image_size:
        return "100%"
    if offset % MIB == 0:
        return f"{offset // MIB}MiB"
    return f"{offset}B"


def write_partition_table(ctx: ExecutionContext, image: Image) -> list[PartitionTableEntry]:
    """Write the GPT described by ``image`` and verify it by reading it back.

    Returns:
        The partition table as reported by parted

    Raises:
        AllocationError: If parted fails or the resulting table does not match
            the two-partition layout
    """
    path = str(image.path)
    commands = [["parted", "-s", path, "mklabel", image.table.value]]
    for partition in image.partitions:
        commands.append(
            [
                "parted",
                "-s",
                path,
                "mkpart",
                "primary",
                partition.filesystem.parted_name,
                _parted_offset(partition.start_bytes, image.size_bytes),
                _parted_offset(partition.end_bytes, image.size_bytes),
            ]
        )
        if partition.role is PartitionRole.ESP:
            commands.append(
                ["parted", "-s", path, "set", str(partition.number), "esp", "on"]
            )

    for command in commands:
        try:
            ctx.run(command, privileged=False)
        except CommandError as error:
            raise AllocationError(path, f"parted failed: {error.diagnostic}") from error

    entries = read_partition_table(ctx, image.path)
    for entry in entries:
        log.info(
            f"Partition {entry.number}: {entry.start_bytes}-{entry.end_bytes} "
            f"({(entry.end_bytes - entry.start_bytes) // MIB} MiB) "
            f"{entry.filesystem or '-'} {','.join(entry.flags)}".rstrip()
        )
    verify_partition_table(image, entries)
    return entries


def read_partition_table(ctx: ExecutionContext, path: Path) -> list[PartitionTableEntry]:
    """Read the partition table of an image file with parted's machine output.

    Raises:
        AllocationError: If parted cannot read the table
    """
    try:
        result = ctx.run(
            ["parted", "-s", "-m", str(path), "unit", "B", "print"],
            privileged=False,
        )
    except CommandError as error:
        raise AllocationError(str(path), f"cannot read partition table: {error.diagnostic}") from error
    return parse_parted_machine_output(result.stdout)


def _parse_bytes(value: str) -> int:
    return int(value.rstrip("B"))


def parse_parted_machine_output(output: str) -> list[PartitionTableEntry]:
    """Parse ``parted -m unit B print`` output into partition entries.

    Example output:
        BYT;
        /tmp/efi.img:8589934592B:file:512:512:gpt::;
        1:1048576B:268435455B:267386880B:fat32::esp;
        2:268435456B:8589917695B:8321482240B:ext4::;
    """
    entries: list[PartitionTableEntry] = []
    for line in output.splitlines():
        line = line.strip().rstrip(";")
        if not line or not line[0].isdigit():
            continue
        fields = line.split(":")
        if len(fields) < 5:
            continue
        flags_field = fields[6] if len(fields) > 6 else ""
        entries.append(
            PartitionTableEntry(
                number=int(fields[0]),
                start_bytes=_parse_bytes(fields[1]),
                end_bytes=_parse_bytes(fields[2]) + 1,
                filesystem=fields[4],
                flags=tuple(
                    flag.strip() for flag in flags_field.split(",") if flag.strip()
                ),
            )
        )
    return entries


def verify_partition_table(image: Image, entries: list[PartitionTableEntry]) -> None:
    """Check the written table matches the planned layout.

    Raises:
        AllocationError: If the partition count, order or bounds differ
    """
    path = str(image.path)
    if len(entries) != len(image.partitions):
        raise AllocationError(
            path,
            f"expected {len(image.partitions)} partitions, found {len(entries)}",
        )

    previous: Optional[PartitionTableEntry] = None
    for entry, planned in zip(entries, image.partitions):
        if entry.number != planned.number:
            raise AllocationError(
                path, f"unexpected partition number {entry.number} (wanted {planned.number})"
            )
        if entry.start_bytes < planned.start_bytes or entry.end_bytes > planned.end_bytes:
            raise AllocationError(
                path,
                f"partition {entry.number} spans {entry.start_bytes}-{entry.end_bytes}, "
                f"outside {planned.start_bytes}-{planned.end_bytes}",
            )
        if previous is not None and entry.start_bytes < previous.end_bytes:
            raise AllocationError(
                path, f"partitions {previous.number} and {entry.number} overlap"
            )
        previous = entry
