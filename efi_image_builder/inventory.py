"""Read-only disk inventory report.

Lists every block device with its sector count and sector size, and every
partition with its start/end sector, reporting sizes in megabytes
(bytes / 1,000,000). The provisioning pipeline does not depend on it.

Example output:
    /dev/sda: 1953525168 * 512 = 1000204 MB
      /dev/sda1: 1050624 - 2048 = 1048576 * 512 = 536 MB

Probing sits behind the ``DiskProbe`` protocol; ``SysfsProbe`` reads
/sys/block, where sizes and partition starts are always counted in 512-byte
units regardless of the device's logical sector size.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Protocol

from efi_image_builder.logging import LoggerFactory


log = LoggerFactory.for_inventory()

SYSFS_UNIT = 512


@dataclass(frozen=True)
class DiskPartition:
    path: str
    start_sector: int
    end_sector: int  # inclusive

    @property
    def sector_count(self) -> int:
        return self.end_sector + 1 - self.start_sector


@dataclass(frozen=True)
class Disk:
    path: str
    sector_count: int
    sector_size: int
    partitions: list[DiskPartition] = field(default_factory=list)

    @property
    def size_bytes(self) -> int:
        return self.sector_count * self.sector_size

    @property
    def size_mb(self) -> int:
        return self.size_bytes // 1_000_000

    def partition_size_mb(self, partition: DiskPartition) -> int:
        return partition.sector_count * self.sector_size // 1_000_000


class DiskProbe(Protocol):
    def probe(self) -> list[Disk]:
        ...


def _read_int(path: Path) -> Optional[int]:
    try:
        return int(path.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None


class SysfsProbe:
    """Probe block devices through sysfs."""

    def __init__(self, sysfs_root: Path = Path("/sys"), include_virtual: bool = False):
        self.sysfs_root = Path(sysfs_root)
        self.include_virtual = include_virtual

    def probe(self) -> list[Disk]:
        block_dir = self.sysfs_root / "block"
        if not block_dir.is_dir():
            log.warning(f"{block_dir} not found, no disks to report")
            return []

        disks = []
        for device_dir in sorted(block_dir.iterdir()):
            name = device_dir.name
            if not self.include_virtual and name.startswith(("loop", "ram", "zram")):
                continue
            disk = self._probe_disk(device_dir)
            if disk is not None:
                disks.append(disk)
        return disks

    def _probe_disk(self, device_dir: Path) -> Optional[Disk]:
        size_units = _read_int(device_dir / "size")
        if not size_units:
            return None
        sector_size = _read_int(device_dir / "queue" / "logical_block_size") or SYSFS_UNIT
        ratio = max(sector_size // SYSFS_UNIT, 1)

        partitions = []
        for child in sorted(device_dir.iterdir()):
            if not (child / "partition").exists():
                continue
            start = _read_int(child / "start")
            size = _read_int(child / "size")
            if start is None or not size:
                continue
            start_sector = start // ratio
            partitions.append(
                DiskPartition(
                    path=f"/dev/{child.name}",
                    start_sector=start_sector,
                    end_sector=start_sector + size // ratio - 1,
                )
            )
        partitions.sort(key=lambda partition: partition.start_sector)

        return Disk(
            path=f"/dev/{device_dir.name}",
            sector_count=size_units // ratio,
            sector_size=sector_size,
            partitions=partitions,
        )


def format_report(disks: Iterable[Disk]) -> list[str]:
    lines = []
    for disk in disks:
        lines.append(
            f"{disk.path}: {disk.sector_count} * {disk.sector_size} = {disk.size_mb} MB"
        )
        for partition in disk.partitions:
            lines.append(
                f"  {partition.path}: {partition.end_sector + 1} - {partition.start_sector}"
                f" = {partition.sector_count} * {disk.sector_size}"
                f" = {disk.partition_size_mb(partition)} MB"
            )
    return lines


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="efi-image-inventory",
        description="List block devices and partitions with their sizes",
    )
    parser.add_argument(
        "--all", action="store_true", help="Include loop, ram and zram devices"
    )
    parser.add_argument("--sysfs", type=Path, default=Path("/sys"), help=argparse.SUPPRESS)
    args = parser.parse_args(argv)

    probe = SysfsProbe(args.sysfs, include_virtual=args.all)
    for line in format_report(probe.probe()):
        print(line)
    return 0


if __name__ == "__main__":
    sys.exit(main())
