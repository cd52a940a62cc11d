"""Mount hierarchy tracking with reverse-order teardown.

Every mount performed during a run is recorded on a ``MountStack`` with a
sequence number. ``unmount_all`` walks the stack strictly in reverse
sequence order. Each entry gets a graceful ``umount`` first and a forced
lazy ``umount -lf`` if that fails, so one busy mount never blocks the rest
of the walk. Failures are collected and returned rather than raised.

Typical stack for one run:
    1. /dev/loop0p2  -> <root>
    2. /dev/loop0p1  -> <root>/boot/efi
    3. /dev  (bind)  -> <root>/dev
    4. /proc (bind)  -> <root>/proc
    5. /sys  (bind)  -> <root>/sys
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, Optional

from efi_image_builder.domain.models import MountPoint, TeardownFailure
from efi_image_builder.exceptions import CommandError, MountError
from efi_image_builder.logging import LoggerFactory
from efi_image_builder.storage.commands import ExecutionContext


log = LoggerFactory.for_mount()


def is_active_mount(mountpoint: Path) -> bool:
    """Check /proc/mounts for an active mount at the given path."""
    target = os.path.realpath(mountpoint)
    try:
        with open("/proc/mounts", "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                # /proc/mounts escapes spaces as \040
                if len(parts) > 1 and parts[1].replace("\\040", " ") == target:
                    return True
    except FileNotFoundError:
        return os.path.ismount(target)
    return False


class MountStack:
    """Ordered record of the mounts performed during one run."""

    def __init__(self, ctx: ExecutionContext):
        self.ctx = ctx
        self._mounts: list[MountPoint] = []
        self._next_sequence = 1
        self.unmount_order: list[Path] = []

    @property
    def mounted(self) -> list[MountPoint]:
        """Currently tracked mounts in mount order."""
        return list(self._mounts)

    @property
    def is_empty(self) -> bool:
        return not self._mounts

    def is_mounted(self, target: Path) -> bool:
        target = Path(target)
        return any(mount.target == target for mount in self._mounts)

    def find(self, target: Path) -> Optional[MountPoint]:
        target = Path(target)
        for mount in self._mounts:
            if mount.target == target:
                return mount
        return None

    def mount(
        self,
        source: str,
        target: Path,
        kind: Optional[str] = None,
        options: Iterable[str] = (),
    ) -> MountPoint:
        """Mount ``source`` on ``target`` and track it.

        Raises:
            MountError: If the target does not exist, is already tracked, or
                mount rejects the request
        """
        return self._mount(source, Path(target), kind, tuple(options), is_bind=False)

    def mount_bind(self, host_path: str, target: Path) -> MountPoint:
        """Bind a host pseudo-filesystem tree (e.g., /dev) onto ``target``."""
        return self._mount(host_path, Path(target), None, (), is_bind=True)

    def _mount(
        self,
        source: str,
        target: Path,
        kind: Optional[str],
        options: tuple[str, ...],
        *,
        is_bind: bool,
    ) -> MountPoint:
        if not target.is_dir():
            raise MountError(source, str(target), "mount target does not exist")
        if self.is_mounted(target):
            raise MountError(source, str(target), "target is already mounted")

        command = ["mount"]
        if is_bind:
            command.append("--bind")
        else:
            if kind:
                command.extend(["-t", kind])
            if options:
                command.extend(["-o", ",".join(options)])
        command.extend([source, str(target)])

        try:
            self.ctx.run(command)
        except CommandError as error:
            raise MountError(source, str(target), error.diagnostic) from error

        mount = MountPoint(
            source=source,
            target=target,
            kind=kind,
            options=options,
            sequence=self._next_sequence,
            is_bind=is_bind,
        )
        self._next_sequence += 1
        self._mounts.append(mount)
        log.info(f"Mounted {source} on {target}" + (" (bind)" if is_bind else ""))
        return mount

    def unmount_all(self) -> list[TeardownFailure]:
        """Unmount every tracked mount in reverse sequence order.

        Returns:
            One failure per mount that stayed mounted after both the graceful
            and the lazy attempt. Those mounts remain tracked.
        """
        failures: list[TeardownFailure] = []
        for mount in sorted(self._mounts, key=lambda m: m.sequence, reverse=True):
            self.unmount_order.append(mount.target)
            failure = self._unmount(mount)
            if failure is None:
                self._mounts.remove(mount)
            else:
                failures.append(failure)
        return failures

    def _unmount(self, mount: MountPoint) -> Optional[TeardownFailure]:
        target = str(mount.target)
        try:
            self.ctx.run(["umount", target])
            log.info(f"Unmounted {target}")
            return None
        except CommandError as error:
            log.warning(f"Failed to unmount {target}: {error.diagnostic}")

        log.debug(f"Normal unmount failed, attempting lazy unmount of {target}")
        try:
            self.ctx.run(["umount", "-lf", target])
            log.info(f"Lazy unmounted {target}")
            return None
        except CommandError as error:
            if not is_active_mount(mount.target):
                log.debug(f"{target} already unmounted")
                return None
            log.error(f"Failed to lazy unmount {target}: {error.diagnostic}")
            return TeardownFailure("unmount", target, error.diagnostic)
