"""Loop device attach/detach for the backing image.

The image is attached with partition scanning so the kernel creates one
sub-device per partition (``/dev/loopNpM``). Detaching is idempotent: the
teardown path calls it unconditionally, whether or not an attach happened
or an earlier detach already ran.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import time

from efi_image_builder.config.settings import DEFAULT_PARTITION_WAIT_SECONDS
from efi_image_builder.domain.models import AttachState, Image, LoopDevice
from efi_image_builder.exceptions import AttachError, CommandError
from efi_image_builder.logging import LoggerFactory
from efi_image_builder.storage.commands import ExecutionContext


log = LoggerFactory.for_loop()

POLL_INTERVAL_SECONDS = 0.5


class LoopDeviceManager:
    """Attaches one image per run and detaches it exactly once."""

    def __init__(
        self,
        ctx: ExecutionContext,
        partition_wait_seconds: float = DEFAULT_PARTITION_WAIT_SECONDS,
    ):
        self.ctx = ctx
        self.partition_wait_seconds = partition_wait_seconds
        self.attach_count = 0
        self.detach_count = 0

    def attach(self, image: Image) -> LoopDevice:
        """Bind the image to a free loop device with partition scanning.

        The caller owns the returned device from this point on and must
        register its detach before calling ``wait_for_partitions``.

        Raises:
            AttachError: If no loop device is free
        """
        try:
            result = self.ctx.run(
                ["losetup", "--find", "--partscan", "--show", str(image.path)]
            )
        except CommandError as error:
            raise AttachError(str(image.path), error.diagnostic) from error

        path = result.stdout.strip().splitlines()[-1].strip() if result.stdout.strip() else ""
        if not path.startswith("/dev/"):
            raise AttachError(str(image.path), f"losetup returned no device: {result.stdout!r}")

        self.attach_count += 1
        loop = LoopDevice(path=path, image=image, state=AttachState.ATTACHED)
        log.info(f"Attached {image.path} to {path}")

        for partition in image.partitions:
            partition.device_path = loop.partition_path(partition.number)
        return loop

    def wait_for_partitions(self, loop: LoopDevice) -> None:
        """Wait until every partition sub-device node exists.

        Raises:
            AttachError: If a node is still missing after the wait timeout;
                the loop device stays attached
        """
        if shutil.which("udevadm"):
            with contextlib.suppress(CommandError):
                self.ctx.run(["udevadm", "settle", "--timeout=5"], log_output=False)

        expected = [
            partition.device_path
            for partition in loop.image.partitions
            if partition.device_path
        ]
        deadline = time.monotonic() + self.partition_wait_seconds
        while True:
            missing = [path for path in expected if not os.path.exists(path)]
            if not missing:
                log.debug(f"Partition nodes found: {', '.join(expected)}")
                return
            if time.monotonic() >= deadline:
                log.error(f"Partition nodes missing after attach: {', '.join(missing)}")
                raise AttachError(
                    str(loop.image.path),
                    f"partition devices did not appear: {', '.join(missing)}",
                )
            time.sleep(POLL_INTERVAL_SECONDS)

    def detach(self, loop: LoopDevice) -> None:
        """Detach the loop device; a no-op when already detached.

        Raises:
            CommandError: If losetup refuses to detach (device stays attached)
        """
        if not loop.is_attached:
            log.debug(f"{loop.path} already detached")
            return
        self.ctx.run(["losetup", "--detach", loop.path])
        loop.state = AttachState.DETACHED
        self.detach_count += 1
        for partition in loop.image.partitions:
            partition.device_path = None
        log.info(f"Detached {loop.path}")
