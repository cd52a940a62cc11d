"""Provisioning pipeline driver.

Runs the stages strictly in sequence, each one only after the previous one
finished:

    allocate -> partition -> prepare -> attach -> format -> mount ->
    populate -> bind -> customize -> bootloader

Every acquired resource registers its release on a ``Teardown`` stack the
moment it exists. The first ``ProvisionError`` aborts forward progress, the
stack always unwinds afterwards, and the teardown result is attached to the
raised error. Teardown failures after a successful run are reported on the
result as a warning and do not turn the run into a failure.
"""

from __future__ import annotations

import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from efi_image_builder.config.settings import BuildConfig
from efi_image_builder.domain.models import ChrootSession, FstabEntry, Image, LoopDevice
from efi_image_builder.exceptions import (
    CommandError,
    MountError,
    ProvisionError,
    TeardownError,
    UsageError,
)
from efi_image_builder.logging import LoggerFactory, operation_context
from efi_image_builder.storage.commands import ExecutionContext
from efi_image_builder.storage.format import format_partition
from efi_image_builder.storage.image import (
    PartitionTableEntry,
    allocate_image,
    plan_image,
    write_partition_table,
)
from efi_image_builder.storage.loop import LoopDeviceManager
from efi_image_builder.storage.mount import MountStack
from efi_image_builder.storage.populate import populate
from efi_image_builder.system.bootloader import install_bootloader
from efi_image_builder.system.chroot import ChrootExecutor, CustomizationResult
from efi_image_builder.system.identity import ESP_PATH, IdentityResolver
from efi_image_builder.teardown import Teardown


@dataclass
class ProvisionResult:
    image: Image
    loop_path: Optional[str] = None
    partition_table: list[PartitionTableEntry] = field(default_factory=list)
    fstab_entries: list[FstabEntry] = field(default_factory=list)
    customization: Optional[CustomizationResult] = None
    teardown_error: Optional[TeardownError] = None
    completed_stages: list[str] = field(default_factory=list)


class Provisioner:
    """Builds one image from one archive."""

    def __init__(
        self,
        archive: Path,
        output: Optional[Path] = None,
        config: Optional[BuildConfig] = None,
        ctx: Optional[ExecutionContext] = None,
        tempdir_parent: Optional[Path] = None,
    ):
        self.archive = Path(archive)
        self.config = config or BuildConfig.from_settings()
        self.output = Path(output) if output else Path(self.config.image_name)
        self.ctx = ctx or ExecutionContext.detect()
        self.tempdir_parent = tempdir_parent

        self.loops = LoopDeviceManager(self.ctx, self.config.partition_wait_seconds)
        self.mounts = MountStack(self.ctx)
        self.executor = ChrootExecutor(self.ctx, self.config.chroot_failure_policy)
        self.resolver = IdentityResolver(self.executor)
        self.teardown = Teardown()
        self.log = LoggerFactory.for_pipeline()

        self.mount_root: Optional[Path] = None
        self.loop: Optional[LoopDevice] = None
        self._completed: list[str] = []

    @contextmanager
    def _stage(self, name: str):
        try:
            with operation_context(name) as log:
                yield log
        except ProvisionError as error:
            if error.stage is None:
                error.stage = name
            raise
        self._completed.append(name)

    def run(self) -> ProvisionResult:
        """Run every stage, then tear down.

        Raises:
            ProvisionError: The first stage failure, with ``stage`` and
                ``teardown_error`` filled in
        """
        try:
            result = self._run_stages()
        except BaseException as error:
            teardown_error = self.teardown.unwind()
            if isinstance(error, ProvisionError):
                error.teardown_error = teardown_error
            elif teardown_error is not None:
                self.log.error(f"Teardown after interruption failed: {teardown_error}")
            raise

        result.teardown_error = self.teardown.unwind()
        if result.teardown_error is not None:
            self.log.warning(f"Image built but teardown was incomplete: {result.teardown_error}")
        return result

    def _run_stages(self) -> ProvisionResult:
        config = self.config
        if not self.archive.is_file():
            raise UsageError(f"Archive not found: {self.archive}")

        image = plan_image(self.output, config.image_size_bytes, config.esp_end_bytes)
        result = ProvisionResult(image=image, completed_stages=self._completed)

        with self._stage("allocate"):
            allocate_image(image)

        with self._stage("partition"):
            result.partition_table = write_partition_table(self.ctx, image)

        with self._stage("prepare"):
            try:
                self.mount_root = Path(
                    tempfile.mkdtemp(prefix="efi-image-", dir=self.tempdir_parent)
                )
            except OSError as error:
                parent = self.tempdir_parent or tempfile.gettempdir()
                raise MountError("temporary mount root", str(parent), str(error)) from error
            self.teardown.register_tempdir(self.mount_root, self.mounts)

        with self._stage("attach"):
            self.loop = self.loops.attach(image)
            self.teardown.register_loop(self.loops, self.loop)
            result.loop_path = self.loop.path
            self.loops.wait_for_partitions(self.loop)

        with self._stage("format"):
            format_partition(self.ctx, image.esp)
            format_partition(self.ctx, image.root)

        session = ChrootSession(root=self.mount_root, mounts=self.mounts)

        with self._stage("mount"):
            self.teardown.register_mounts(self.mounts)
            self.mounts.mount(image.root.device_path, self.mount_root, image.root.filesystem.value)
            esp_dir = session.host_path(ESP_PATH)
            try:
                self.ctx.run(["mkdir", "-p", str(esp_dir)])
            except CommandError as error:
                raise MountError(image.esp.device_path, str(esp_dir), error.diagnostic) from error
            self.mounts.mount(image.esp.device_path, esp_dir, image.esp.filesystem.value)

        with self._stage("populate"):
            populate(self.ctx, self.archive, self.mount_root)

        with self._stage("bind"):
            for host_path in session.required_binds:
                self.mounts.mount_bind(host_path, session.host_path(host_path))

        with self._stage("customize"):
            result.customization = self.executor.customize(session, self.resolver, config)
            result.fstab_entries = list(self.resolver.written)

        with self._stage("bootloader"):
            install_bootloader(self.ctx, self.loop, session, config.grub_target)

        return result

