"""
Pytest configuration and shared fixtures for efi-image-builder tests.

No test touches real block devices: every external command goes through a
``FakeExecutionContext`` that records the argv and answers from a script.
"""

import shutil
import subprocess
from pathlib import Path
from typing import Callable, List, Optional

import pytest
from loguru import logger

from efi_image_builder.config import settings
from efi_image_builder.config.settings import BuildConfig
from efi_image_builder.domain.models import MIB, ChrootSession, LoopDevice
from efi_image_builder.storage.commands import ExecutionContext
from efi_image_builder.storage.image import plan_image
from efi_image_builder.storage.loop import LoopDeviceManager
from efi_image_builder.storage.mount import MountStack


# ==============================================================================
# Command Execution Fakes
# ==============================================================================


def _contains(command: List[str], pattern: tuple) -> bool:
    """True if ``pattern`` appears as a contiguous run inside ``command``."""
    size = len(pattern)
    return any(
        tuple(command[index : index + size]) == pattern
        for index in range(len(command) - size + 1)
    )


class FakeExecutionContext(ExecutionContext):
    """Execution context that records commands instead of running them.

    Responses are matched against the command (without any sudo prefix) by
    contiguous sub-sequence; the most recently registered match wins.
    Unmatched commands succeed with empty output.
    """

    def __init__(self, use_sudo: bool = False):
        super().__init__(use_sudo=use_sudo)
        self.calls: List[List[str]] = []
        self.inputs: List[Optional[str]] = []
        self._responses: list = []
        self._effects: list = []

    def respond(self, *pattern, stdout="", stderr="", returncode=0):
        self._responses.append((tuple(pattern), returncode, stdout, stderr))

    def fail(self, *pattern, stderr="command failed", returncode=1):
        self.respond(*pattern, stderr=stderr, returncode=returncode)

    def when(self, *pattern, effect: Callable[[List[str]], None]):
        """Run ``effect`` with the command whenever ``pattern`` matches."""
        self._effects.append((tuple(pattern), effect))

    def commands(self, tool: str) -> List[List[str]]:
        """Recorded commands whose program is ``tool`` (sudo stripped)."""
        return [call for call in map(self._strip, self.calls) if call and call[0] == tool]

    def ran(self, *pattern) -> bool:
        return any(_contains(self._strip(call), tuple(pattern)) for call in self.calls)

    @staticmethod
    def _strip(argv: List[str]) -> List[str]:
        return argv[1:] if argv[:1] == ["sudo"] else list(argv)

    def _execute(self, argv, input_text):
        self.calls.append(list(argv))
        self.inputs.append(input_text)
        command = self._strip(argv)

        if command[:2] == ["mkdir", "-p"]:
            Path(command[2]).mkdir(parents=True, exist_ok=True)
        for pattern, effect in self._effects:
            if _contains(command, pattern):
                effect(command)

        for pattern, returncode, stdout, stderr in reversed(self._responses):
            if _contains(command, pattern):
                return subprocess.CompletedProcess(argv, returncode, stdout, stderr)
        return subprocess.CompletedProcess(argv, 0, "", "")


def parted_output(image_path, size_bytes: int, esp_end_bytes: int) -> str:
    """Machine-readable parted output for a correctly partitioned image."""
    return (
        "BYT;\n"
        f"{image_path}:{size_bytes}B:file:512:512:gpt::;\n"
        f"1:{MIB}B:{esp_end_bytes - 1}B:{esp_end_bytes - MIB}B:fat32::esp;\n"
        f"2:{esp_end_bytes}B:{size_bytes - MIB - 1}B:{size_bytes - MIB - esp_end_bytes}B:ext4::;\n"
    )


# ==============================================================================
# Global State
# ==============================================================================


@pytest.fixture(autouse=True)
def reset_global_state():
    """Reset settings before each test and drop log sinks added during it."""
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    yield
    logger.remove()


@pytest.fixture
def log_messages():
    """Capture formatted log messages emitted during the test."""
    messages: List[str] = []
    handler_id = logger.add(messages.append, level="TRACE", format="{level} {message}")
    yield messages
    logger.remove(handler_id)


# ==============================================================================
# Domain Fixtures
# ==============================================================================


@pytest.fixture
def fake_ctx() -> FakeExecutionContext:
    return FakeExecutionContext()


@pytest.fixture
def small_config() -> BuildConfig:
    """A 64 MiB image with a 16 MiB ESP that fails fast on missing nodes."""
    return BuildConfig(
        image_size_bytes=64 * MIB,
        esp_end_bytes=16 * MIB,
        partition_wait_seconds=0,
    )


@pytest.fixture
def image(tmp_path, small_config):
    return plan_image(
        tmp_path / "efi.img", small_config.image_size_bytes, small_config.esp_end_bytes
    )


@pytest.fixture
def attached_loop(image) -> LoopDevice:
    loop = LoopDevice(path="/dev/loop7", image=image)
    for partition in image.partitions:
        partition.device_path = loop.partition_path(partition.number)
    return loop


@pytest.fixture
def target_root(tmp_path) -> Path:
    """An empty directory standing in for the mounted root partition."""
    root = tmp_path / "target"
    for name in ("dev", "proc", "sys", "boot/efi", "boot/grub", "etc"):
        (root / name).mkdir(parents=True)
    return root


@pytest.fixture
def session(fake_ctx, target_root) -> ChrootSession:
    """A chroot session with root, ESP and all pseudo-filesystems mounted."""
    mounts = MountStack(fake_ctx)
    mounts.mount("/dev/loop7p2", target_root, "ext4")
    mounts.mount("/dev/loop7p1", target_root / "boot" / "efi", "vfat")
    for bind in ("/dev", "/proc", "/sys"):
        mounts.mount_bind(bind, target_root / bind.lstrip("/"))
    return ChrootSession(root=target_root, mounts=mounts)


@pytest.fixture
def unbound_session(fake_ctx, target_root) -> ChrootSession:
    """A chroot session with the filesystems mounted but no binds."""
    mounts = MountStack(fake_ctx)
    mounts.mount("/dev/loop7p2", target_root, "ext4")
    mounts.mount("/dev/loop7p1", target_root / "boot" / "efi", "vfat")
    return ChrootSession(root=target_root, mounts=mounts)


def script_identities(ctx: FakeExecutionContext) -> None:
    """Answer df and blkid inside the chroot for root and ESP."""
    ctx.respond("df", "--output=source", "/", stdout="Filesystem\n/dev/loop7p2\n")
    ctx.respond(
        "df", "--output=source", "/boot/efi", stdout="Filesystem\n/dev/loop7p1\n"
    )
    ctx.respond("UUID", "/dev/loop7p2", stdout="0b1c-root\n")
    ctx.respond("UUID", "/dev/loop7p1", stdout="3A1F-22C0\n")


@pytest.fixture
def identity_ctx(fake_ctx) -> FakeExecutionContext:
    script_identities(fake_ctx)
    return fake_ctx


@pytest.fixture
def parted_print():
    return parted_output


# ==============================================================================
# Pipeline Fixtures
# ==============================================================================


@pytest.fixture
def pipeline_ctx(tmp_path, small_config, mocker) -> FakeExecutionContext:
    """Fake context scripted for one complete, successful provisioning run.

    Extraction creates the directories the later stages expect, grub-mkconfig
    writes grub.cfg and unmounting the root clears what extraction wrote.
    """
    ctx = FakeExecutionContext()
    mount_parent = tmp_path / "mnt"
    mount_parent.mkdir()

    ctx.respond(
        "parted",
        "-s",
        "-m",
        stdout=parted_output(
            tmp_path / "efi.img",
            small_config.image_size_bytes,
            small_config.esp_end_bytes,
        ),
    )
    ctx.respond("losetup", "--find", stdout="/dev/loop7\n")
    script_identities(ctx)

    def extract(command):
        root = Path(command[command.index("-d") + 1])
        for name in ("dev", "proc", "sys", "etc", "boot/grub"):
            (root / name).mkdir(parents=True, exist_ok=True)

    def write_grub_config(command):
        root = Path(command[1])
        (root / "boot" / "grub" / "grub.cfg").write_text("menuentry {}\n")

    def clear_root(command):
        target = Path(command[-1])
        if target.parent == mount_parent:
            for child in target.iterdir():
                shutil.rmtree(child)

    ctx.when("unsquashfs", effect=extract)
    ctx.when("grub-mkconfig", effect=write_grub_config)
    ctx.when("umount", effect=clear_root)

    mocker.patch.object(LoopDeviceManager, "wait_for_partitions", return_value=None)
    return ctx


@pytest.fixture
def archive(tmp_path) -> Path:
    path = tmp_path / "filesystem.squashfs"
    path.write_bytes(b"hsqs" + b"\0" * 60)
    return path
