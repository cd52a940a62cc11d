"""GRUB EFI installation onto the loop device."""

from __future__ import annotations

from efi_image_builder.config.settings import DEFAULT_GRUB_TARGET
from efi_image_builder.domain.models import ChrootSession, LoopDevice
from efi_image_builder.exceptions import BootloaderError, CommandError
from efi_image_builder.logging import LoggerFactory
from efi_image_builder.storage.commands import ExecutionContext
from efi_image_builder.system.chroot import GRUB_CONFIG_PATH
from efi_image_builder.system.identity import ESP_PATH


log = LoggerFactory.for_bootloader()


def install_bootloader(
    ctx: ExecutionContext,
    loop: LoopDevice,
    session: ChrootSession,
    target: str = DEFAULT_GRUB_TARGET,
) -> None:
    """Install GRUB for ``target`` with the loop device as the target disk.

    Assumes the ESP is mounted at /boot/efi in the session and that
    grub-mkconfig already produced /boot/grub/grub.cfg.

    Raises:
        BootloaderError: If the boot directory structure is missing, the loop
            device is detached, or grub-install fails
    """
    if not loop.is_attached:
        raise BootloaderError(loop.path, "loop device is not attached")

    boot_dir = session.host_path("/boot")
    efi_dir = session.host_path(ESP_PATH)
    grub_config = session.host_path(GRUB_CONFIG_PATH)

    if not grub_config.is_file():
        raise BootloaderError(loop.path, f"missing {GRUB_CONFIG_PATH} in target root")
    if not session.mounts.is_mounted(efi_dir):
        raise BootloaderError(loop.path, f"{ESP_PATH} is not mounted in target root")

    command = [
        "grub-install",
        f"--target={target}",
        f"--boot-directory={boot_dir}/",
        f"--efi-directory={efi_dir}/",
        loop.path,
    ]
    log.info(f"Installing GRUB ({target}) on {loop.path}")
    try:
        ctx.run(command)
    except CommandError as error:
        raise BootloaderError(loop.path, error.diagnostic) from error
    log.info("GRUB EFI installed")
