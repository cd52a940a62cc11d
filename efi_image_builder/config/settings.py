"""Settings storage for build configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional


SETTINGS_PATH = Path(
    os.environ.get(
        "EFI_IMAGE_BUILDER_SETTINGS_PATH",
        Path.home() / ".config" / "efi-image-builder" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_IMAGE_NAME = "efi.img"
DEFAULT_IMAGE_SIZE_BYTES = 8 * 1024**3
DEFAULT_ESP_END_BYTES = 256 * 1024**2
DEFAULT_GRUB_TARGET = "x86_64-efi"
DEFAULT_PARTITION_WAIT_SECONDS = 5.0

CHROOT_POLICY_ABORT = "abort"
CHROOT_POLICY_CONTINUE = "continue"

DEFAULT_SETTINGS: dict[str, Any] = {
    "image_name": DEFAULT_IMAGE_NAME,
    "image_size_bytes": DEFAULT_IMAGE_SIZE_BYTES,
    "esp_end_bytes": DEFAULT_ESP_END_BYTES,
    "purge_packages": ["casper", "ubiquity"],
    "install_packages": ["xterm", "grub-efi-amd64-signed"],
    "grub_target": DEFAULT_GRUB_TARGET,
    "chroot_failure_policy": CHROOT_POLICY_ABORT,
    "partition_wait_seconds": DEFAULT_PARTITION_WAIT_SECONDS,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings(path: Optional[Path] = None) -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    path = path or SETTINGS_PATH
    if not path.exists():
        return
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


@dataclass(frozen=True)
class BuildConfig:
    """Typed view of the settings used by one provisioning run."""

    image_name: str = DEFAULT_IMAGE_NAME
    image_size_bytes: int = DEFAULT_IMAGE_SIZE_BYTES
    esp_end_bytes: int = DEFAULT_ESP_END_BYTES
    purge_packages: tuple[str, ...] = ("casper", "ubiquity")
    install_packages: tuple[str, ...] = ("xterm", "grub-efi-amd64-signed")
    grub_target: str = DEFAULT_GRUB_TARGET
    chroot_failure_policy: str = CHROOT_POLICY_ABORT
    partition_wait_seconds: float = DEFAULT_PARTITION_WAIT_SECONDS

    def __post_init__(self) -> None:
        if self.esp_end_bytes >= self.image_size_bytes:
            raise ValueError(
                f"ESP end ({self.esp_end_bytes}) must be below the image size "
                f"({self.image_size_bytes})"
            )
        if self.chroot_failure_policy not in (CHROOT_POLICY_ABORT, CHROOT_POLICY_CONTINUE):
            raise ValueError(
                f"Unknown chroot failure policy: {self.chroot_failure_policy}"
            )

    @classmethod
    def from_settings(cls) -> BuildConfig:
        return cls(
            image_name=str(get_setting("image_name", DEFAULT_IMAGE_NAME)),
            image_size_bytes=int(get_setting("image_size_bytes", DEFAULT_IMAGE_SIZE_BYTES)),
            esp_end_bytes=int(get_setting("esp_end_bytes", DEFAULT_ESP_END_BYTES)),
            purge_packages=tuple(get_setting("purge_packages", ())),
            install_packages=tuple(get_setting("install_packages", ())),
            grub_target=str(get_setting("grub_target", DEFAULT_GRUB_TARGET)),
            chroot_failure_policy=str(
                get_setting("chroot_failure_policy", CHROOT_POLICY_ABORT)
            ).lower(),
            partition_wait_seconds=float(
                get_setting("partition_wait_seconds", DEFAULT_PARTITION_WAIT_SECONDS)
            ),
        )


load_settings()
