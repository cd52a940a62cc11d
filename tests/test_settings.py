"""
Tests for efi_image_builder.config.settings module.

This test suite covers:
- Default settings initialization
- Loading and merging a JSON settings file
- Error handling for corrupted settings files
- BuildConfig validation and construction from settings
"""

import json

import pytest

from efi_image_builder.config import settings
from efi_image_builder.config.settings import BuildConfig


class TestLoadSettings:
    """Tests for load_settings() function."""

    def test_load_defaults_when_no_file(self, tmp_path, monkeypatch):
        """Test that default settings are loaded when file doesn't exist."""
        monkeypatch.setattr(
            "efi_image_builder.config.settings.SETTINGS_PATH",
            tmp_path / "nonexistent" / "settings.json",
        )

        settings.settings_store.values = {}
        settings.load_settings()

        assert settings.settings_store.values == settings.DEFAULT_SETTINGS

    def test_load_merges_with_defaults(self, tmp_path):
        """Test that a partial file overrides only the keys it names."""
        settings_file = tmp_path / "settings.json"
        settings_file.write_text(json.dumps({"image_size_bytes": 1024, "grub_target": "i386-efi"}))

        settings.load_settings(settings_file)

        assert settings.get_setting("image_size_bytes") == 1024
        assert settings.get_setting("grub_target") == "i386-efi"
        assert settings.get_setting("image_name") == "efi.img"

    def test_load_handles_corrupted_json(self, tmp_path):
        """Test that a corrupted file falls back to defaults."""
        settings_file = tmp_path / "settings.json"
        settings_file.write_text("{invalid json")

        settings.load_settings(settings_file)

        assert settings.settings_store.values == settings.DEFAULT_SETTINGS

    def test_load_ignores_non_object(self, tmp_path):
        """Test that a JSON list is ignored."""
        settings_file = tmp_path / "settings.json"
        settings_file.write_text("[1, 2, 3]")

        settings.load_settings(settings_file)

        assert settings.settings_store.values == settings.DEFAULT_SETTINGS

    def test_get_setting_default(self):
        assert settings.get_setting("missing", "fallback") == "fallback"


class TestBuildConfig:
    """Tests for the BuildConfig view of settings."""

    def test_defaults(self):
        config = BuildConfig.from_settings()

        assert config.image_name == "efi.img"
        assert config.image_size_bytes == 8 * 1024**3
        assert config.esp_end_bytes == 256 * 1024**2
        assert config.purge_packages == ("casper", "ubiquity")
        assert config.install_packages == ("xterm", "grub-efi-amd64-signed")
        assert config.grub_target == "x86_64-efi"
        assert config.chroot_failure_policy == "abort"

    def test_from_settings_uses_loaded_values(self, tmp_path):
        settings_file = tmp_path / "settings.json"
        settings_file.write_text(
            json.dumps(
                {
                    "purge_packages": [],
                    "chroot_failure_policy": "CONTINUE",
                    "partition_wait_seconds": 1,
                }
            )
        )
        settings.load_settings(settings_file)

        config = BuildConfig.from_settings()

        assert config.purge_packages == ()
        assert config.chroot_failure_policy == "continue"
        assert config.partition_wait_seconds == 1.0

    def test_esp_must_fit_inside_image(self):
        with pytest.raises(ValueError, match="ESP end"):
            BuildConfig(image_size_bytes=100, esp_end_bytes=100)

    def test_unknown_policy_rejected(self):
        with pytest.raises(ValueError, match="policy"):
            BuildConfig(chroot_failure_policy="retry")
