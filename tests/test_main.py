"""Tests for main.py - the efi-image-builder command line."""

from unittest.mock import Mock, patch

import pytest

from efi_image_builder import main as main_module
from efi_image_builder.domain.models import TeardownFailure
from efi_image_builder.exceptions import PopulateError, TeardownError
from efi_image_builder.system.chroot import CustomizationResult


@pytest.fixture
def in_tmp(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path


class TestUsage:
    def test_no_arguments(self, in_tmp, capsys):
        """Test that running without an archive prints usage and creates nothing."""
        assert main_module.main([]) == 1

        assert "usage: efi-image-builder" in capsys.readouterr().err
        assert list(in_tmp.iterdir()) == []

    def test_missing_archive(self, in_tmp, capsys):
        assert main_module.main(["missing.squashfs"]) == 1

        err = capsys.readouterr().err
        assert "usage:" in err
        assert "archive not found: missing.squashfs" in err
        assert not (in_tmp / "efi.img").exists()

    def test_help_exits_zero(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main_module.main(["--help"])

        assert exc_info.value.code == 0
        assert "--output" in capsys.readouterr().out


class TestRun:
    @pytest.fixture
    def provisioner_cls(self, mocker):
        return mocker.patch("efi_image_builder.main.Provisioner")

    def test_success(self, in_tmp, archive, provisioner_cls):
        provisioner_cls.return_value.run.return_value = Mock(
            customization=CustomizationResult(completed=["autoremove"]),
            teardown_error=None,
        )

        assert main_module.main([str(archive), "--log-dir", str(in_tmp / "logs")]) == 0

        args = provisioner_cls.call_args.args
        assert args[0] == archive.resolve()
        assert str(args[1]) == "efi.img"

    def test_output_option(self, in_tmp, archive, provisioner_cls):
        provisioner_cls.return_value.run.return_value = Mock(customization=None, teardown_error=None)

        main_module.main([str(archive), "-o", "disk.img", "--log-dir", str(in_tmp / "logs")])

        assert str(provisioner_cls.call_args.args[1]) == "disk.img"

    @patch("efi_image_builder.main.setup_logging")
    def test_stage_failure_returns_one(
        self, mock_setup, in_tmp, archive, provisioner_cls, log_messages
    ):
        error = PopulateError(str(archive), "corrupt archive")
        error.stage = "populate"
        error.teardown_error = TeardownError(
            [TeardownFailure("unmount", "/mnt/efi-image-x", "target is busy")]
        )
        provisioner_cls.return_value.run.side_effect = error

        assert main_module.main([str(archive), "--log-dir", str(in_tmp / "logs")]) == 1

        assert any("Stage populate failed" in message for message in log_messages)
        assert any("unmount /mnt/efi-image-x: target is busy" in message for message in log_messages)

    def test_config_file(self, in_tmp, archive, provisioner_cls):
        config_file = in_tmp / "settings.json"
        config_file.write_text('{"image_name": "custom.img", "grub_target": "i386-efi"}')
        provisioner_cls.return_value.run.return_value = Mock(customization=None, teardown_error=None)

        main_module.main([str(archive), "-c", str(config_file), "--log-dir", str(in_tmp / "logs")])

        args = provisioner_cls.call_args.args
        assert str(args[1]) == "custom.img"
        assert args[2].grub_target == "i386-efi"

    def test_invalid_config(self, in_tmp, archive, provisioner_cls):
        config_file = in_tmp / "settings.json"
        config_file.write_text('{"chroot_failure_policy": "retry"}')

        assert main_module.main([str(archive), "-c", str(config_file), "--log-dir", str(in_tmp / "logs")]) == 1
        provisioner_cls.assert_not_called()

    @patch("efi_image_builder.main.ExecutionContext.detect")
    def test_execution_context_detected(self, mock_detect, in_tmp, archive, provisioner_cls):
        provisioner_cls.return_value.run.return_value = Mock(customization=None, teardown_error=None)

        main_module.main([str(archive), "--log-dir", str(in_tmp / "logs")])

        assert provisioner_cls.call_args.args[3] is mock_detect.return_value
