import argparse
import sys
from pathlib import Path

from efi_image_builder.config.settings import BuildConfig, load_settings
from efi_image_builder.exceptions import ProvisionError
from efi_image_builder.logging import LoggerFactory, setup_logging
from efi_image_builder.pipeline import Provisioner
from efi_image_builder.storage.commands import ExecutionContext


log = LoggerFactory.for_system()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="efi-image-builder",
        description="Build a bootable EFI disk image from a root filesystem archive",
    )
    parser.add_argument(
        "archive",
        nargs="?",
        help="compressed root filesystem (squashfs or tarball)",
    )
    parser.add_argument(
        "-o",
        "--output",
        type=Path,
        help="image file to create (default: efi.img in the working directory)",
    )
    parser.add_argument("-c", "--config", type=Path, help="JSON settings file")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log raw command output")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.archive or not Path(args.archive).is_file():
        parser.print_usage(sys.stderr)
        if args.archive:
            print(f"{parser.prog}: error: archive not found: {args.archive}", file=sys.stderr)
        return 1

    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)

    if args.config:
        load_settings(args.config)
    try:
        config = BuildConfig.from_settings()
    except (TypeError, ValueError) as error:
        log.error(f"Invalid settings: {error}")
        return 1

    archive = Path(args.archive).resolve()
    output = args.output or Path(config.image_name)
    provisioner = Provisioner(archive, output, config, ExecutionContext.detect())

    try:
        result = provisioner.run()
    except ProvisionError as error:
        log.error(f"Stage {error.stage or 'setup'} failed: {error}")
        if error.teardown_error is not None:
            for failure in error.teardown_error.failures:
                log.error(f"Teardown failure: {failure}")
        return 1

    if result.customization is not None and result.customization.failed:
        log.warning(
            f"Customization steps failed: {', '.join(result.customization.failed_steps)}"
        )
    if result.teardown_error is not None:
        for failure in result.teardown_error.failures:
            log.warning(f"Teardown failure: {failure}")

    log.success(f"Image written to {result.image.path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
