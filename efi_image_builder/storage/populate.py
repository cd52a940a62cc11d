"""Root filesystem extraction onto the mounted root partition.

Supported archives:
    squashfs:  *.squashfs, *.sfs, *.squash (unsquashfs -f -d)
    tarball:   *.tar, *.tar.gz, *.tgz, *.tar.xz, *.txz, *.tar.bz2, *.tar.zst

Existing files at conflicting paths are overwritten.
"""

from __future__ import annotations

from pathlib import Path

from efi_image_builder.exceptions import CommandError, PopulateError
from efi_image_builder.logging import LoggerFactory
from efi_image_builder.storage.commands import ExecutionContext


log = LoggerFactory.for_populate()

SQUASHFS_SUFFIXES = (".squashfs", ".sfs", ".squash")
TAR_SUFFIXES = (
    ".tar",
    ".tar.gz",
    ".tgz",
    ".tar.xz",
    ".txz",
    ".tar.bz2",
    ".tbz2",
    ".tar.zst",
)


def detect_archive_kind(archive: Path) -> str:
    """Return "squashfs" or "tar" for a supported archive name.

    Files without a recognised suffix are checked for the squashfs magic.

    Raises:
        PopulateError: If the archive type cannot be determined
    """
    name = archive.name.lower()
    if name.endswith(SQUASHFS_SUFFIXES):
        return "squashfs"
    if name.endswith(TAR_SUFFIXES):
        return "tar"
    try:
        with open(archive, "rb") as handle:
            magic = handle.read(4)
    except OSError as error:
        raise PopulateError(str(archive), str(error)) from error
    if magic in (b"hsqs", b"sqsh"):
        return "squashfs"
    raise PopulateError(str(archive), "unrecognised archive format")


def build_extract_command(archive: Path, root: Path) -> list[str]:
    if detect_archive_kind(archive) == "squashfs":
        return ["unsquashfs", "-f", "-d", str(root), str(archive)]
    return [
        "tar",
        "--numeric-owner",
        "--xattrs",
        "--xattrs-include=*",
        "-xpf",
        str(archive),
        "-C",
        str(root),
    ]


def populate(ctx: ExecutionContext, archive: Path, root: Path) -> None:
    """Extract ``archive`` onto the mounted ``root``.

    Raises:
        PopulateError: If the archive is missing, corrupt, or extraction fails
            (for example when the root partition runs out of space)
    """
    archive = Path(archive)
    if not archive.is_file():
        raise PopulateError(str(archive), "archive does not exist")

    command = build_extract_command(archive, Path(root))
    log.info(f"Extracting {archive} onto {root}")
    try:
        ctx.run(command, log_output=False)
    except CommandError as error:
        raise PopulateError(str(archive), error.diagnostic) from error
    log.debug(f"Extracted {archive}")
