"""Custom exceptions for image provisioning.

Every pipeline stage raises its own exception type so the driver can report
which stage failed together with the diagnostic of the underlying tool.

Exception Hierarchy:
    ProvisionError (base)
        ├── UsageError
        ├── CommandError
        ├── AllocationError
        ├── AttachError
        ├── FormatError
        ├── MountError
        ├── PopulateError
        ├── ChrootCommandError
        ├── IdentityError
        ├── BootloaderError
        └── TeardownError

Usage:
    from efi_image_builder.exceptions import FormatError

    try:
        ctx.run(["mkfs.ext4", "-F", device])
    except CommandError as error:
        raise FormatError(device, error.diagnostic) from error
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from efi_image_builder.domain.models import TeardownFailure


class ProvisionError(Exception):
    """Base exception for all provisioning operations."""

    # Set by the pipeline driver: the stage that raised this error and the
    # result of the teardown that ran afterwards.
    stage: Optional[str] = None
    teardown_error: Optional["TeardownError"] = None


class UsageError(ProvisionError):
    """Command line arguments are missing or invalid."""


class CommandError(ProvisionError):
    """An external command exited non-zero or could not be started."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: int,
        stdout: str = "",
        stderr: str = "",
    ):
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        super().__init__(
            f"Command failed ({' '.join(self.command)}) "
            f"with code {returncode}: {self.diagnostic}"
        )

    @property
    def diagnostic(self) -> str:
        return self.stderr.strip() or self.stdout.strip() or "Command failed"


class AllocationError(ProvisionError):
    """Backing image could not be created or partitioned."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot allocate image {path}: {reason}")


class AttachError(ProvisionError):
    """Backing image could not be attached as a loop device."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot attach {path} to a loop device: {reason}")


class FormatError(ProvisionError):
    """Filesystem creation failed."""

    def __init__(self, device: str, reason: str):
        self.device = device
        self.reason = reason
        super().__init__(f"Cannot format {device}: {reason}")


class MountError(ProvisionError):
    """Mount request was rejected."""

    def __init__(self, source: str, target: str, reason: str):
        self.source = source
        self.target = target
        self.reason = reason
        super().__init__(f"Cannot mount {source} on {target}: {reason}")


class PopulateError(ProvisionError):
    """Archive could not be extracted onto the target root."""

    def __init__(self, archive: str, reason: str):
        self.archive = archive
        self.reason = reason
        super().__init__(f"Cannot extract {archive}: {reason}")


class ChrootCommandError(ProvisionError):
    """A customization step inside the target root failed."""

    def __init__(self, step: str, reason: str):
        self.step = step
        self.reason = reason
        super().__init__(f"Chroot step '{step}' failed: {reason}")


class IdentityError(ProvisionError):
    """Backing device or filesystem UUID could not be determined."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot resolve identity of {path}: {reason}")


class BootloaderError(ProvisionError):
    """Bootloader installation failed."""

    def __init__(self, device: str, reason: str):
        self.device = device
        self.reason = reason
        super().__init__(f"Cannot install bootloader on {device}: {reason}")


class TeardownError(ProvisionError):
    """One or more release actions failed during teardown."""

    def __init__(self, failures: Sequence["TeardownFailure"]):
        self.failures = list(failures)
        details = "; ".join(str(failure) for failure in self.failures)
        super().__init__(f"{len(self.failures)} teardown action(s) failed: {details}")
