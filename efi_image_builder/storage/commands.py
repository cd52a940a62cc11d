"""Privilege-scoped external command execution.

Every stage receives an ``ExecutionContext`` and runs its tools through it.
Privileged commands (losetup, mkfs, mount, chroot, grub-install) are
prefixed with ``sudo`` when the process is not already root; unprivileged
ones (parted on the image file) run as the invoking user. A failing command
raises ``CommandError`` carrying the tool's diagnostic.
"""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from typing import Optional, Sequence

from efi_image_builder.exceptions import CommandError
from efi_image_builder.logging import LoggerFactory


log = LoggerFactory.for_commands()
output_log = log.bind(tags=["command", "output"])


@dataclass
class ExecutionContext:
    use_sudo: bool = False

    @classmethod
    def detect(cls) -> ExecutionContext:
        """Use sudo unless the effective user is already root."""
        return cls(use_sudo=os.geteuid() != 0)

    def argv(self, command: Sequence[str], *, privileged: bool = True) -> list[str]:
        argv = [str(part) for part in command]
        if privileged and self.use_sudo:
            return ["sudo", *argv]
        return argv

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        privileged: bool = True,
        input_text: Optional[str] = None,
        log_output: bool = True,
    ) -> subprocess.CompletedProcess:
        """Run a command and return the completed process.

        Raises:
            CommandError: If check is set and the command fails or is missing
        """
        argv = self.argv(command, privileged=privileged)
        log.debug(f"Running command: {' '.join(argv)}")
        try:
            result = self._execute(argv, input_text)
        except OSError as error:
            log.debug(f"Command could not be started: {error}")
            if check:
                raise CommandError(argv, 127, stderr=str(error)) from error
            return subprocess.CompletedProcess(argv, 127, "", str(error))

        if result.stdout and (log_output or result.returncode != 0):
            output_log.trace(f"stdout: {result.stdout.strip()}")
        if result.stderr and (log_output or result.returncode != 0):
            output_log.trace(f"stderr: {result.stderr.strip()}")
        log.debug(f"Command completed with return code {result.returncode}")

        if check and result.returncode != 0:
            raise CommandError(argv, result.returncode, result.stdout, result.stderr)
        return result

    def _execute(
        self, argv: list[str], input_text: Optional[str]
    ) -> subprocess.CompletedProcess:
        return subprocess.run(
            argv,
            input=input_text,
            text=True,
            capture_output=True,
            check=False,
        )
