"""Customization of the installed system from inside a chroot.

The fixed customization sequence is:

    1. purge-installer-packages   apt-get purge -y <installer-only packages>
    2. autoremove                 apt-get autoremove -y --purge
    3. regenerate-locales         locale-gen --purge
    4. write-fstab                resolve root/ESP UUIDs, append /etc/fstab
    5. install-boot-packages      apt-get install -y <boot menu/terminal packages>
    6. generate-grub-config       grub-mkconfig -o /boot/grub/grub.cfg

No command runs until /dev, /proc and /sys are bind mounted in the session.
Under the default "abort" policy the first failing step raises; under
"continue" failures are recorded and the remaining steps still run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Optional, Sequence

from efi_image_builder.config.settings import (
    CHROOT_POLICY_ABORT,
    CHROOT_POLICY_CONTINUE,
    BuildConfig,
)
from efi_image_builder.domain.models import ChrootSession
from efi_image_builder.exceptions import ChrootCommandError, CommandError, ProvisionError
from efi_image_builder.logging import LoggerFactory
from efi_image_builder.storage.commands import ExecutionContext

if TYPE_CHECKING:
    from efi_image_builder.system.identity import IdentityResolver


log = LoggerFactory.for_chroot()

CHROOT_ENV = ("DEBIAN_FRONTEND=noninteractive",)
GRUB_CONFIG_PATH = "/boot/grub/grub.cfg"


@dataclass(frozen=True)
class ChrootStep:
    """A named customization step: a command, or a callable for the session."""

    name: str
    argv: tuple[str, ...] = ()
    action: Optional[Callable[[ChrootSession], object]] = None


@dataclass
class CustomizationResult:
    completed: list[str] = field(default_factory=list)
    failed: list[ProvisionError] = field(default_factory=list)

    @property
    def failed_steps(self) -> list[str]:
        return [getattr(error, "step", type(error).__name__) for error in self.failed]


class ChrootExecutor:
    """Runs commands with the mounted target root as filesystem root."""

    def __init__(self, ctx: ExecutionContext, policy: str = CHROOT_POLICY_ABORT):
        if policy not in (CHROOT_POLICY_ABORT, CHROOT_POLICY_CONTINUE):
            raise ValueError(f"Unknown chroot failure policy: {policy}")
        self.ctx = ctx
        self.policy = policy

    def run(
        self,
        session: ChrootSession,
        step: str,
        argv: Sequence[str],
        input_text: Optional[str] = None,
    ) -> str:
        """Run one command inside the session and return its stdout.

        Raises:
            ChrootCommandError: If a required bind is missing or the command fails
        """
        missing = session.missing_binds()
        if missing:
            raise ChrootCommandError(
                step, f"required binds not mounted: {', '.join(missing)}"
            )

        command = ["chroot", str(session.root), "env", *CHROOT_ENV, *argv]
        log.debug(f"[{step}] {' '.join(argv)}")
        try:
            result = self.ctx.run(command, input_text=input_text)
        except CommandError as error:
            raise ChrootCommandError(step, error.diagnostic) from error
        return result.stdout

    def run_steps(
        self, session: ChrootSession, steps: Sequence[ChrootStep]
    ) -> CustomizationResult:
        result = CustomizationResult()
        for step in steps:
            log.info(f"Running step {step.name}")
            try:
                if step.action is not None:
                    step.action(session)
                else:
                    self.run(session, step.name, step.argv)
            except ProvisionError as error:
                if self.policy == CHROOT_POLICY_ABORT:
                    raise
                log.error(f"Step {step.name} failed, continuing: {error}")
                result.failed.append(error)
                continue
            result.completed.append(step.name)
        return result

    def customize(
        self,
        session: ChrootSession,
        resolver: IdentityResolver,
        config: BuildConfig,
    ) -> CustomizationResult:
        return self.run_steps(session, build_customization_steps(resolver, config))


def build_customization_steps(
    resolver: IdentityResolver, config: BuildConfig
) -> list[ChrootStep]:
    steps: list[ChrootStep] = []
    if config.purge_packages:
        steps.append(
            ChrootStep(
                "purge-installer-packages",
                ("apt-get", "purge", "-y", *config.purge_packages),
            )
        )
    steps.extend(
        [
            ChrootStep("autoremove", ("apt-get", "autoremove", "-y", "--purge")),
            ChrootStep("regenerate-locales", ("locale-gen", "--purge")),
            ChrootStep(
                "write-fstab",
                action=lambda session: resolver.write_fstab(
                    session, resolver.resolve_all(session)
                ),
            ),
        ]
    )
    if config.install_packages:
        steps.append(
            ChrootStep(
                "install-boot-packages",
                ("apt-get", "install", "-y", *config.install_packages),
            )
        )
    steps.append(
        ChrootStep("generate-grub-config", ("grub-mkconfig", "-o", GRUB_CONFIG_PATH))
    )
    return steps
