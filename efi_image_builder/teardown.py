"""Release stack for everything a provisioning run acquires.

Each acquisition registers its matching release right away. ``unwind``
runs the releases in reverse registration order exactly once, whatever
happened before. A failing release never stops the ones after it; all
failures are collected into a single ``TeardownError``.

Registration order in the pipeline:
    1. temporary mount root    -> rmdir (only once no mounts are tracked)
    2. loop device             -> losetup --detach
    3. mount stack             -> reverse-order umount with lazy fallback

so teardown unmounts binds, ESP and root, then detaches, then removes the
directory.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

from efi_image_builder.domain.models import LoopDevice, TeardownFailure
from efi_image_builder.exceptions import CommandError, TeardownError
from efi_image_builder.logging import LoggerFactory
from efi_image_builder.storage.loop import LoopDeviceManager
from efi_image_builder.storage.mount import MountStack


log = LoggerFactory.for_teardown()

# A release returns the failures it could not resolve, or None on success.
Release = Callable[[], Optional[list[TeardownFailure]]]


class Teardown:
    def __init__(self) -> None:
        self._releases: list[tuple[str, str, Release]] = []
        self._unwound = False

    def __len__(self) -> int:
        return len(self._releases)

    def callback(self, action: str, target: str, release: Release) -> None:
        """Register a release; it runs before every earlier registration."""
        self._releases.append((action, target, release))

    def register_mounts(self, mounts: MountStack) -> None:
        self.callback("unmount", "mount stack", mounts.unmount_all)

    def register_loop(self, manager: LoopDeviceManager, loop: LoopDevice) -> None:
        def release() -> None:
            manager.detach(loop)

        self.callback("detach", loop.path, release)

    def register_tempdir(self, path: Path, mounts: MountStack) -> None:
        def release() -> Optional[list[TeardownFailure]]:
            if not mounts.is_empty:
                remaining = ", ".join(str(mount.target) for mount in mounts.mounted)
                return [
                    TeardownFailure(
                        "rmdir", str(path), f"mounts still active: {remaining}"
                    )
                ]
            path.rmdir()
            log.debug(f"Removed {path}")
            return None

        self.callback("rmdir", str(path), release)

    def unwind(self) -> Optional[TeardownError]:
        """Run every registered release in reverse order.

        Returns:
            TeardownError listing every failed release, or None if all succeeded
        """
        if self._unwound:
            return None
        self._unwound = True

        failures: list[TeardownFailure] = []
        for action, target, release in reversed(self._releases):
            try:
                result = release()
            except CommandError as error:
                failures.append(TeardownFailure(action, target, error.diagnostic))
                log.error(f"{action} {target} failed: {error.diagnostic}")
                continue
            except OSError as error:
                failures.append(TeardownFailure(action, target, str(error)))
                log.error(f"{action} {target} failed: {error}")
                continue
            if result:
                failures.extend(result)
                for failure in result:
                    log.error(f"Teardown: {failure}")
        self._releases.clear()

        if failures:
            return TeardownError(failures)
        log.info("Teardown complete")
        return None
