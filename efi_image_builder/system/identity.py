"""Filesystem identity resolution and fstab generation.

Device discovery sits behind the ``IdentityBackend`` protocol. The default
backend asks the tools inside the chroot: ``df --output=source <path>`` for
the backing device and ``blkid -o value -s UUID <device>`` for its UUID.

The fstab is only ever appended to. Each identity produces a comment naming
the transient device used during this run followed by a ``UUID=`` entry:

    # / was on /dev/loop0p2 during installation
    UUID=0b1c...  / ext4 errors=remount-ro 0 1
    # /boot/efi was on /dev/loop0p1 during installation
    UUID=3A1F-22C0 /boot/efi vfat umask=0077 0 1

Writing twice appends twice; duplicates are not detected.
"""

from __future__ import annotations

from typing import Optional, Protocol, Sequence

from efi_image_builder.domain.models import ChrootSession, FilesystemIdentity, FstabEntry
from efi_image_builder.exceptions import ChrootCommandError, IdentityError
from efi_image_builder.logging import LoggerFactory
from efi_image_builder.system.chroot import ChrootExecutor


log = LoggerFactory.for_identity()

ROOT_PATH = "/"
ESP_PATH = "/boot/efi"
FSTAB_PATH = "/etc/fstab"

# mount path -> (options, dump, pass)
FSTAB_OPTIONS = {
    ROOT_PATH: ("errors=remount-ro", 0, 1),
    ESP_PATH: ("umask=0077", 0, 1),
}
DEFAULT_FSTAB_OPTIONS = ("defaults", 0, 2)


class IdentityBackend(Protocol):
    def backing_device(self, session: ChrootSession, path: str) -> str:
        ...

    def filesystem_uuid(self, session: ChrootSession, device: str) -> str:
        ...


class ChrootToolBackend:
    """Resolve devices and UUIDs with df and blkid run inside the chroot."""

    def __init__(self, executor: ChrootExecutor):
        self.executor = executor

    def backing_device(self, session: ChrootSession, path: str) -> str:
        try:
            output = self.executor.run(
                session, "resolve-device", ["df", "--output=source", path]
            )
        except ChrootCommandError as error:
            raise IdentityError(path, f"df failed: {error.reason}") from error
        lines = [line.strip() for line in output.splitlines()[1:] if line.strip()]
        if not lines:
            raise IdentityError(path, "no backing device reported")
        return lines[0]

    def filesystem_uuid(self, session: ChrootSession, device: str) -> str:
        try:
            output = self.executor.run(
                session, "resolve-uuid", ["blkid", "-o", "value", "-s", "UUID", device]
            )
        except ChrootCommandError as error:
            raise IdentityError(device, f"blkid failed: {error.reason}") from error
        uuid = output.strip()
        if not uuid:
            raise IdentityError(device, "device exposes no filesystem UUID")
        return uuid


class IdentityResolver:
    def __init__(
        self,
        executor: ChrootExecutor,
        backend: Optional[IdentityBackend] = None,
    ):
        self.executor = executor
        self.backend = backend or ChrootToolBackend(executor)
        self.written: list[FstabEntry] = []

    def resolve(self, session: ChrootSession, path: str) -> FilesystemIdentity:
        """Resolve the device and UUID backing ``path`` inside the session.

        Raises:
            IdentityError: If ``path`` is not a tracked filesystem mount, or no
                device or UUID can be determined
        """
        mount = session.mounts.find(session.host_path(path))
        if mount is None or mount.is_bind:
            raise IdentityError(path, "path is not mounted in the session")

        device = self.backend.backing_device(session, path)
        if device != mount.source:
            log.warning(
                f"{path} reports backing device {device}, mounted from {mount.source}"
            )
        uuid = self.backend.filesystem_uuid(session, device)
        identity = FilesystemIdentity(
            device=device,
            uuid=uuid,
            mount_path=path,
            kind=mount.kind or "auto",
        )
        log.info(f"{path} is {device} (UUID={uuid})")
        return identity

    def resolve_root(self, session: ChrootSession) -> FilesystemIdentity:
        return self.resolve(session, ROOT_PATH)

    def resolve_esp(self, session: ChrootSession) -> FilesystemIdentity:
        return self.resolve(session, ESP_PATH)

    def resolve_all(self, session: ChrootSession) -> list[FilesystemIdentity]:
        return [self.resolve_root(session), self.resolve_esp(session)]

    def write_fstab(
        self,
        session: ChrootSession,
        identities: Sequence[FilesystemIdentity],
    ) -> list[FstabEntry]:
        """Append one comment and one entry per identity to /etc/fstab.

        Raises:
            ChrootCommandError: If the table cannot be written
        """
        entries = [fstab_entry_for(identity) for identity in identities]
        for entry in entries:
            self.executor.run(
                session,
                "write-fstab",
                ["tee", "-a", FSTAB_PATH],
                input_text=entry.render(),
            )
            log.debug(f"Appended fstab entry for {entry.mount_path}")
            self.written.append(entry)
        return entries


def fstab_entry_for(identity: FilesystemIdentity) -> FstabEntry:
    options, dump, passno = FSTAB_OPTIONS.get(identity.mount_path, DEFAULT_FSTAB_OPTIONS)
    return FstabEntry(
        uuid=identity.uuid,
        mount_path=identity.mount_path,
        kind=identity.kind,
        options=options,
        dump=dump,
        passno=passno,
        comment=f"{identity.mount_path} was on {identity.device} during installation",
    )
