"""Filesystem kinds the engine can recreate, and how to format them."""

import logging
from enum import Enum

from .. import __util__

logger = logging.getLogger(__name__)


class FormatError(__util__.AbortError):
    """Creating a filesystem on an image partition failed."""

    pass


class FilesystemKind(Enum):
    """Filesystem types known to the engine."""

    VFAT = "vfat"
    EXT2 = "ext2"
    EXT3 = "ext3"
    EXT4 = "ext4"
    SWAP = "swap"
    UNSUPPORTED = "unsupported"

    @classmethod
    def from_fstype(cls, fstype: str | None) -> "FilesystemKind":
        """Map an lsblk FSTYPE string to a kind."""
        try:
            kind = cls((fstype or "").strip().lower())
        except ValueError:
            return cls.UNSUPPORTED
        return kind

    @property
    def is_ext(self) -> bool:
        return self in (FilesystemKind.EXT2, FilesystemKind.EXT3, FilesystemKind.EXT4)

    @property
    def supported(self) -> bool:
        return self is not FilesystemKind.UNSUPPORTED

    @property
    def has_data(self) -> bool:
        """Whether the partition holds files worth copying."""
        return self.supported and self is not FilesystemKind.SWAP

    def mkfs_command(
        self, device: str, label: str | None = None, uuid: str | None = None
    ) -> list[str]:
        """Command creating this filesystem on ``device``.

        Label and UUID are added only when known. FAT has no settable UUID.
        """
        if self is FilesystemKind.VFAT:
            cmd = ["mkfs.vfat", "-F", "32"]
            if label:
                cmd.extend(["-n", label])
        elif self.is_ext:
            cmd = [f"mkfs.{self.value}", "-F"]
            if label:
                cmd.extend(["-L", label])
            if uuid:
                cmd.extend(["-U", uuid])
        elif self is FilesystemKind.SWAP:
            cmd = ["mkswap"]
            if label:
                cmd.extend(["-L", label])
            if uuid:
                cmd.extend(["-U", uuid])
        else:
            raise FormatError(f"Cannot create a filesystem of kind {self.value}")
        cmd.append(device)
        return cmd

    def mount_args(self) -> list[str]:
        """Type and option arguments for ``mount``."""
        if self is FilesystemKind.VFAT:
            return ["-t", "vfat", "-o", "codepage=437,iocharset=ascii,shortname=mixed,utf8"]
        if self.is_ext:
            return ["-t", self.value]
        return []


MKFS_TOOLS = {
    FilesystemKind.VFAT: "mkfs.vfat",
    FilesystemKind.EXT2: "mkfs.ext2",
    FilesystemKind.EXT3: "mkfs.ext3",
    FilesystemKind.EXT4: "mkfs.ext4",
    FilesystemKind.SWAP: "mkswap",
}


def format_partition(
    device: str,
    kind: FilesystemKind,
    label: str | None = None,
    uuid: str | None = None,
) -> None:
    """Create a filesystem of ``kind`` on ``device``.

    Raises:
        FormatError: If the kind is unsupported or mkfs fails
    """
    cmd = kind.mkfs_command(device, label=label, uuid=uuid)
    logger.info("  Formatting %s as %s...", device, kind.value)
    try:
        __util__.run_command(cmd)
    except __util__.CommandError as e:
        raise FormatError(f"Formatting {device} as {kind.value} failed: {e}")
