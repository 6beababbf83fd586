"""Backing image file and its loop device mapping.

An ImageHandle is a context manager: leaving the ``with`` block detaches the
loop device exactly once, whatever happened inside it.
"""

import logging
from pathlib import Path

from .. import __util__

logger = logging.getLogger(__name__)


class ImageError(__util__.AbortError):
    """The image file could not be created or attached."""

    pass


class ImageHandle:
    """An image file attached to a loop device."""

    def __init__(self, path: Path, loop_device: str | None = None):
        self.path = Path(path)
        self.loop_device = loop_device

    def __repr__(self) -> str:
        return f"ImageHandle({str(self.path)!r}, {self.loop_device!r})"

    def __enter__(self) -> "ImageHandle":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.detach()

    @property
    def attached(self) -> bool:
        return self.loop_device is not None

    def attach(self, partscan: bool = False) -> str:
        """Attach the image to the first free loop device and return it.

        Args:
            partscan: Let the kernel scan the partition table (``losetup -P``)
        """
        if self.attached:
            raise ImageError(f"{self.path} is already attached to {self.loop_device}")

        cmd = ["losetup", "-f", "--show"]
        if partscan:
            cmd.append("-P")
        cmd.append(str(self.path))
        try:
            result = __util__.run_command(cmd)
        except __util__.CommandError as e:
            raise ImageError(f"Cannot attach {self.path}: {e}")

        self.loop_device = result.stdout.strip()
        logger.info("Image attached as loop device: %s", self.loop_device)
        return self.loop_device

    def detach(self) -> None:
        """Detach the loop device. Safe to call repeatedly; never raises."""
        if not self.attached:
            return
        loop_device, self.loop_device = self.loop_device, None
        try:
            __util__.run_command(["losetup", "-d", loop_device])
            logger.debug("Detached loop device %s", loop_device)
        except __util__.CommandError as e:
            logger.warning("Failed to detach loop device %s: %s", loop_device, e)

    def reattach(self, partscan: bool = True) -> str:
        """Detach and attach again, by default with partition scanning."""
        self.detach()
        loop_device = self.attach(partscan=partscan)
        logger.info("New loop device: %s", loop_device)
        return loop_device

    def partition_device(self, ordinal: int) -> str | None:
        """Block device node of partition ``ordinal``, if the kernel created one."""
        if not self.attached:
            return None
        for candidate in (f"{self.loop_device}p{ordinal}", f"{self.loop_device}{ordinal}"):
            if __util__.is_block_device(candidate):
                return candidate
        return None


def create_sparse_file(path: Path, size: int) -> None:
    """Create a sparse file of ``size`` bytes at ``path``."""
    if __util__.has_tool("fallocate"):
        cmd = ["fallocate", "-l", str(size), str(path)]
    else:
        cmd = ["dd", "if=/dev/zero", f"of={path}", "bs=1", "count=0", f"seek={size}"]
    try:
        __util__.run_command(cmd)
    except __util__.CommandError as e:
        raise ImageError(f"Cannot create image {path}: {e}")


def allocate_image(path: Path, size: int) -> ImageHandle:
    """Create a new image of ``size`` bytes and attach it without partition scan.

    An image file this call created is removed again if it cannot be attached.
    """
    path = Path(path)
    if path.exists():
        raise ImageError(f"Refusing to overwrite existing image {path}")
    logger.info("Creating empty image %s (%d bytes)", path, size)
    handle = ImageHandle(path)
    try:
        create_sparse_file(path, size)
        handle.attach(partscan=False)
    except BaseException:
        logger.warning("Removing incomplete image %s", path)
        path.unlink(missing_ok=True)
        raise
    return handle


def reopen_image(path: Path) -> ImageHandle:
    """Attach an existing image with partition scanning enabled."""
    path = Path(path)
    if not path.is_file():
        raise ImageError(f"Image {path} does not exist")
    handle = ImageHandle(path)
    handle.attach(partscan=True)
    return handle


def device_size(device: str) -> int:
    """Size in bytes of a local block device."""
    result = __util__.run_command(["blockdev", "--getsize64", device])
    return int(result.stdout.strip())
