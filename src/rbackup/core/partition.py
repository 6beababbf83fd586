"""Replicate a remote partition table onto a freshly allocated image."""

import logging
import time

from .. import __util__
from .image import ImageHandle

logger = logging.getLogger(__name__)

DEFAULT_SETTLE_SECONDS = 2.0


class PartitionTableError(__util__.AbortError):
    """The partition table could not be written to the image."""

    pass


def reread_partition_table(device: str) -> None:
    """Ask the kernel to re-read the partition table of ``device``.

    Failures are ignored: the reattach that follows scans the table anyway.
    """
    if __util__.has_tool("partprobe"):
        __util__.run_command(["partprobe", device], check=False)
    elif __util__.has_tool("partx"):
        __util__.run_command(["partx", "-a", device], check=False)
    else:
        logger.warning(
            "Neither partprobe nor partx found. "
            "Please reload the partition table manually."
        )


def clone_table(
    handle: ImageHandle,
    table: str,
    settle_seconds: float = DEFAULT_SETTLE_SECONDS,
) -> str:
    """Write the sfdisk dump ``table`` onto the image and rescan it.

    The image must be attached without partition scanning. After writing,
    the mapping is detached and attached again with partition scanning so
    the partition device nodes appear.

    Returns:
        The loop device the image is attached to afterwards
    """
    if not handle.attached:
        raise PartitionTableError(f"{handle.path} is not attached")

    logger.info("Writing partition table to %s", handle.loop_device)
    try:
        __util__.run_command(["sfdisk", handle.loop_device], input_text=table)
    except __util__.CommandError as e:
        raise PartitionTableError(f"Cannot write partition table: {e}")

    reread_partition_table(handle.loop_device)
    # partition nodes show up asynchronously
    if settle_seconds > 0:
        time.sleep(settle_seconds)

    try:
        return handle.reattach(partscan=True)
    except __util__.AbortError as e:
        raise PartitionTableError(f"Cannot reattach {handle.path}: {e}")
