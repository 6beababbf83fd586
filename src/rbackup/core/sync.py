"""Mirror a remote mounted filesystem into an image partition with rsync.

rsync exit codes are classified as:

- 0: success
- 23, 24: partial transfer (files not copied, or vanished mid-run); warn
- 11: file I/O error, usually the destination being full; warn
- anything else: the partition's sync failed; siblings carry on
"""

import contextlib
import logging
import os
import tempfile
from collections.abc import Iterable, Iterator
from enum import Enum
from pathlib import Path

from .. import __util__
from ..sshutil import RemoteError, RemoteShell
from .filesystem import FilesystemKind
from .image import device_size
from .inspect import query_used_bytes

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDES = ("/proc/*", "/sys/*", "/dev/*", "/run/*")

RSYNC_OPTIONS = (
    "-aAX",
    "--inplace",
    "--delete",
    "--ignore-errors",
    "--partial",
    "--no-whole-file",
)

WARNING_EXIT_CODES = {
    23: "Partial transfer (some files not copied, possibly due to space constraints)",
    24: "Partial transfer (some source files vanished during the run)",
    11: "Some files were not copied due to space constraints",
}


class SyncOutcome(Enum):
    """Classified result of one rsync run."""

    OK = "ok"
    WARNING = "warning"
    FAILED = "failed"


class MountError(Exception):
    """An image partition could not be mounted."""

    pass


def classify_rsync_exit(returncode: int) -> SyncOutcome:
    """Classify an rsync exit code."""
    if returncode == 0:
        return SyncOutcome.OK
    if returncode in WARNING_EXIT_CODES:
        return SyncOutcome.WARNING
    return SyncOutcome.FAILED


def merge_excludes(
    global_excludes: Iterable[str], job_excludes: Iterable[str]
) -> list[str]:
    """Global exclusions followed by the job's own.

    With neither set, the virtual filesystems are excluded by default.
    """
    merged = list(global_excludes) + list(job_excludes)
    return merged or list(DEFAULT_EXCLUDES)


def build_exclude_args(excludes: Iterable[str]) -> list[str]:
    return [f"--exclude={pattern}" for pattern in excludes]


def build_rsync_command(
    shell: RemoteShell,
    remote_mountpoint: str,
    local_path: str | Path,
    excludes: Iterable[str],
) -> list[str]:
    cmd = ["rsync", *RSYNC_OPTIONS, *build_exclude_args(excludes)]
    cmd.extend(["-e", shell.rsync_rsh()])
    cmd.append(shell.source_spec(remote_mountpoint))
    cmd.append(f"{str(local_path).rstrip('/')}/")
    return cmd


def sync_partition(
    shell: RemoteShell,
    remote_mountpoint: str,
    local_path: str | Path,
    excludes: Iterable[str],
) -> SyncOutcome:
    """Mirror ``remote_mountpoint`` into the mounted partition at ``local_path``."""
    cmd = build_rsync_command(shell, remote_mountpoint, local_path, excludes)
    logger.info("  Copying data from remote mountpoint %s...", remote_mountpoint)
    result = __util__.run_command(cmd, check=False, env=shell.env)

    outcome = classify_rsync_exit(result.returncode)
    level = logging.DEBUG if outcome is SyncOutcome.OK else logging.WARNING
    for line in (result.stderr or "").splitlines():
        logger.log(level, "rsync: %s", line)

    if outcome is SyncOutcome.WARNING:
        logger.warning("Warning: %s", WARNING_EXIT_CODES[result.returncode])
    elif outcome is SyncOutcome.FAILED:
        logger.error("Error: rsync failed with exit code %d", result.returncode)
    return outcome


def check_space(shell: RemoteShell, remote_mountpoint: str, device: str) -> bool:
    """Warn when the remote data may not fit into the image partition.

    Advisory only: returns False after warning, or when a size cannot be
    determined, and the copy is attempted either way.
    """
    try:
        src_size = query_used_bytes(shell, remote_mountpoint)
        dst_size = device_size(device)
    except (RemoteError, __util__.CommandError, ValueError) as e:
        logger.warning("Could not compare partition sizes for %s: %s", device, e)
        return False

    if src_size > dst_size:
        logger.warning(
            "Warning: Source partition (%s) is larger than destination (%s)",
            __util__.format_bytes(src_size),
            __util__.format_bytes(dst_size),
        )
        logger.warning("         Some files may not be copied due to space constraints")
        return False
    return True


def flush_buffers() -> None:
    """Flush dirty pages to the image before unmounting."""
    os.sync()


@contextlib.contextmanager
def mounted_partition(
    device: str, kind: FilesystemKind, work_dir: str | Path
) -> Iterator[Path]:
    """Mount ``device`` on a scratch directory below ``work_dir``.

    On exit the filesystem is flushed and unmounted and the scratch directory
    removed, even when the body raised. Teardown failures are logged only.

    Raises:
        MountError: If the partition cannot be mounted; nothing is left behind
    """
    try:
        mountpoint = Path(tempfile.mkdtemp(prefix="newpart.", dir=work_dir))
    except OSError as e:
        raise MountError(f"Cannot create a mountpoint for {device} in {work_dir}: {e}")
    try:
        __util__.run_command(["mount", *kind.mount_args(), device, str(mountpoint)])
    except __util__.CommandError as e:
        _remove_mountpoint(mountpoint)
        raise MountError(f"Failed to mount {device}: {e}")

    try:
        yield mountpoint
    finally:
        flush_buffers()
        try:
            __util__.run_command(["umount", str(mountpoint)])
        except __util__.CommandError as e:
            logger.warning("Warning: Failed to unmount %s: %s", mountpoint, e)
        _remove_mountpoint(mountpoint)


def _remove_mountpoint(mountpoint: Path) -> None:
    try:
        mountpoint.rmdir()
    except OSError as e:
        logger.warning("Warning: Failed to remove %s: %s", mountpoint, e)
