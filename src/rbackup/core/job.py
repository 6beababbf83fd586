"""Backup job orchestration: full and incremental image backups.

A job backs up one device of one remote host into one image file. Without an
image at the output path a full backup is made: the remote partition table is
cloned onto a new sparse image, each partition formatted to match and then
filled with rsync. With an image present, only the rsync step runs against
the existing partitions.
"""

import contextlib
import logging
import tempfile
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .. import __util__
from ..sshutil import RemoteShell
from .filesystem import FilesystemKind, format_partition
from .image import ImageError, ImageHandle, allocate_image, reopen_image
from .inspect import (
    PartitionDescriptor,
    describe_partitions,
    query_partition_table,
    query_partitions,
    query_size,
)
from .partition import DEFAULT_SETTLE_SECONDS, clone_table
from .sync import (
    MountError,
    SyncOutcome,
    check_space,
    merge_excludes,
    mounted_partition,
    sync_partition,
)

logger = logging.getLogger(__name__)

COMMON_TOOLS = ("ssh", "losetup", "blockdev", "mount", "umount", "rsync")
FULL_BACKUP_TOOLS = (
    "sfdisk",
    "mkfs.vfat",
    "mkfs.ext2",
    "mkfs.ext3",
    "mkfs.ext4",
    "mkswap",
)


class BackupMode(Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class JobState(Enum):
    START = "start"
    INSPECTING = "inspecting"
    ALLOCATING = "allocating"
    CLONING_TABLE = "cloning-table"
    FORMATTING = "formatting"
    SYNCING_PARTITIONS = "syncing-partitions"
    CLEANING_UP = "cleaning-up"
    DONE = "done"
    FAILED = "failed"


class PartitionStatus(Enum):
    """What happened to one partition during a job."""

    SYNCED = "synced"  # copied cleanly
    WARNED = "warned"  # copied, rsync reported a partial transfer
    FAILED = "failed"  # rsync failed for this partition
    SKIPPED = "skipped"  # nothing to copy (swap, not mounted remotely)
    UNAVAILABLE = "unavailable"  # no device node, unsupported or unmountable


class JobAborted(__util__.AbortError):
    """The job was told to stop (e.g. SIGTERM)."""

    pass


@dataclass(frozen=True)
class BackupJobRequest:
    """Everything one engine invocation needs.

    Attributes:
        host: Remote endpoint, ``user@host`` or ``host``
        device: Remote block device, e.g. /dev/mmcblk0
        output: Image file path
        work_dir: Directory for scratch mountpoints and temp files
        excludes: Job-specific rsync exclusion patterns
        password: SSH password; empty or None means key-based auth
        global_excludes: Exclusion patterns applied before the job's own
        settle_seconds: Wait after re-reading the image's partition table
        ssh_port: Remote ssh port (ssh default when None)
        ssh_identity: Private key file for key-based auth
        remote_sudo: Run privileged remote commands through sudo
    """

    host: str
    device: str
    output: Path
    work_dir: Path
    excludes: tuple[str, ...] = ()
    password: str | None = field(default=None, repr=False)
    global_excludes: tuple[str, ...] = ()
    settle_seconds: float = DEFAULT_SETTLE_SECONDS
    ssh_port: int | None = None
    ssh_identity: str | None = None
    remote_sudo: bool = True

    @property
    def effective_excludes(self) -> list[str]:
        return merge_excludes(self.global_excludes, self.excludes)

    def remote_shell(self) -> RemoteShell:
        return RemoteShell(
            self.host,
            password=self.password,
            port=self.ssh_port,
            identity_file=self.ssh_identity,
            use_sudo=self.remote_sudo,
        )

    def required_tools(self, mode: BackupMode) -> list[str]:
        tools = list(COMMON_TOOLS)
        if mode is BackupMode.FULL:
            tools.extend(FULL_BACKUP_TOOLS)
        if self.password:
            tools.append("sshpass")
        return tools


@dataclass
class PartitionResult:
    name: str
    ordinal: int
    status: PartitionStatus
    message: str = ""


@dataclass
class JobReport:
    """Outcome of one backup job."""

    mode: BackupMode
    history: list[JobState] = field(default_factory=lambda: [JobState.START])
    results: list[PartitionResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    completed_at: float = 0.0

    @property
    def state(self) -> JobState:
        return self.history[-1]

    @property
    def warned(self) -> int:
        """Number of partitions that did not sync cleanly."""
        problems = (
            PartitionStatus.WARNED,
            PartitionStatus.FAILED,
            PartitionStatus.UNAVAILABLE,
        )
        return sum(1 for r in self.results if r.status in problems)

    @property
    def exit_status(self) -> int:
        return 0 if self.state is JobState.DONE else 1

    @property
    def duration(self) -> float:
        if self.completed_at:
            return self.completed_at - self.started_at
        return time.time() - self.started_at

    def transition(self, state: JobState) -> None:
        logger.debug("Job state: %s -> %s", self.state.value, state.value)
        self.history.append(state)

    def record(
        self, part: PartitionDescriptor, status: PartitionStatus, message: str = ""
    ) -> PartitionResult:
        result = PartitionResult(part.name, part.ordinal, status, message)
        self.results.append(result)
        return result


def select_mode(output: Path) -> BackupMode:
    """Full backup unless an image already exists at ``output``."""
    return BackupMode.INCREMENTAL if Path(output).exists() else BackupMode.FULL


def run_backup(
    request: BackupJobRequest, shell: RemoteShell | None = None
) -> JobReport:
    """Run one backup job and report how it went.

    The caller must hold an exclusive lock for ``request.output`` for the
    duration of the call; nothing here prevents two jobs from writing the
    same image at once.

    Args:
        request: The job to run
        shell: Remote shell to use instead of one built from the request

    Returns:
        JobReport in state DONE (possibly with partition warnings) or FAILED
    """
    shell = shell or request.remote_shell()
    mode = select_mode(request.output)
    report = JobReport(mode=mode)

    try:
        missing = __util__.missing_tools(request.required_tools(mode))
        if missing:
            raise __util__.AbortError(
                f"Required tools not installed: {', '.join(missing)}"
            )

        if mode is BackupMode.FULL:
            logger.info(
                __util__.log_heading(
                    f"Full backup of {request.device} on {request.host}"
                )
            )
            logger.info("Target image: %s", request.output)
            _run_full(request, shell, report)
        else:
            logger.info(
                __util__.log_heading(f"Incremental backup of {request.output}")
            )
            _run_incremental(request, shell, report)
    except (__util__.AbortError, KeyboardInterrupt) as e:
        message = str(e) or type(e).__name__
        logger.error("Backup failed: %s", message)
        report.errors.append(message)
        report.transition(JobState.FAILED)
    else:
        report.transition(JobState.DONE)

    report.completed_at = time.time()
    _log_summary(request, report)
    return report


def _run_full(request: BackupJobRequest, shell: RemoteShell, report: JobReport) -> None:
    report.transition(JobState.INSPECTING)
    size = query_size(shell, request.device)
    logger.info("Size of the remote device: %d Bytes", size)
    table = query_partition_table(shell, request.device)
    partitions = describe_partitions(shell, request.device)
    _log_partitions(partitions)

    allocated = False
    provisioned = False
    try:
        with contextlib.ExitStack() as stack:
            try:
                report.transition(JobState.ALLOCATING)
                table_file = _save_partition_table(request.work_dir, table)
                stack.callback(_remove_temp_file, table_file)
                image = stack.enter_context(allocate_image(request.output, size))
                allocated = True

                report.transition(JobState.CLONING_TABLE)
                clone_table(image, table_file.read_text(), request.settle_seconds)

                report.transition(JobState.FORMATTING)
                targets = _format_partitions(image, partitions, report)
                provisioned = True

                _sync_partitions(request, shell, targets, report)
            finally:
                report.transition(JobState.CLEANING_UP)
    except BaseException:
        if allocated and not provisioned:
            _discard_partial_image(request.output)
        raise


def _run_incremental(
    request: BackupJobRequest, shell: RemoteShell, report: JobReport
) -> None:
    report.transition(JobState.INSPECTING)
    partitions = query_partitions(shell, request.device)
    _log_partitions(partitions)

    with contextlib.ExitStack() as stack:
        try:
            image = stack.enter_context(reopen_image(request.output))
            targets = []
            for part in partitions:
                target = _resolve_target(image, part, report)
                if target is not None:
                    targets.append(target)
            _sync_partitions(request, shell, targets, report)
        finally:
            report.transition(JobState.CLEANING_UP)


def _resolve_target(
    image: ImageHandle, part: PartitionDescriptor, report: JobReport
) -> tuple[PartitionDescriptor, str, FilesystemKind] | None:
    """Image device and filesystem kind for ``part``, or None to skip it."""
    device = image.partition_device(part.ordinal)
    if device is None:
        logger.warning(
            "Loop partition for partition number %d not found, skipping.",
            part.ordinal,
        )
        report.record(part, PartitionStatus.UNAVAILABLE, "no loop partition")
        return None

    kind = FilesystemKind.from_fstype(part.fstype)
    logger.info(
        "Processing remote partition /dev/%s: fstype=%s, mountpoint='%s'",
        part.name,
        part.fstype,
        part.mountpoint or "",
    )
    if not kind.supported:
        logger.warning(
            "  Warning: Filesystem type %s is not automatically handled. "
            "Skipping partition %s.",
            part.fstype,
            device,
        )
        report.record(
            part, PartitionStatus.UNAVAILABLE, f"unsupported filesystem {part.fstype}"
        )
        return None
    return part, device, kind


def _format_partitions(
    image: ImageHandle, partitions: list[PartitionDescriptor], report: JobReport
) -> list[tuple[PartitionDescriptor, str, FilesystemKind]]:
    targets = []
    for part in partitions:
        target = _resolve_target(image, part, report)
        if target is None:
            continue
        _, device, kind = target
        logger.info(
            "  Original Label: %s, UUID: %s",
            part.label or "(none)",
            part.uuid or "(none)",
        )
        format_partition(device, kind, label=part.label, uuid=part.uuid)
        targets.append(target)
    return targets


def _sync_partitions(
    request: BackupJobRequest,
    shell: RemoteShell,
    targets: list[tuple[PartitionDescriptor, str, FilesystemKind]],
    report: JobReport,
) -> None:
    report.transition(JobState.SYNCING_PARTITIONS)
    excludes = request.effective_excludes
    for part, device, kind in targets:
        _sync_one(request, shell, part, device, kind, excludes, report)


def _sync_one(
    request: BackupJobRequest,
    shell: RemoteShell,
    part: PartitionDescriptor,
    device: str,
    kind: FilesystemKind,
    excludes: list[str],
    report: JobReport,
) -> PartitionResult:
    if not kind.has_data:
        logger.info("  Swap partition /dev/%s will not be updated.", part.name)
        return report.record(part, PartitionStatus.SKIPPED, "swap")
    if not part.mountpoint:
        logger.info("  /dev/%s has no mountpoint - skipping data copy.", part.name)
        return report.record(part, PartitionStatus.SKIPPED, "not mounted")

    check_space(shell, part.mountpoint, device)

    try:
        with mounted_partition(device, kind, request.work_dir) as local_path:
            outcome = sync_partition(shell, part.mountpoint, local_path, excludes)
    except MountError as e:
        logger.warning("Warning: %s, skipping", e)
        return report.record(part, PartitionStatus.UNAVAILABLE, str(e))
    except __util__.CommandError as e:
        logger.error("Error: copying /dev/%s failed: %s", part.name, e)
        return report.record(part, PartitionStatus.FAILED, str(e))

    if outcome is SyncOutcome.OK:
        return report.record(part, PartitionStatus.SYNCED)
    if outcome is SyncOutcome.WARNING:
        return report.record(part, PartitionStatus.WARNED, "partial transfer")
    logger.warning("Warning: rsync reported errors but continuing with backup")
    return report.record(part, PartitionStatus.FAILED, "rsync failed")


def _save_partition_table(work_dir: Path, table: str) -> Path:
    try:
        with tempfile.NamedTemporaryFile(
            "w", prefix="partition_table.", dir=work_dir, delete=False
        ) as f:
            f.write(table)
    except OSError as e:
        raise ImageError(f"Cannot save the partition table in {work_dir}: {e}")
    logger.debug("Saved remote partition table to %s", f.name)
    return Path(f.name)


def _remove_temp_file(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Failed to remove %s: %s", path, e)


def _discard_partial_image(path: Path) -> None:
    """Remove an image whose provisioning did not finish.

    Left in place it would be taken for a valid base by the next run.
    """
    path = Path(path)
    if not path.exists():
        return
    logger.warning("Removing incomplete image %s", path)
    try:
        path.unlink()
    except OSError as e:
        logger.error("Failed to remove incomplete image %s: %s", path, e)


def _log_partitions(partitions: list[PartitionDescriptor]) -> None:
    logger.info("Detected partitions on the remote device (Name, Mountpoint, Fstype):")
    for part in partitions:
        logger.info("  %s %s %s", part.name, part.mountpoint or "-", part.fstype)


def _log_summary(request: BackupJobRequest, report: JobReport) -> None:
    if report.state is JobState.FAILED:
        logger.error(
            "Backup of %s failed after %.1fs", request.output, report.duration
        )
        return

    verb = "created" if report.mode is BackupMode.FULL else "updated"
    logger.info(
        "Done! The %s backup has been %s: %s (%.1fs)",
        report.mode.value,
        verb,
        request.output,
        report.duration,
    )
    if report.warned:
        logger.warning(
            "%d partition(s) completed with warnings:", report.warned
        )
        for result in report.results:
            if result.status not in (PartitionStatus.SYNCED, PartitionStatus.SKIPPED):
                logger.warning(
                    "  %s: %s %s", result.name, result.status.value, result.message
                )
