"""Core image backup engine for rbackup.

Inspect the remote device, build or reopen the local image, and mirror each
remote filesystem into it.
"""

from .filesystem import FilesystemKind, FormatError, format_partition
from .image import ImageError, ImageHandle, allocate_image, reopen_image
from .inspect import (
    PartitionDescriptor,
    describe_partitions,
    query_fs_info,
    query_partition_table,
    query_partitions,
    query_size,
    query_used_bytes,
)
from .job import (
    BackupJobRequest,
    BackupMode,
    JobAborted,
    JobReport,
    JobState,
    PartitionResult,
    PartitionStatus,
    run_backup,
)
from .partition import PartitionTableError, clone_table
from .sync import SyncOutcome, classify_rsync_exit, sync_partition

__all__ = [
    "BackupJobRequest",
    "BackupMode",
    "FilesystemKind",
    "FormatError",
    "ImageError",
    "ImageHandle",
    "JobAborted",
    "JobReport",
    "JobState",
    "PartitionDescriptor",
    "PartitionResult",
    "PartitionStatus",
    "PartitionTableError",
    "SyncOutcome",
    "allocate_image",
    "classify_rsync_exit",
    "clone_table",
    "describe_partitions",
    "format_partition",
    "query_fs_info",
    "query_partition_table",
    "query_partitions",
    "query_size",
    "query_used_bytes",
    "reopen_image",
    "run_backup",
    "sync_partition",
]
