"""Tests for backup job orchestration."""

import contextlib
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from rbackup.core.filesystem import FilesystemKind, FormatError
from rbackup.core.image import ImageError
from rbackup.core.inspect import PartitionDescriptor
from rbackup.core.job import (
    BackupJobRequest,
    BackupMode,
    JobAborted,
    JobState,
    PartitionStatus,
    run_backup,
    select_mode,
)
from rbackup.core.sync import MountError, SyncOutcome
from rbackup.sshutil import RemoteError

TABLE = "label: dos\n\n/dev/mmcblk0p1 : start=8192, size=524288, type=c\n"

BOOT = PartitionDescriptor("mmcblk0p1", 1, "vfat", "/boot", label="BOOT", uuid="B")
ROOT = PartitionDescriptor("mmcblk0p2", 2, "ext4", "/", label="root", uuid="U")
SWAP = PartitionDescriptor("mmcblk0p3", 3, "swap", "[SWAP]", label=None, uuid="S")
DATA = PartitionDescriptor("mmcblk0p4", 4, "ext4", None, label="data", uuid="D")


class FakeImage:
    """Attached image stand-in with a fixed set of partition devices."""

    def __init__(self, path, devices):
        self.path = Path(path)
        self.devices = devices
        self.detach_calls = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.detach_calls += 1

    def partition_device(self, ordinal):
        return self.devices.get(ordinal)


class Harness:
    """Patches every collaborator of the orchestrator.

    Each partition of ``partitions`` gets a loop device unless listed in
    ``missing``; rsync outcomes default to OK and can be set per mountpoint.
    """

    def __init__(self, tmp_path, partitions, missing=()):
        self.tmp_path = tmp_path
        self.partitions = list(partitions)
        devices = {
            p.ordinal: f"/dev/loop0p{p.ordinal}"
            for p in self.partitions
            if p.ordinal not in missing
        }
        self.image = None
        self._devices = devices
        self.outcomes = {}
        self.mount_failures = set()
        self.table_files = []
        self.mounted = []
        self.synced = []

        self.shell = MagicMock(name="shell")
        self.query_size = MagicMock(return_value=32 * 1024 * 1024)
        self.query_partition_table = MagicMock(return_value=TABLE)
        self.describe_partitions = MagicMock(return_value=self.partitions)
        self.query_partitions = MagicMock(return_value=self.partitions)
        self.allocate_image = MagicMock(side_effect=self._allocate)
        self.reopen_image = MagicMock(side_effect=self._reopen)
        self.clone_table = MagicMock(side_effect=self._clone)
        self.format_partition = MagicMock()
        self.check_space = MagicMock(return_value=True)
        self.sync_partition = MagicMock(side_effect=self._sync)
        self.missing_tools = MagicMock(return_value=[])
        self.real_mounts = False

    def _allocate(self, path, size):
        Path(path).write_bytes(b"")
        self.image = FakeImage(path, self._devices)
        return self.image

    def _reopen(self, path):
        self.image = FakeImage(path, self._devices)
        return self.image

    def _clone(self, image, table, settle_seconds):
        self.table_files = list(self.tmp_path.glob("partition_table.*"))
        assert table == TABLE
        return "/dev/loop0"

    @contextlib.contextmanager
    def _mounted(self, device, kind, work_dir):
        if device in self.mount_failures:
            raise MountError(f"Failed to mount {device}")
        self.mounted.append((device, kind))
        yield Path(work_dir) / f"newpart.{device.rsplit('/', 1)[-1]}"

    def _sync(self, shell, mountpoint, local_path, excludes):
        self.synced.append((mountpoint, list(excludes)))
        return self.outcomes.get(mountpoint, SyncOutcome.OK)

    @contextlib.contextmanager
    def active(self):
        names = [
            "query_size",
            "query_partition_table",
            "describe_partitions",
            "query_partitions",
            "allocate_image",
            "reopen_image",
            "clone_table",
            "format_partition",
            "check_space",
            "sync_partition",
        ]
        with contextlib.ExitStack() as stack:
            for name in names:
                stack.enter_context(
                    patch(f"rbackup.core.job.{name}", getattr(self, name))
                )
            if not self.real_mounts:
                stack.enter_context(
                    patch("rbackup.core.job.mounted_partition", self._mounted)
                )
            stack.enter_context(
                patch("rbackup.__util__.missing_tools", self.missing_tools)
            )
            yield self

    def run(self, request):
        with self.active():
            return run_backup(request, shell=self.shell)


def make_request(tmp_path, **kwargs):
    params = {
        "host": "root@pi",
        "device": "/dev/mmcblk0",
        "output": tmp_path / "pi.img",
        "work_dir": tmp_path,
    }
    params.update(kwargs)
    return BackupJobRequest(**params)


class TestSelectMode:
    """Tests for select_mode."""

    def test_full_without_image(self, tmp_path):
        assert select_mode(tmp_path / "pi.img") is BackupMode.FULL

    def test_incremental_with_image(self, tmp_path):
        (tmp_path / "pi.img").write_bytes(b"")
        assert select_mode(tmp_path / "pi.img") is BackupMode.INCREMENTAL


class TestRequest:
    """Tests for BackupJobRequest."""

    def test_effective_excludes(self, tmp_path):
        request = make_request(
            tmp_path,
            global_excludes=("/proc/*", "/sys/*"),
            excludes=("/data/cache/*",),
        )
        assert request.effective_excludes == ["/proc/*", "/sys/*", "/data/cache/*"]

    def test_password_not_in_repr(self, tmp_path):
        request = make_request(tmp_path, password="s3cret")
        assert "s3cret" not in repr(request)

    def test_required_tools(self, tmp_path):
        request = make_request(tmp_path)
        assert "sfdisk" in request.required_tools(BackupMode.FULL)
        assert "sfdisk" not in request.required_tools(BackupMode.INCREMENTAL)
        assert "sshpass" not in request.required_tools(BackupMode.FULL)
        assert "sshpass" in make_request(tmp_path, password="pw").required_tools(
            BackupMode.INCREMENTAL
        )

    def test_remote_shell(self, tmp_path):
        request = make_request(tmp_path, ssh_port=2222, remote_sudo=False)
        shell = request.remote_shell()
        assert shell.endpoint == "root@pi"
        assert shell.port == 2222
        assert shell.use_sudo is False


class TestFullBackup:
    """Tests for a first backup of a device."""

    def test_round_trip(self, tmp_path):
        harness = Harness(tmp_path, [BOOT, ROOT])
        report = harness.run(make_request(tmp_path, settle_seconds=0.5))

        assert report.mode is BackupMode.FULL
        assert report.state is JobState.DONE
        assert report.exit_status == 0
        assert report.history == [
            JobState.START,
            JobState.INSPECTING,
            JobState.ALLOCATING,
            JobState.CLONING_TABLE,
            JobState.FORMATTING,
            JobState.SYNCING_PARTITIONS,
            JobState.CLEANING_UP,
            JobState.DONE,
        ]
        harness.allocate_image.assert_called_once_with(tmp_path / "pi.img", 32 * 1024 * 1024)
        assert harness.clone_table.call_args.args[2] == 0.5
        assert [c.args for c in harness.format_partition.call_args_list] == [
            ("/dev/loop0p1", FilesystemKind.VFAT),
            ("/dev/loop0p2", FilesystemKind.EXT4),
        ]
        assert [c.kwargs for c in harness.format_partition.call_args_list] == [
            {"label": "BOOT", "uuid": "B"},
            {"label": "root", "uuid": "U"},
        ]
        assert [m for m, _ in harness.synced] == ["/boot", "/"]
        assert [r.status for r in report.results] == [PartitionStatus.SYNCED] * 2
        assert harness.image.detach_calls == 1

    def test_partition_table_temp_file_removed(self, tmp_path):
        harness = Harness(tmp_path, [ROOT])
        harness.run(make_request(tmp_path))

        assert len(harness.table_files) == 1
        assert not harness.table_files[0].exists()
        assert (tmp_path / "pi.img").exists()

    def test_swap_formatted_never_mounted(self, tmp_path):
        harness = Harness(tmp_path, [ROOT, SWAP])
        report = harness.run(make_request(tmp_path))

        formatted = [c.args[1] for c in harness.format_partition.call_args_list]
        assert FilesystemKind.SWAP in formatted
        assert [d for d, _ in harness.mounted] == ["/dev/loop0p2"]
        assert report.results[-1].status is PartitionStatus.SKIPPED

    def test_unmounted_partition_formatted_not_synced(self, tmp_path):
        harness = Harness(tmp_path, [ROOT, DATA])
        report = harness.run(make_request(tmp_path))

        assert harness.format_partition.call_count == 2
        assert [m for m, _ in harness.synced] == ["/"]
        assert report.results[1].status is PartitionStatus.SKIPPED
        assert report.state is JobState.DONE

    def test_exclusions_reach_every_sync(self, tmp_path):
        harness = Harness(tmp_path, [BOOT, ROOT])
        harness.run(
            make_request(
                tmp_path,
                global_excludes=("/proc/*", "/sys/*"),
                excludes=("/data/cache/*",),
            )
        )

        assert [e for _, e in harness.synced] == [
            ["/proc/*", "/sys/*", "/data/cache/*"]
        ] * 2

    def test_format_failure_aborts_and_cleans_up(self, tmp_path):
        third = PartitionDescriptor("mmcblk0p3", 3, "ext4", "/home")
        harness = Harness(tmp_path, [BOOT, ROOT, third])
        harness.format_partition.side_effect = [None, FormatError("mkfs.ext4 failed"), None]

        report = harness.run(make_request(tmp_path))

        assert report.state is JobState.FAILED
        assert report.exit_status == 1
        assert "mkfs.ext4 failed" in report.errors[0]
        assert harness.format_partition.call_count == 2
        assert harness.sync_partition.call_count == 0
        assert harness.image.detach_calls == 1
        assert not harness.table_files[0].exists()
        assert not (tmp_path / "pi.img").exists()
        assert JobState.CLEANING_UP in report.history

    def test_inspection_failure_creates_nothing(self, tmp_path):
        harness = Harness(tmp_path, [ROOT])
        harness.query_partition_table.side_effect = RemoteError("sfdisk failed")

        report = harness.run(make_request(tmp_path))

        assert report.state is JobState.FAILED
        harness.allocate_image.assert_not_called()
        assert not (tmp_path / "pi.img").exists()
        assert list(tmp_path.glob("partition_table.*")) == []

    def test_allocation_failure(self, tmp_path):
        harness = Harness(tmp_path, [ROOT])
        harness.allocate_image.side_effect = ImageError("no free loop device")

        report = harness.run(make_request(tmp_path))

        assert report.state is JobState.FAILED
        harness.clone_table.assert_not_called()
        assert list(tmp_path.glob("partition_table.*")) == []

    def test_unwritable_work_dir_fails_job(self, tmp_path):
        harness = Harness(tmp_path, [ROOT])

        report = harness.run(make_request(tmp_path, work_dir=tmp_path / "gone"))

        assert report.state is JobState.FAILED
        assert "Cannot save the partition table" in report.errors[0]
        assert JobState.CLEANING_UP in report.history
        harness.allocate_image.assert_not_called()
        assert not (tmp_path / "pi.img").exists()

    def test_existing_image_left_alone_when_allocation_refused(self, tmp_path):
        harness = Harness(tmp_path, [ROOT])
        image = tmp_path / "pi.img"

        def appeared_meanwhile(path, size):
            image.write_bytes(b"someone else's image")
            raise ImageError(f"Refusing to overwrite existing image {path}")

        harness.allocate_image.side_effect = appeared_meanwhile

        report = harness.run(make_request(tmp_path))

        assert report.state is JobState.FAILED
        assert image.read_bytes() == b"someone else's image"

    def test_rsync_failure_keeps_image(self, tmp_path):
        harness = Harness(tmp_path, [ROOT])
        harness.outcomes["/"] = SyncOutcome.FAILED

        report = harness.run(make_request(tmp_path))

        assert report.state is JobState.DONE
        assert report.results[0].status is PartitionStatus.FAILED
        assert (tmp_path / "pi.img").exists()

    def test_unsupported_filesystem_skipped(self, tmp_path):
        btrfs = PartitionDescriptor("mmcblk0p3", 3, "btrfs", "/srv")
        harness = Harness(tmp_path, [ROOT, btrfs])

        report = harness.run(make_request(tmp_path))

        assert harness.format_partition.call_count == 1
        assert [m for m, _ in harness.synced] == ["/"]
        assert report.results[0].status is PartitionStatus.UNAVAILABLE
        assert report.state is JobState.DONE

    def test_interrupt_removes_partial_image(self, tmp_path):
        harness = Harness(tmp_path, [ROOT])
        harness.format_partition.side_effect = KeyboardInterrupt()

        report = harness.run(make_request(tmp_path))

        assert report.state is JobState.FAILED
        assert harness.image.detach_calls == 1
        assert not (tmp_path / "pi.img").exists()

    def test_abort_during_sync_keeps_provisioned_image(self, tmp_path):
        harness = Harness(tmp_path, [ROOT])
        harness.sync_partition.side_effect = JobAborted("Received signal SIGTERM")

        report = harness.run(make_request(tmp_path))

        assert report.state is JobState.FAILED
        assert report.errors == ["Received signal SIGTERM"]
        assert harness.image.detach_calls == 1
        assert (tmp_path / "pi.img").exists()

    def test_missing_tools(self, tmp_path):
        harness = Harness(tmp_path, [ROOT])
        harness.missing_tools.return_value = ["sfdisk", "mkfs.vfat"]

        report = harness.run(make_request(tmp_path))

        assert report.state is JobState.FAILED
        assert "sfdisk, mkfs.vfat" in report.errors[0]
        harness.query_size.assert_not_called()


class TestIncrementalBackup:
    """Tests for updating an existing image."""

    @pytest.fixture
    def image(self, tmp_path):
        path = tmp_path / "pi.img"
        path.write_bytes(b"\0" * 16)
        return path

    def test_never_provisions(self, tmp_path, image):
        harness = Harness(tmp_path, [BOOT, ROOT])
        report = harness.run(make_request(tmp_path))

        assert report.mode is BackupMode.INCREMENTAL
        assert report.state is JobState.DONE
        harness.allocate_image.assert_not_called()
        harness.clone_table.assert_not_called()
        harness.format_partition.assert_not_called()
        harness.query_partition_table.assert_not_called()
        harness.reopen_image.assert_called_once_with(image)
        assert [m for m, _ in harness.synced] == ["/boot", "/"]
        assert harness.image.detach_calls == 1
        assert JobState.FORMATTING not in report.history

    def test_swap_never_mounted(self, tmp_path, image):
        harness = Harness(tmp_path, [ROOT, SWAP])
        report = harness.run(make_request(tmp_path))

        assert [d for d, _ in harness.mounted] == ["/dev/loop0p2"]
        assert report.results[1].status is PartitionStatus.SKIPPED

    def test_partial_transfer_continues(self, tmp_path, image):
        harness = Harness(tmp_path, [BOOT, ROOT])
        harness.outcomes["/boot"] = SyncOutcome.WARNING

        report = harness.run(make_request(tmp_path))

        assert [r.status for r in report.results] == [
            PartitionStatus.WARNED,
            PartitionStatus.SYNCED,
        ]
        assert report.state is JobState.DONE
        assert report.warned == 1

    def test_failed_partition_does_not_stop_siblings(self, tmp_path, image):
        home = PartitionDescriptor("mmcblk0p3", 3, "ext4", "/home")
        harness = Harness(tmp_path, [BOOT, ROOT, home])
        harness.outcomes["/"] = SyncOutcome.FAILED

        report = harness.run(make_request(tmp_path))

        assert [m for m, _ in harness.synced] == ["/boot", "/", "/home"]
        assert [r.status for r in report.results] == [
            PartitionStatus.SYNCED,
            PartitionStatus.FAILED,
            PartitionStatus.SYNCED,
        ]
        assert report.exit_status == 0

    def test_missing_loop_partition(self, tmp_path, image):
        harness = Harness(tmp_path, [BOOT, ROOT], missing={1})
        report = harness.run(make_request(tmp_path))

        assert [m for m, _ in harness.synced] == ["/"]
        assert report.results[0].status is PartitionStatus.UNAVAILABLE
        assert report.state is JobState.DONE

    def test_mount_failure_skips_partition(self, tmp_path, image):
        harness = Harness(tmp_path, [BOOT, ROOT])
        harness.mount_failures.add("/dev/loop0p1")

        report = harness.run(make_request(tmp_path))

        assert [m for m, _ in harness.synced] == ["/"]
        assert report.results[0].status is PartitionStatus.UNAVAILABLE

    def test_space_warning_still_syncs(self, tmp_path, image):
        harness = Harness(tmp_path, [ROOT])
        harness.check_space.return_value = False

        report = harness.run(make_request(tmp_path))

        harness.check_space.assert_called_once_with(harness.shell, "/", "/dev/loop0p2")
        assert [m for m, _ in harness.synced] == ["/"]
        assert report.results[0].status is PartitionStatus.SYNCED

    def test_reopen_failure(self, tmp_path, image):
        harness = Harness(tmp_path, [ROOT])
        harness.reopen_image.side_effect = ImageError("Cannot attach")

        report = harness.run(make_request(tmp_path))

        assert report.state is JobState.FAILED
        assert image.exists()
        assert harness.synced == []

    def test_remote_unreachable(self, tmp_path, image):
        harness = Harness(tmp_path, [ROOT])
        harness.query_partitions.side_effect = RemoteError("Cannot reach root@pi")

        report = harness.run(make_request(tmp_path))

        assert report.state is JobState.FAILED
        harness.reopen_image.assert_not_called()
        assert image.exists()

    def test_missing_work_dir_skips_each_partition(self, tmp_path, image, fake_commands):
        harness = Harness(tmp_path, [BOOT, ROOT])
        harness.real_mounts = True

        report = harness.run(make_request(tmp_path, work_dir=tmp_path / "gone"))

        assert report.state is JobState.DONE
        assert [r.name for r in report.results] == ["mmcblk0p1", "mmcblk0p2"]
        assert [r.status for r in report.results] == [PartitionStatus.UNAVAILABLE] * 2
        assert "Cannot create a mountpoint" in report.results[1].message
        assert fake_commands.named("mount") == []
