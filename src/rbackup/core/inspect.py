"""Remote device inspection: size, partition table and filesystem metadata.

Everything here runs over the remote shell and is read-only on the remote
side. Results are never cached; the remote layout may change between runs.
"""

import logging
import re
import shlex
from dataclasses import dataclass, replace

from ..sshutil import RemoteError, RemoteShell

logger = logging.getLogger(__name__)

_ORDINAL_RE = re.compile(r"[^0-9]*([0-9]+)$")


@dataclass(frozen=True)
class PartitionDescriptor:
    """One remote partition that carries a filesystem.

    Attributes:
        name: Kernel name on the remote host (e.g. "mmcblk0p2")
        ordinal: Partition number taken from the name's numeric suffix
        fstype: Filesystem type as reported by lsblk
        mountpoint: Where the partition is mounted remotely, if anywhere
        label: Filesystem label, if known
        uuid: Filesystem UUID, if known
    """

    name: str
    ordinal: int
    fstype: str
    mountpoint: str | None = None
    label: str | None = None
    uuid: str | None = None


def partition_ordinal(name: str) -> int | None:
    """Return the trailing partition number of a device name, if it has one."""
    match = _ORDINAL_RE.search(name)
    if match is None:
        return None
    return int(match.group(1))


def query_size(shell: RemoteShell, device: str) -> int:
    """Size of the remote block device in bytes."""
    output = shell.run(["blockdev", "--getsize64", device], sudo=True)
    try:
        return int(output.strip())
    except ValueError:
        raise RemoteError(f"Unexpected size for {device}: {output.strip()!r}")


def query_partition_table(shell: RemoteShell, device: str) -> str:
    """Partition table of the remote device as an sfdisk dump."""
    table = shell.run(["sfdisk", "-d", device], sudo=True)
    if not table.strip():
        raise RemoteError(f"Empty partition table dump for {device}")
    return table


def parse_lsblk_pairs(output: str) -> list[dict[str, str]]:
    """Parse ``lsblk -P`` output into one dict per row."""
    rows = []
    for line in output.splitlines():
        if not line.strip():
            continue
        row = {}
        for token in shlex.split(line):
            key, _, value = token.partition("=")
            row[key] = value
        rows.append(row)
    return rows


def parse_partitions(output: str) -> list[PartitionDescriptor]:
    """Build descriptors from lsblk output, sorted by partition number.

    Rows without a filesystem type are excluded; rows whose name has no
    numeric suffix are dropped with a log message.
    """
    partitions = []
    for row in parse_lsblk_pairs(output):
        name = row.get("NAME", "")
        fstype = row.get("FSTYPE", "")
        if not name or not fstype:
            continue

        ordinal = partition_ordinal(name)
        if ordinal is None:
            logger.warning(
                "Cannot determine partition number from %s, skipping.", name
            )
            continue

        partitions.append(
            PartitionDescriptor(
                name=name,
                ordinal=ordinal,
                fstype=fstype,
                mountpoint=row.get("MOUNTPOINT") or None,
            )
        )
    partitions.sort(key=lambda p: p.ordinal)
    return partitions


def query_partitions(shell: RemoteShell, device: str) -> list[PartitionDescriptor]:
    """Partitions of the remote device that carry a filesystem."""
    output = shell.run(
        ["lsblk", "-ln", "-P", "-o", "NAME,MOUNTPOINT,FSTYPE", device]
    )
    return parse_partitions(output)


def parse_blkid_export(output: str) -> tuple[str | None, str | None]:
    values = {}
    for line in output.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip()] = value.strip()
    return values.get("LABEL") or None, values.get("UUID") or None


def query_fs_info(shell: RemoteShell, name: str) -> tuple[str | None, str | None]:
    """Label and UUID of ``/dev/<name>`` on the remote host.

    blkid exits non-zero for filesystems without these tags, so any failure
    reads as "unknown" rather than an error.
    """
    try:
        output = shell.run(
            ["blkid", "-s", "LABEL", "-s", "UUID", "-o", "export", f"/dev/{name}"],
            sudo=True,
        )
    except RemoteError as e:
        logger.debug("blkid failed for /dev/%s: %s", name, e)
        return None, None
    return parse_blkid_export(output)


def query_used_bytes(shell: RemoteShell, mountpoint: str) -> int:
    """Bytes in use on the filesystem mounted at ``mountpoint``."""
    output = shell.run(["df", "-P", "-B1", mountpoint])
    lines = output.strip().splitlines()
    try:
        return int(lines[1].split()[2])
    except (IndexError, ValueError):
        raise RemoteError(f"Unexpected df output for {mountpoint}: {output!r}")


def describe_partitions(
    shell: RemoteShell, device: str
) -> list[PartitionDescriptor]:
    """Partitions of ``device`` with label and UUID filled in."""
    described = []
    for part in query_partitions(shell, device):
        label, uuid = query_fs_info(shell, part.name)
        described.append(replace(part, label=label, uuid=uuid))
    return described
