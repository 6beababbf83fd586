"""Inspect command: show what a backup of a remote device would contain."""

import argparse
import logging

from rich.table import Table

from .. import __logger__
from ..__logger__ import create_logger
from ..core import FilesystemKind, describe_partitions, query_size
from ..sshutil import RemoteError, RemoteShell
from .common import get_log_level, resolve_password

logger = logging.getLogger(__name__)


def execute_inspect(args: argparse.Namespace) -> int:
    """Execute the inspect command.

    Args:
        args: Parsed command line arguments

    Returns:
        Exit code
    """
    create_logger(get_log_level(args))

    shell = RemoteShell(
        args.host,
        password=resolve_password(args),
        port=args.ssh_port,
        identity_file=args.ssh_identity,
        use_sudo=not args.no_sudo,
    )
    try:
        size = query_size(shell, args.device)
        partitions = describe_partitions(shell, args.device)
    except RemoteError as e:
        logger.error("%s", e)
        return 1

    table = Table(title=f"{args.host}:{args.device} ({size} bytes)")
    for column in ("#", "Name", "Mountpoint", "Type", "Label", "UUID", "Action"):
        table.add_column(column)

    for part in partitions:
        kind = FilesystemKind.from_fstype(part.fstype)
        if not kind.supported:
            action = "skip (unsupported)"
        elif not kind.has_data:
            action = "format only"
        elif not part.mountpoint:
            action = "format only (not mounted)"
        else:
            action = "format + sync"
        table.add_row(
            str(part.ordinal),
            part.name,
            part.mountpoint or "-",
            part.fstype,
            part.label or "-",
            part.uuid or "-",
            action,
        )

    __logger__.cons.print(table)
    return 0
