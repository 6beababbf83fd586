"""CLI dispatcher: argument parsing and routing to subcommands."""

import argparse
import sys
from typing import Callable

from .. import __version__
from .common import add_remote_args, add_verbosity_args

# Known subcommands
SUBCOMMANDS = frozenset({"backup", "run", "inspect", "config"})


def create_subcommand_parser() -> argparse.ArgumentParser:
    """Create the main argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="rbackup",
        description="Block-device image backups of remote machines over SSH",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    add_verbosity_args(parser)

    parser.add_argument(
        "-V",
        "--version",
        action="store_true",
        help="Show version and exit",
    )

    parser.add_argument(
        "-c",
        "--config",
        metavar="FILE",
        help="Path to configuration file",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        description="Available commands (use 'command --help' for details)",
    )

    # backup command
    backup_parser = subparsers.add_parser(
        "backup",
        help="Back up one remote device into an image file",
        description=(
            "Create a full image backup when OUTPUT does not exist, "
            "otherwise update OUTPUT incrementally"
        ),
    )
    backup_parser.add_argument("host", metavar="HOST", help="Remote host, e.g. root@10.0.1.41")
    backup_parser.add_argument("device", metavar="DEVICE", help="Remote device, e.g. /dev/mmcblk0")
    backup_parser.add_argument("output", metavar="OUTPUT", help="Image file")
    backup_parser.add_argument(
        "work_dir", metavar="WORKDIR", help="Directory for temporary files and mounts"
    )
    backup_parser.add_argument(
        "--exclude",
        metavar="PATTERN",
        action="append",
        help="rsync exclusion pattern (repeatable), applied after the global ones",
    )
    backup_parser.add_argument(
        "--no-global-excludes",
        action="store_true",
        help="Ignore the exclusion patterns from the configuration file",
    )
    backup_parser.add_argument(
        "--log-file",
        metavar="FILE",
        help="Append the job log to FILE (overrides config)",
    )
    add_remote_args(backup_parser)

    # run command
    run_parser = subparsers.add_parser(
        "run",
        help="Execute configured backup jobs",
        description="Run the jobs from the configuration file one after another",
    )
    run_parser.add_argument(
        "--job",
        metavar="NAME",
        action="append",
        help="Only run the named job(s)",
    )
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    # inspect command
    inspect_parser = subparsers.add_parser(
        "inspect",
        help="Show the partitions of a remote device",
        description="List partitions, filesystems and what a backup would do with them",
    )
    inspect_parser.add_argument("host", metavar="HOST", help="Remote host")
    inspect_parser.add_argument("device", metavar="DEVICE", help="Remote device")
    inspect_parser.add_argument(
        "--no-sudo",
        action="store_true",
        help="Do not use sudo for privileged remote commands",
    )
    add_remote_args(inspect_parser)

    # config command
    config_parser = subparsers.add_parser(
        "config",
        help="Configuration management",
        description="Validate or generate configuration files",
    )
    config_subparsers = config_parser.add_subparsers(dest="config_action")
    config_subparsers.add_parser("validate", help="Validate configuration file")
    init_parser = config_subparsers.add_parser(
        "init", help="Generate example configuration"
    )
    init_parser.add_argument(
        "-o",
        "--output",
        metavar="FILE",
        help="Write to FILE instead of stdout",
    )
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing file",
    )

    return parser


def get_command_handler(command: str) -> Callable[[argparse.Namespace], int]:
    """Return the handler for a subcommand.

    Handlers are imported lazily so `--help` stays fast.
    """
    if command == "backup":
        from .backup import execute_backup

        return execute_backup
    if command == "run":
        from .run import execute_run

        return execute_run
    if command == "inspect":
        from .inspect_cmd import execute_inspect

        return execute_inspect
    if command == "config":
        from .config_cmd import execute_config

        return execute_config
    raise ValueError(f"Unknown command: {command}")


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and run the selected command."""
    if argv is None:
        argv = sys.argv[1:]

    parser = create_subcommand_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"rbackup {__version__}")
        return 0

    if not args.command:
        parser.print_help()
        return 1

    handler = get_command_handler(args.command)
    return handler(args)
