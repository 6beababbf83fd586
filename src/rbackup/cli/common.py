"""Shared CLI utilities and argument parsers."""

import argparse
import logging
import os
import signal
from pathlib import Path

from filelock import FileLock, Timeout

from ..core import BackupJobRequest, JobAborted, run_backup

logger = logging.getLogger(__name__)


def create_global_parser() -> argparse.ArgumentParser:
    """Create a parser with global options that can be used as a parent."""
    parser = argparse.ArgumentParser(add_help=False)
    add_verbosity_args(parser)
    return parser


def add_verbosity_args(parser: argparse.ArgumentParser) -> None:
    """Add verbosity-related arguments to a parser."""
    group = parser.add_argument_group("Output options")
    group.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output",
    )
    group.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )
    group.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug output",
    )


def get_log_level(args: argparse.Namespace) -> str:
    """Determine log level from parsed arguments.

    Args:
        args: Parsed command line arguments

    Returns:
        Log level string (DEBUG, INFO, WARNING, ERROR)
    """
    if getattr(args, "debug", False):
        return "DEBUG"
    elif getattr(args, "quiet", False):
        return "WARNING"
    elif getattr(args, "verbose", False):
        return "DEBUG"
    else:
        return "INFO"


def lock_path_for(output: Path, lock_dir: str | None = None) -> Path:
    """Lock file guarding the image at ``output``."""
    output = Path(output)
    if lock_dir:
        return Path(lock_dir) / f"{output.name}.lock"
    return output.with_name(f"{output.name}.lock")


def require_root() -> bool:
    """Loop devices and mounts need root."""
    if os.geteuid() != 0:
        logger.error("Please run as root.")
        return False
    return True


def _raise_aborted(signum, frame):
    raise JobAborted(f"Received signal {signal.Signals(signum).name}")


def execute_job(request: BackupJobRequest, lock_dir: str | None = None) -> int:
    """Run one backup job under its image lock.

    SIGTERM is turned into JobAborted so the engine's cleanup runs.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    lock_path = lock_path_for(request.output, lock_dir)
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    previous = signal.signal(signal.SIGTERM, _raise_aborted)
    try:
        with FileLock(lock_path, timeout=0):
            try:
                report = run_backup(request)
            finally:
                signal.signal(signal.SIGTERM, previous)
    except Timeout:
        logger.error(
            "Another backup of %s is running (lock %s held)", request.output, lock_path
        )
        return 1
    except JobAborted as e:
        logger.error("Backup of %s aborted: %s", request.output, e)
        return 1
    finally:
        signal.signal(signal.SIGTERM, previous)

    return report.exit_status


def add_remote_args(parser: argparse.ArgumentParser) -> None:
    """Add SSH connection arguments to a parser."""
    group = parser.add_argument_group("SSH options")
    auth = group.add_mutually_exclusive_group()
    auth.add_argument(
        "--password",
        metavar="PASSWORD",
        help="SSH password (empty: key-based authentication)",
    )
    auth.add_argument(
        "--password-env",
        metavar="VAR",
        help="Read the SSH password from environment variable VAR",
    )
    group.add_argument(
        "--ssh-port",
        type=int,
        metavar="PORT",
        help="SSH port of the remote host",
    )
    group.add_argument(
        "--ssh-identity",
        metavar="FILE",
        help="SSH private key for key-based authentication",
    )


def resolve_password(args: argparse.Namespace) -> str | None:
    """The SSH password from the parsed arguments, None for key-based auth."""
    if getattr(args, "password_env", None):
        return os.environ.get(args.password_env) or None
    return getattr(args, "password", None) or None
