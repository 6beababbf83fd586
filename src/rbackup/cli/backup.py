"""Backup command: back up one remote device into one image file."""

import argparse
import logging
from pathlib import Path

from ..__logger__ import create_logger
from ..config import ConfigError, find_config_file, load_config
from ..config.schema import GlobalConfig
from ..core import BackupJobRequest
from .common import execute_job, get_log_level, require_root, resolve_password

logger = logging.getLogger(__name__)


def _load_global_config(args: argparse.Namespace) -> GlobalConfig:
    """Global settings from the config file, defaults when there is none."""
    config_path = find_config_file(getattr(args, "config", None))
    if config_path is None:
        return GlobalConfig()
    config, warnings = load_config(config_path)
    for warning in warnings:
        logger.debug("Config: %s", warning)
    return config.global_config


def execute_backup(args: argparse.Namespace) -> int:
    """Execute the backup command.

    Args:
        args: Parsed command line arguments

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    try:
        global_config = _load_global_config(args)
    except ConfigError as e:
        create_logger(get_log_level(args))
        logger.error("Configuration error: %s", e)
        return 1

    log_file = getattr(args, "log_file", None) or global_config.log_file
    create_logger(get_log_level(args), log_file=log_file)

    if not require_root():
        return 1

    work_dir = Path(args.work_dir)
    if not work_dir.is_dir():
        logger.error("Work directory %s does not exist", work_dir)
        return 1

    global_excludes = [] if args.no_global_excludes else global_config.excludes
    request = BackupJobRequest(
        host=args.host,
        device=args.device,
        output=Path(args.output).absolute(),
        work_dir=work_dir.absolute(),
        excludes=tuple(args.exclude or ()),
        password=resolve_password(args),
        global_excludes=tuple(global_excludes),
        settle_seconds=global_config.settle_seconds,
        ssh_port=args.ssh_port or global_config.ssh_port,
        ssh_identity=args.ssh_identity or global_config.ssh_identity,
        remote_sudo=global_config.remote_sudo,
    )
    return execute_job(request, lock_dir=global_config.lock_dir)
