"""Config command: check the job configuration or write an example one."""

import argparse
import logging
from pathlib import Path

from ..__logger__ import create_logger
from ..config import ConfigError, find_config_file, load_config
from ..config.loader import CONFIG_PATHS, generate_example_config
from .common import get_log_level

logger = logging.getLogger(__name__)


def execute_config(args: argparse.Namespace) -> int:
    """Run `config validate` or `config init`; returns the exit code."""
    create_logger(get_log_level(args))

    handlers = {"validate": _validate_config, "init": _init_config}
    handler = handlers.get(getattr(args, "config_action", None))
    if handler is None:
        print("Usage: rbackup config <validate|init>")
        return 1
    return handler(args)


def _validate_config(args: argparse.Namespace) -> int:
    """Check the configuration file and list the images its jobs maintain."""
    try:
        config_path = find_config_file(getattr(args, "config", None))
        if config_path is None:
            print("No configuration file found. Searched:")
            for path in CONFIG_PATHS:
                print(f"  {path}")
            return 1
        config, warnings = load_config(config_path)
    except ConfigError as e:
        print(f"Configuration error: {e}")
        return 1

    print(f"{config_path}: OK")
    for warning in warnings:
        print(f"  warning: {warning}")

    global_config = config.global_config
    print(f"Work directory: {global_config.work_dir}")
    print(f"Global excludes: {' '.join(global_config.excludes) or '(none)'}")
    print("")
    print(f"{len(config.jobs)} job(s), {len(config.get_enabled_jobs())} enabled:")
    for job in config.jobs:
        image = Path(job.output)
        mode = "incremental" if image.exists() else "full"
        state = "" if job.enabled else " [disabled]"
        print(f"  {job.name}: {job.host}:{job.device} -> {image} ({mode}){state}")
    return 0


def _init_config(args: argparse.Namespace) -> int:
    """Generate example configuration."""
    content = generate_example_config()

    output = getattr(args, "output", None)
    if output:
        path = Path(output)
        if path.exists() and not getattr(args, "force", False):
            print(f"{path} already exists (use --force to overwrite)")
            return 1
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        print(f"Configuration written to: {path}")
    else:
        print(content, end="")

    return 0
