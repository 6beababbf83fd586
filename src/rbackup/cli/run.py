"""Run command: Execute configured backup jobs one after another."""

import argparse
import logging
import os
import time
from pathlib import Path

from .. import __util__
from ..__logger__ import create_logger
from ..config import Config, ConfigError, JobConfig, find_config_file, load_config
from ..core import BackupJobRequest
from .common import execute_job, get_log_level, require_root

logger = logging.getLogger(__name__)


def execute_run(args: argparse.Namespace) -> int:
    """Execute the run command.

    Args:
        args: Parsed command line arguments

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    log_level = get_log_level(args)
    create_logger(log_level)

    # Find and load config
    try:
        config_path = find_config_file(getattr(args, "config", None))
        if config_path is None:
            print("No configuration file found.")
            print("Create one with: rbackup config init")
            print("")
            print("Or back up a single device: rbackup backup HOST DEVICE OUTPUT WORKDIR")
            return 1

        logger.info("Loading configuration from: %s", config_path)
        config, warnings = load_config(config_path)

        for warning in warnings:
            logger.warning("Config: %s", warning)

    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return 1

    jobs = _select_jobs(config, getattr(args, "job", None))
    if jobs is None:
        return 1
    if not jobs:
        logger.error("No jobs configured")
        return 1

    if getattr(args, "dry_run", False):
        return _dry_run(config, jobs)

    if not require_root():
        return 1

    create_logger(log_level, log_file=config.global_config.log_file)
    logger.info(__util__.log_heading(f"Started at {time.ctime()}"))

    results = []
    for job in jobs:
        try:
            job_log = job_log_path(config, job)
            if job_log is not None:
                job_log.parent.mkdir(parents=True, exist_ok=True)
                create_logger(log_level, log_file=job_log, truncate=True)
            logger.info(__util__.log_heading(f"Job: {job.name}"))
            exit_code = execute_job(
                build_request(job, config), lock_dir=config.global_config.lock_dir
            )
        except OSError as e:
            logger.error("Job %s failed: %s", job.name, e)
            exit_code = 1
        results.append((job.name, exit_code == 0))

    if config.global_config.log_dir:
        create_logger(log_level, log_file=config.global_config.log_file)

    logger.info(__util__.log_heading(f"Finished at {time.ctime()}"))

    success_count = sum(1 for _, success in results if success)
    fail_count = len(results) - success_count

    if fail_count > 0:
        logger.warning(
            "Completed with errors: %d succeeded, %d failed", success_count, fail_count
        )
        return 1
    else:
        logger.info("All %d job(s) completed successfully", success_count)
        return 0


def _select_jobs(config: Config, names: list[str] | None) -> list[JobConfig] | None:
    if not names:
        return config.get_enabled_jobs()
    jobs = []
    for name in names:
        job = config.get_job(name)
        if job is None:
            logger.error("No job named '%s' in configuration", name)
            return None
        jobs.append(job)
    return jobs


def job_log_path(config: Config, job: JobConfig) -> Path | None:
    """Per-job log file, or None when jobs share the global log."""
    if not config.global_config.log_dir:
        return None
    return Path(config.global_config.log_dir) / f"{job.name}.log"


def build_request(job: JobConfig, config: Config) -> BackupJobRequest:
    """Turn a configured job into an engine request."""
    global_config = config.global_config
    password = os.environ.get(job.password_env) if job.password_env else None
    return BackupJobRequest(
        host=job.host,
        device=job.device,
        output=Path(job.output).absolute(),
        work_dir=Path(global_config.work_dir).absolute(),
        excludes=tuple(job.excludes),
        password=password or None,
        global_excludes=tuple(global_config.excludes),
        settle_seconds=global_config.settle_seconds,
        ssh_port=job.ssh_port or global_config.ssh_port,
        ssh_identity=job.ssh_identity or global_config.ssh_identity,
        remote_sudo=global_config.remote_sudo,
    )


def _dry_run(config: Config, jobs: list[JobConfig]) -> int:
    """Show what would be done without making changes."""
    print("Dry run mode - showing what would be done:")
    print("")

    for job in jobs:
        request = build_request(job, config)
        mode = "incremental" if request.output.exists() else "full"
        print(f"Job: {job.name}")
        print(f"  Source: {job.host}:{job.device}")
        print(f"  Image: {request.output} ({mode})")
        print(f"  Excludes: {' '.join(request.effective_excludes)}")
        auth = f"password from ${job.password_env}" if job.password_env else "ssh key"
        print(f"  Auth: {auth}")
        print("")

    return 0
