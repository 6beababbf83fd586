"""TOML configuration loading and validation.

Handles config file discovery, parsing, and validation with helpful error messages.
"""

import tomllib
from pathlib import Path
from typing import Any

from .schema import DEFAULT_GLOBAL_EXCLUDES, Config, GlobalConfig, JobConfig


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


# Config file search paths in priority order
CONFIG_PATHS = [
    Path.home() / ".config" / "rbackup" / "config.toml",
    Path("/etc/rbackup/config.toml"),
]


def find_config_file(explicit_path: str | None = None) -> Path | None:
    """Find configuration file.

    Args:
        explicit_path: Explicitly specified config path (highest priority)

    Returns:
        Path to config file, or None if not found
    """
    if explicit_path:
        path = Path(explicit_path)
        if path.exists():
            return path
        raise ConfigError(f"Config file not found: {explicit_path}")

    for path in CONFIG_PATHS:
        if path.exists():
            return path

    return None


def _string_list(data: dict[str, Any], key: str, default: list[str]) -> list[str]:
    value = data.get(key, default)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"'{key}' must be a list of strings")
    return list(value)


def _parse_job(data: dict[str, Any]) -> JobConfig:
    """Parse job configuration from dict."""
    for required in ("name", "host", "device", "output"):
        if required not in data:
            raise ConfigError(f"Job missing required '{required}' field")

    return JobConfig(
        name=data["name"],
        host=data["host"],
        device=data["device"],
        output=data["output"],
        excludes=_string_list(data, "excludes", []),
        password_env=data.get("password_env"),
        ssh_port=data.get("ssh_port"),
        ssh_identity=data.get("ssh_identity"),
        enabled=data.get("enabled", True),
    )


def _parse_global(data: dict[str, Any]) -> GlobalConfig:
    """Parse global configuration from dict."""
    settle = data.get("settle_seconds", 2.0)
    if not isinstance(settle, (int, float)) or settle < 0:
        raise ConfigError("'settle_seconds' must be a non-negative number")

    return GlobalConfig(
        work_dir=data.get("work_dir", "/tmp"),
        lock_dir=data.get("lock_dir"),
        log_file=data.get("log_file"),
        log_dir=data.get("log_dir"),
        excludes=_string_list(data, "excludes", DEFAULT_GLOBAL_EXCLUDES),
        settle_seconds=float(settle),
        remote_sudo=data.get("remote_sudo", True),
        ssh_port=data.get("ssh_port"),
        ssh_identity=data.get("ssh_identity"),
    )


def _validate_config(config: Config) -> list[str]:
    """Validate configuration and return list of warnings."""
    warnings = []

    if not config.jobs:
        warnings.append("No jobs configured")

    names = [j.name for j in config.jobs]
    if len(names) != len(set(names)):
        warnings.append("Duplicate job names detected")

    # Two jobs writing one image would corrupt it
    outputs = [str(Path(j.output)) for j in config.jobs]
    if len(outputs) != len(set(outputs)):
        warnings.append("Several jobs write to the same image file")

    for job in config.jobs:
        if not job.device.startswith("/dev/"):
            warnings.append(
                f"Job '{job.name}' device '{job.device}' does not look like a block device"
            )
        if job.password_env is not None and job.ssh_identity is not None:
            warnings.append(
                f"Job '{job.name}' sets both password_env and ssh_identity; "
                "the password is used"
            )

    if not Path(config.global_config.work_dir).is_dir():
        warnings.append(f"Work directory '{config.global_config.work_dir}' does not exist")

    return warnings


def load_config(path: Path | str) -> tuple[Config, list[str]]:
    """Load and validate configuration from TOML file.

    Args:
        path: Path to configuration file

    Returns:
        Tuple of (Config object, list of warnings)

    Raises:
        ConfigError: If config is invalid or cannot be parsed
    """
    path = Path(path)

    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML syntax: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read config file: {e}")

    global_config = _parse_global(data.get("global", {}))
    jobs = [_parse_job(job_data) for job_data in data.get("jobs", [])]

    config = Config(global_config=global_config, jobs=jobs)

    # Validate and collect warnings
    warnings = _validate_config(config)

    return config, warnings


def generate_example_config() -> str:
    """Generate example configuration file content."""
    return """# rbackup configuration
# See documentation for full options

[global]
work_dir = "/tmp"
# log_file = "/var/log/rbackup.log"
# One log per job, <log_dir>/<job name>.log, rewritten on every run
# log_dir = "/var/log/rbackup"
# lock_dir = "/run/rbackup"

# Excluded from every job, before the job's own excludes
excludes = ["/proc/*", "/sys/*", "/dev/*", "/run/*"]

# Seconds to wait for partition device nodes after cloning a table
settle_seconds = 2
remote_sudo = true

# Raspberry Pi SD card, key-based SSH
[[jobs]]
name = "pi"
host = "root@10.0.1.41"
device = "/dev/mmcblk0"
output = "/backups/pi.img"
excludes = ["/var/cache/apt/*"]

# Password-based SSH, password taken from the environment
# [[jobs]]
# name = "nas"
# host = "admin@10.0.1.50"
# device = "/dev/sda"
# output = "/backups/nas.img"
# password_env = "RBACKUP_NAS_PASSWORD"
"""
