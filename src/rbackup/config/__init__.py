"""Configuration system for rbackup.

This module provides TOML-based configuration loading, validation,
and schema definitions for scheduled image backups.
"""

from .loader import ConfigError, find_config_file, load_config
from .schema import Config, GlobalConfig, JobConfig

__all__ = [
    "GlobalConfig",
    "JobConfig",
    "Config",
    "load_config",
    "find_config_file",
    "ConfigError",
]
