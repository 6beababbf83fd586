"""Configuration schema definitions using dataclasses.

Defines the structure for TOML configuration with sensible defaults.
"""

from dataclasses import dataclass, field
from typing import Optional

DEFAULT_GLOBAL_EXCLUDES = ["/proc/*", "/sys/*", "/dev/*", "/run/*"]


@dataclass
class GlobalConfig:
    """Global configuration settings.

    Attributes:
        work_dir: Directory for scratch mountpoints and temporary files
        lock_dir: Directory for per-image lock files (None: next to the image)
        log_file: Path to the shared log (None for console only)
        log_dir: Directory for per-job logs, one `<job name>.log` each (run only)
        excludes: rsync exclusion patterns applied to every job, first
        settle_seconds: Wait after re-reading a new image's partition table
        remote_sudo: Run privileged remote commands through sudo
        ssh_port: Default SSH port for remote hosts
        ssh_identity: Default SSH private key
    """

    work_dir: str = "/tmp"
    lock_dir: Optional[str] = None
    log_file: Optional[str] = None
    log_dir: Optional[str] = None
    excludes: list[str] = field(default_factory=lambda: list(DEFAULT_GLOBAL_EXCLUDES))
    settle_seconds: float = 2.0
    remote_sudo: bool = True
    ssh_port: Optional[int] = None
    ssh_identity: Optional[str] = None


@dataclass
class JobConfig:
    """One backup job: a device of a remote host and the image it goes to.

    Attributes:
        name: Job name used on the command line and as its log file name
        host: Remote endpoint (user@host)
        device: Remote block device
        output: Image file path
        excludes: Job-specific exclusion patterns, applied after the global ones
        password_env: Environment variable holding the SSH password
        ssh_port: SSH port (overrides global)
        ssh_identity: SSH private key (overrides global)
        enabled: Whether `run` picks up this job
    """

    name: str
    host: str
    device: str
    output: str
    excludes: list[str] = field(default_factory=list)
    password_env: Optional[str] = None
    ssh_port: Optional[int] = None
    ssh_identity: Optional[str] = None
    enabled: bool = True


@dataclass
class Config:
    """Root configuration object.

    Attributes:
        global_config: Global settings that apply to all jobs
        jobs: List of job configurations
    """

    global_config: GlobalConfig = field(default_factory=GlobalConfig)
    jobs: list[JobConfig] = field(default_factory=list)

    def get_enabled_jobs(self) -> list[JobConfig]:
        """Get list of enabled jobs."""
        return [j for j in self.jobs if j.enabled]

    def get_job(self, name: str) -> Optional[JobConfig]:
        for job in self.jobs:
            if job.name == name:
                return job
        return None
