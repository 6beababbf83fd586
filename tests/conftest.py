"""Pytest configuration and shared fixtures."""

import shlex
import subprocess
from unittest.mock import patch

import pytest


class FakeCommands:
    """Stand-in for subprocess.run that records commands and replays results.

    Rules registered later win over earlier ones. Unmatched commands succeed
    with empty output.
    """

    def __init__(self):
        self.calls = []
        self._rules = []

    def on(self, *prefix, stdout="", stderr="", returncode=0):
        """Answer local commands whose argv starts with ``prefix``."""

        def matches(argv):
            return tuple(argv[: len(prefix)]) == prefix

        self._rules.insert(0, (matches, returncode, stdout, stderr))

    def on_remote(self, remote_prefix, stdout="", stderr="", returncode=0):
        """Answer ssh invocations whose remote command starts with ``remote_prefix``."""

        def matches(argv):
            if "ssh" not in argv:
                return False
            remote = shlex.split(argv[-1])
            if remote[:2] == ["sudo", "-n"]:
                remote = remote[2:]
            return " ".join(remote).startswith(remote_prefix)

        self._rules.insert(0, (matches, returncode, stdout, stderr))

    def __call__(self, command, **kwargs):
        argv = list(command)
        self.calls.append((argv, kwargs))
        for matches, returncode, stdout, stderr in self._rules:
            if matches(argv):
                return subprocess.CompletedProcess(argv, returncode, stdout, stderr)
        return subprocess.CompletedProcess(argv, 0, "", "")

    @property
    def commands(self):
        return [argv for argv, _ in self.calls]

    def named(self, name):
        """Recorded local commands whose program is ``name``."""
        return [argv for argv in self.commands if argv and argv[0] == name]

    def kwargs_for(self, name):
        return [kwargs for argv, kwargs in self.calls if argv and argv[0] == name]


@pytest.fixture
def fake_commands():
    """Patch subprocess.run behind rbackup.__util__.run_command."""
    fake = FakeCommands()
    with patch("rbackup.__util__.subprocess.run", side_effect=fake):
        yield fake


@pytest.fixture
def tmp_config_dir(tmp_path):
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_toml(tmp_path):
    """Return a sample valid TOML configuration string."""
    return f"""
[global]
work_dir = "{tmp_path}"
log_file = "/var/log/rbackup.log"
excludes = ["/proc/*", "/sys/*"]
settle_seconds = 1.5
remote_sudo = false
ssh_port = 2222

[[jobs]]
name = "pi"
host = "root@10.0.1.41"
device = "/dev/mmcblk0"
output = "/backups/pi.img"
excludes = ["/data/cache/*"]

[[jobs]]
name = "nas"
host = "admin@10.0.1.50"
device = "/dev/sda"
output = "/backups/nas.img"
password_env = "RBACKUP_NAS_PASSWORD"
ssh_port = 22
enabled = false
"""


@pytest.fixture
def minimal_config_toml():
    """Return a minimal valid TOML configuration string."""
    return """
[[jobs]]
name = "pi"
host = "root@10.0.1.41"
device = "/dev/mmcblk0"
output = "/backups/pi.img"
"""


@pytest.fixture
def config_file(tmp_config_dir, sample_config_toml):
    """Create a temporary config file with sample content."""
    config_path = tmp_config_dir / "config.toml"
    config_path.write_text(sample_config_toml)
    return config_path


@pytest.fixture
def minimal_config_file(tmp_config_dir, minimal_config_toml):
    """Create a temporary config file with minimal content."""
    config_path = tmp_config_dir / "minimal.toml"
    config_path.write_text(minimal_config_toml)
    return config_path
