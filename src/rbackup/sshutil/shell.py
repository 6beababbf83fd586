# pyright: standard

"""rbackup: rbackup/sshutil/shell.py
Remote command execution over ssh for one remote endpoint.
"""

import logging
import shlex
from typing import List, Optional

from .. import __util__

logger = logging.getLogger(__name__)


class RemoteError(__util__.AbortError):
    """The remote host could not be reached or a remote command failed."""

    pass


class RemoteShell:
    """Runs commands on ``endpoint`` (``user@host`` or ``host``) over ssh.

    A non-empty password switches to sshpass; the password is handed over in
    the SSHPASS environment variable so it never shows up in argv.
    """

    def __init__(
        self,
        endpoint: str,
        password: Optional[str] = None,
        port: Optional[int] = None,
        identity_file: Optional[str] = None,
        use_sudo: bool = True,
        ssh_opts: Optional[List[str]] = None,
    ):
        self.endpoint = endpoint
        self.password = password or None
        self.port = port
        self.identity_file = identity_file
        self.use_sudo = use_sudo
        self.ssh_opts = ssh_opts or []

    def __repr__(self) -> str:
        return f"RemoteShell({self.endpoint!r})"

    @property
    def env(self) -> dict[str, str] | None:
        if self.password:
            return {"SSHPASS": self.password}
        return None

    def ssh_base_cmd(self) -> List[str]:
        """The ssh invocation without the destination."""
        cmd = ["sshpass", "-e", "ssh"] if self.password else ["ssh"]

        opts = ["StrictHostKeyChecking=no", "ServerAliveInterval=15"]
        if not self.password:
            opts.append("BatchMode=yes")
        opts.extend(self.ssh_opts)
        for opt in opts:
            cmd.extend(["-o", opt])

        if self.port:
            cmd.extend(["-p", str(self.port)])
        if self.identity_file:
            cmd.extend(["-i", str(self.identity_file)])
        return cmd

    def rsync_rsh(self) -> str:
        """The remote shell string for ``rsync -e``."""
        return shlex.join(self.ssh_base_cmd())

    def build_command(self, command: List[str], sudo: bool = False) -> List[str]:
        remote = [str(c) for c in command]
        if sudo and self.use_sudo:
            remote = ["sudo", "-n"] + remote
        return self.ssh_base_cmd() + [self.endpoint, "--", shlex.join(remote)]

    def run(self, command: List[str], sudo: bool = False) -> str:
        """Run ``command`` remotely and return its stdout.

        Raises:
            RemoteError: If ssh or the remote command fails
        """
        ssh_cmd = self.build_command(command, sudo=sudo)
        try:
            result = __util__.run_command(ssh_cmd, env=self.env)
        except __util__.CommandError as e:
            # ssh reserves 255 for its own connection and auth failures
            if e.returncode == 255:
                raise RemoteError(f"Cannot reach {self.endpoint}: {e.stderr.strip()}")
            raise RemoteError(
                f"Remote command '{' '.join(map(str, command))}' failed on "
                f"{self.endpoint} with status {e.returncode}: {e.stderr.strip()}"
            )
        return result.stdout

    def check_connection(self) -> None:
        """Raise RemoteError unless a trivial remote command succeeds."""
        self.run(["true"])

    def source_spec(self, path: str) -> str:
        """rsync source argument mirroring the contents of remote ``path``."""
        return f"{self.endpoint}:{path.rstrip('/')}/"

