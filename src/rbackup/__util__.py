# pyright: standard

"""rbackup: rbackup/__util__.py
Common utility code shared by the engine and the CLI.
"""

import logging
import os
import shutil
import stat
import subprocess
from collections.abc import Iterable, Sequence

logger = logging.getLogger(__name__)


class AbortError(Exception):
    """Fatal error that aborts the current backup job."""

    pass


class CommandError(AbortError):
    """An external command exited with a non-zero status."""

    def __init__(self, command: Sequence[str], returncode: int, stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        message = f"{' '.join(self.command)} exited with status {returncode}"
        if stderr:
            message += f": {stderr.strip()}"
        super().__init__(message)


def log_heading(caption: str) -> str:
    """Formatted heading for logging output sections."""
    return f"--[ {caption} ]--"


def run_command(
    command: Sequence[str],
    check: bool = True,
    capture: bool = True,
    input_text: str | None = None,
    env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess:
    """Run a local command and return the completed process.

    Args:
        command: Command and arguments
        check: Raise CommandError on a non-zero exit status
        capture: Capture stdout/stderr as text instead of inheriting them
        input_text: Text fed to the command's stdin (stdin is /dev/null otherwise)
        env: Extra environment variables merged over os.environ

    Returns:
        The CompletedProcess

    Raises:
        CommandError: If the command is missing, or fails and check is set
    """
    command = [str(c) for c in command]
    logger.debug("Executing: %s", " ".join(command))

    kwargs = {"text": True}
    if capture:
        kwargs["stdout"] = subprocess.PIPE
        kwargs["stderr"] = subprocess.PIPE
    if input_text is not None:
        kwargs["input"] = input_text
    else:
        kwargs["stdin"] = subprocess.DEVNULL
    if env:
        kwargs["env"] = {**os.environ, **env}

    try:
        result = subprocess.run(command, **kwargs)
    except FileNotFoundError:
        logger.error("Command not found: %s", command[0])
        raise CommandError(command, 127, f"{command[0]}: command not found")

    if result.returncode != 0:
        logger.debug(
            "Command exited with %d: %s", result.returncode, " ".join(command)
        )
        if check:
            raise CommandError(command, result.returncode, result.stderr or "")
    return result


def missing_tools(tools: Iterable[str]) -> list[str]:
    """Return the tools from ``tools`` that cannot be found in PATH."""
    return [tool for tool in tools if shutil.which(tool) is None]


def has_tool(tool: str) -> bool:
    return shutil.which(tool) is not None


def is_block_device(path: str) -> bool:
    """Whether ``path`` exists and is a block device node."""
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def format_bytes(size: int) -> str:
    """Render a byte count as MiB, the unit the job log reports sizes in."""
    return f"{size // (1024 * 1024)}MB"
