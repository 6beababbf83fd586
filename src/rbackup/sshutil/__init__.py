"""SSH helpers for talking to the machine being backed up."""

from .shell import RemoteError, RemoteShell

__all__ = ["RemoteError", "RemoteShell"]
