"""Command line interface for rbackup."""

from .dispatcher import create_subcommand_parser, main

__all__ = ["create_subcommand_parser", "main"]
