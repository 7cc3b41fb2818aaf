"""
Command line interface.
"""

from queuectl.cli.main import cli, main

__all__ = ["cli", "main"]
