"""CLI command implementations for bucketdedup."""

from bucketdedup.cli_modules.run import run_cmd
from bucketdedup.cli_modules.store import inspect_cmd, purge_cmd

__all__ = ["run_cmd", "inspect_cmd", "purge_cmd"]
