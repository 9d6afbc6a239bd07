"""CLI error handling utilities.

This module provides standardized error handling for CLI commands.
"""

from __future__ import annotations

import functools
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Callable, TypeVar

import typer

from bucketdedup.bucket.base import BucketStoreError
from bucketdedup.config import ConfigError
from bucketdedup.events import MalformedKeyError

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class ErrorCode(Enum):
    """Standard CLI error codes."""

    GENERAL_ERROR = 1
    USAGE_ERROR = 2

    FILE_NOT_FOUND = 10
    INVALID_FILE_FORMAT = 13

    CONFIG_INVALID = 31

    STORE_ERROR = 40

    MALFORMED_KEY = 50


class CLIError(Exception):
    """Base exception for CLI errors.

    Attributes:
        message: Error message
        code: Error code
        hint: Helpful hint for resolution
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.GENERAL_ERROR,
        hint: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.hint = hint

    def __str__(self) -> str:
        parts = [self.message]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        return "\n".join(parts)


def require_file(path: Path, description: str = "File") -> Path:
    """Require that a file exists."""
    if not path.exists():
        raise CLIError(
            f"{description} not found: {path}",
            ErrorCode.FILE_NOT_FOUND,
            hint="Check that the file exists and the path is correct.",
        )
    return path


def error_boundary(func: F) -> F:
    """Convert exceptions raised by a command into exit codes."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except typer.Exit:
            raise
        except CLIError as e:
            typer.echo(typer.style(f"Error: {e.message}", fg="red"), err=True)
            if e.hint:
                typer.echo(typer.style(f"Hint: {e.hint}", fg="yellow"), err=True)
            raise typer.Exit(e.code.value)
        except ConfigError as e:
            typer.echo(typer.style(f"Configuration error: {e}", fg="red"), err=True)
            raise typer.Exit(ErrorCode.CONFIG_INVALID.value)
        except MalformedKeyError as e:
            typer.echo(typer.style(f"Malformed event: {e}", fg="red"), err=True)
            typer.echo(
                typer.style("Hint: use --skip-malformed to count and skip such rows", fg="yellow"),
                err=True,
            )
            raise typer.Exit(ErrorCode.MALFORMED_KEY.value)
        except BucketStoreError as e:
            typer.echo(typer.style(f"Bucket store error: {e}", fg="red"), err=True)
            raise typer.Exit(ErrorCode.STORE_ERROR.value)
        except Exception as e:
            logger.exception("Unexpected error")
            typer.echo(typer.style(f"Error: {e}", fg="red"), err=True)
            raise typer.Exit(ErrorCode.GENERAL_ERROR.value)

    return wrapper  # type: ignore
