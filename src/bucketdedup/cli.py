"""Command-line interface for bucketdedup."""

import logging
import sys
from pathlib import Path
from typing import Annotated, Optional

import typer
import yaml

from bucketdedup.cli_modules import inspect_cmd, purge_cmd, run_cmd
from bucketdedup.cli_modules.errors import error_boundary, require_file
from bucketdedup.config import load_config

app = typer.Typer(
    name="bucketdedup",
    help="Time-windowed event deduplication with persistent buckets",
    add_completion=False,
)

app.command(name="run")(run_cmd)
app.command(name="inspect")(inspect_cmd)
app.command(name="purge")(purge_cmd)


@app.callback()
def main(
    ctx: typer.Context,
    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", "-l", help="Logging level (overrides configuration)"),
    ] = None,
) -> None:
    """Configure logging for all commands."""
    ctx.obj = {"log_level": log_level}
    logging.basicConfig(
        level=getattr(logging, (log_level or "WARNING").upper(), logging.WARNING),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


@app.command(name="config")
@error_boundary
def config_cmd(
    config: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Configuration file (yaml or json)"),
    ] = None,
) -> None:
    """Show the resolved configuration (file, then BUCKETDEDUP_* variables)."""
    if config is not None:
        require_file(config, "Configuration file")
    resolved = load_config(config)
    typer.echo(yaml.safe_dump(resolved.to_dict(), sort_keys=False).rstrip())


if __name__ == "__main__":
    app()
