"""Bucket store commands.

    - inspect: List persisted buckets
    - purge: Delete persisted buckets up to a bucket key
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from bucketdedup.bucket.backends.filesystem import FileSystemBucketStore
from bucketdedup.cli_modules.errors import CLIError, ErrorCode, error_boundary


def _open_store(path: Path, namespace: str, compression: bool) -> FileSystemBucketStore:
    if not path.is_dir():
        raise CLIError(
            f"Bucket store not found: {path}",
            ErrorCode.FILE_NOT_FOUND,
            hint="Pass the directory given to `bucketdedup run --store`.",
        )
    return FileSystemBucketStore(
        base_path=str(path),
        namespace=namespace,
        compression=compression,
        create_dirs=False,
    )


@error_boundary
def inspect_cmd(
    path: Annotated[Path, typer.Argument(help="Bucket store directory")],
    namespace: Annotated[str, typer.Option("--namespace", "-n", help="Store namespace")] = "default",
    span_ms: Annotated[
        Optional[int],
        typer.Option("--span-ms", help="Bucket span, used to show slot start times"),
    ] = None,
    compression: Annotated[bool, typer.Option("--compression", help="Buckets are gzipped")] = False,
) -> None:
    """List persisted buckets and their key counts."""
    store = _open_store(path, namespace, compression)
    bucket_keys = store.bucket_keys()

    console = Console()
    if not bucket_keys:
        console.print("[yellow]No buckets found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Bucket", style="cyan", justify="right")
    if span_ms:
        table.add_column("Slot start (UTC)")
    table.add_column("Keys", justify="right")

    total = 0
    for bucket_key in bucket_keys:
        keys = store.load(bucket_key) or frozenset()
        total += len(keys)
        row = [str(bucket_key)]
        if span_ms:
            start = datetime.fromtimestamp(bucket_key * span_ms / 1000, tz=timezone.utc)
            row.append(start.isoformat(timespec="seconds"))
        row.append(f"{len(keys):,}")
        table.add_row(*row)

    console.print(table)
    console.print(f"Summary: {len(bucket_keys)} buckets, {total:,} keys")


@error_boundary
def purge_cmd(
    path: Annotated[Path, typer.Argument(help="Bucket store directory")],
    through: Annotated[int, typer.Option("--through", help="Highest bucket key to delete")],
    namespace: Annotated[str, typer.Option("--namespace", "-n", help="Store namespace")] = "default",
    compression: Annotated[bool, typer.Option("--compression", help="Buckets are gzipped")] = False,
) -> None:
    """Delete every persisted bucket with a key up to --through."""
    store = _open_store(path, namespace, compression)
    bucket_keys = store.bucket_keys()
    if not bucket_keys or bucket_keys[0] > through:
        typer.echo("Nothing to purge")
        return

    removed = store.delete_range(bucket_keys[0], through)
    typer.echo(f"Purged {removed} buckets")
