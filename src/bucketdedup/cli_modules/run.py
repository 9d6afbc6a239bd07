"""Run command.

This module implements the `bucketdedup run` command, which replays an
event file through the deduper and writes the novel rows.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from bucketdedup.bucket.manager import EventTimeClock
from bucketdedup.cli_modules.errors import error_boundary, require_file
from bucketdedup.cli_modules.io import read_frame, write_frame
from bucketdedup.config import load_config
from bucketdedup.deduper import Deduper, DeduperStats
from bucketdedup.events import Event, MalformedKeyError

logger = logging.getLogger(__name__)


def _print_summary(console: Console, stats: DeduperStats, malformed: int, output: Path | None) -> None:
    table = Table(title="Deduplication summary", show_header=True, header_style="bold")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right")

    table.add_row("Events received", f"{stats.received:,}")
    table.add_row("Emitted (novel)", f"[green]{stats.emitted:,}[/green]")
    table.add_row("Suppressed (duplicate)", f"[yellow]{stats.duplicates:,}[/yellow]")
    table.add_row("Late (emitted)", f"{stats.late:,}")
    table.add_row("Malformed (skipped)", f"[red]{malformed:,}[/red]" if malformed else "0")
    table.add_row("Windows", f"{stats.windows:,}")

    console.print(table)
    if output is not None:
        console.print(f"Novel rows written to [bold]{output}[/bold]")


@error_boundary
def run_cmd(
    ctx: typer.Context,
    file: Annotated[Path, typer.Argument(help="Event file (csv, parquet, json, ndjson)")],
    key: Annotated[
        list[str],
        typer.Option("--key", "-k", help="Column forming the dedup key (repeatable)"),
    ],
    time_col: Annotated[
        str,
        typer.Option("--time-col", "-t", help="Column holding the event time"),
    ],
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="File receiving novel rows"),
    ] = None,
    store: Annotated[
        Optional[Path],
        typer.Option("--store", "-s", help="Bucket store directory"),
    ] = None,
    memory: Annotated[
        bool,
        typer.Option("--memory", help="Keep buckets in memory only"),
    ] = False,
    config: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Configuration file (yaml or json)"),
    ] = None,
    span_ms: Annotated[
        Optional[int],
        typer.Option("--span-ms", help="Bucket span in milliseconds"),
    ] = None,
    window: Annotated[
        Optional[int],
        typer.Option("--window", help="Number of buckets retained"),
    ] = None,
    grace_ms: Annotated[
        Optional[int],
        typer.Option("--grace-ms", help="Grace period before eviction in milliseconds"),
    ] = None,
    batch_size: Annotated[
        int,
        typer.Option("--batch-size", "-b", help="Rows per processing window", min=1),
    ] = 10_000,
    skip_malformed: Annotated[
        bool,
        typer.Option("--skip-malformed", help="Count and skip rows without a usable key"),
    ] = False,
) -> None:
    """Deduplicate an event file within a sliding window of time buckets."""
    require_file(file)
    if config is not None:
        require_file(config, "Configuration file")

    cfg = load_config(
        config,
        bucket_span_ms=span_ms,
        sliding_window_buckets=window,
        grace_period_ms=grace_ms,
        store_path=str(store) if store is not None else None,
        store_backend="memory" if memory else None,
    )
    if not (ctx.obj or {}).get("log_level"):
        logging.getLogger("bucketdedup").setLevel(cfg.log_level.upper())

    df = read_frame(file)
    missing = [c for c in [*key, time_col] if c not in df.columns]
    if missing:
        raise MalformedKeyError(f"Columns not found in {file.name}: {', '.join(missing)}")

    clock = EventTimeClock()
    novel_rows: list[dict[str, Any]] = []
    deduper = Deduper.from_config(
        cfg,
        novel_rows.append,
        convert=lambda event: event.payload,
        clock=clock,
    )
    logger.info("Deduplicating %d rows from %s", df.height, file)

    malformed = 0
    deduper.setup({"input": str(file)})
    try:
        for window_id, offset in enumerate(range(0, df.height, batch_size)):
            deduper.begin_window(window_id)
            for row in df.slice(offset, batch_size).iter_rows(named=True):
                try:
                    event = Event.from_record(row, key, time_col)
                except MalformedKeyError:
                    if not skip_malformed:
                        raise
                    malformed += 1
                    continue
                clock.observe(event.timestamp)
                deduper.process(event)
            deduper.end_window()
            deduper.handle_idle_time()
    finally:
        deduper.teardown()

    if output is not None:
        write_frame(novel_rows, df.schema, output)

    _print_summary(Console(), deduper.stats, malformed, output)
