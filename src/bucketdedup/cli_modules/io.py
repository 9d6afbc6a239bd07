"""Reading and writing event files with Polars."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import polars as pl

from bucketdedup.cli_modules.errors import CLIError, ErrorCode

_READERS = {
    ".csv": pl.read_csv,
    ".parquet": pl.read_parquet,
    ".json": pl.read_json,
    ".ndjson": pl.read_ndjson,
    ".jsonl": pl.read_ndjson,
}

SUPPORTED_FORMATS = tuple(_READERS)


def _suffix(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix not in _READERS:
        raise CLIError(
            f"Unsupported file format: {suffix or path.name}",
            ErrorCode.INVALID_FILE_FORMAT,
            hint=f"Supported formats: {', '.join(SUPPORTED_FORMATS)}",
        )
    return suffix


def read_frame(path: Path) -> pl.DataFrame:
    """Read an event file into a DataFrame, choosing the reader by suffix."""
    return _READERS[_suffix(path)](path)


def write_frame(rows: list[dict[str, Any]], schema: pl.Schema | dict[str, Any], path: Path) -> int:
    """Write rows with the given schema; returns the number of rows written."""
    suffix = _suffix(path)
    df = pl.DataFrame(rows, schema=schema) if rows else pl.DataFrame(schema=schema)

    path.parent.mkdir(parents=True, exist_ok=True)
    if suffix == ".csv":
        df.write_csv(path)
    elif suffix == ".parquet":
        df.write_parquet(path)
    elif suffix == ".json":
        df.write_json(path)
    else:
        df.write_ndjson(path)
    return df.height
