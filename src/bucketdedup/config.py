"""Configuration for bucketdedup.

Configuration is resolved in priority order (later overrides earlier):

    DeduperConfig defaults
         |
         +---> config file (YAML or JSON)
         +---> environment variables (BUCKETDEDUP_*)
         +---> explicit overrides
         |
         v
    DeduperConfig (validated, frozen)

Usage:
    >>> from bucketdedup.config import load_config
    >>> config = load_config("dedup.yaml", bucket_span_ms=1000)
    >>> config.bucket_span_ms
    1000

Environment variables map one-to-one onto field names, e.g.
``BUCKETDEDUP_GRACE_PERIOD_MS=60000``.
"""

from __future__ import annotations

import json
import os
import types
import typing
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from bucketdedup.bucket.base import StoreUnavailableError
from bucketdedup.common.retry import RetryConfig


class ConfigError(Exception):
    """Raised for invalid configuration values or unreadable config files."""

    pass


@dataclass(frozen=True)
class DeduperConfig:
    """Deduplication engine configuration.

    Attributes:
        bucket_span_ms: Duration of one bucket slot.
        sliding_window_buckets: Number of most recent slots retained for
            duplicate detection.
        grace_period_ms: Extra time after the retained window during which a
            slot still accepts late events before it is evicted.
        store_backend: Bucket store backend ("filesystem" or "memory").
        store_path: Root directory of the filesystem store.
        store_namespace: Namespace isolating this operator's buckets.
        store_compression: Whether the filesystem store gzips buckets.
        loader_threads: Worker threads used for asynchronous bucket loads.
        max_buckets_in_memory: Cap on resident buckets (0 = unbounded).
        sweep_interval_ms: Minimum time between eviction sweeps
            (0 = every idle tick).
        purge_expired: Delete expired buckets from the store.
        load_max_attempts: Attempts per load before the failure is
            reported and the load re-issued.
        load_base_delay: Initial backoff between load attempts (seconds).
        load_max_delay: Backoff cap (seconds).
        window_load_timeout: Seconds ``end_window`` waits for outstanding
            loads (None = until all are serviced).
        log_level: Logging level for the CLI.
    """

    bucket_span_ms: int = 60_000
    sliding_window_buckets: int = 60
    grace_period_ms: int = 60_000
    store_backend: str = "filesystem"
    store_path: str = ".bucketdedup/buckets"
    store_namespace: str = "default"
    store_compression: bool = False
    loader_threads: int = 4
    max_buckets_in_memory: int = 0
    sweep_interval_ms: int = 0
    purge_expired: bool = True
    load_max_attempts: int = 3
    load_base_delay: float = 0.1
    load_max_delay: float = 5.0
    window_load_timeout: float | None = None
    log_level: str = "WARNING"

    def __post_init__(self) -> None:
        if self.bucket_span_ms <= 0:
            raise ConfigError("bucket_span_ms must be positive")
        if self.sliding_window_buckets < 1:
            raise ConfigError("sliding_window_buckets must be at least 1")
        if self.grace_period_ms < 0:
            raise ConfigError("grace_period_ms must be non-negative")
        if self.loader_threads < 1:
            raise ConfigError("loader_threads must be at least 1")
        if self.max_buckets_in_memory < 0:
            raise ConfigError("max_buckets_in_memory must be non-negative")
        if self.sweep_interval_ms < 0:
            raise ConfigError("sweep_interval_ms must be non-negative")
        if self.store_backend not in ("filesystem", "memory"):
            raise ConfigError(f"Unknown store backend: {self.store_backend}")
        if self.window_load_timeout is not None and self.window_load_timeout < 0:
            raise ConfigError("window_load_timeout must be non-negative")
        try:
            self.retry_config()
        except ValueError as e:
            raise ConfigError(str(e)) from e

    @property
    def retention_ms(self) -> int:
        """Time a slot stays live after it opens, grace period included."""
        return self.sliding_window_buckets * self.bucket_span_ms + self.grace_period_ms

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.load_max_attempts,
            base_delay=self.load_base_delay,
            max_delay=self.load_max_delay,
            retryable_exceptions=(StoreUnavailableError,),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeduperConfig":
        """Build a config from loosely typed values.

        Raises:
            ConfigError: On unknown keys or values that cannot be coerced.
        """
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

        hints = typing.get_type_hints(cls)
        values = {name: _coerce(name, value, hints[name]) for name, value in data.items()}
        return cls(**values)


# =============================================================================
# Value parsing
# =============================================================================


def _coerce(name: str, value: Any, hint: Any) -> Any:
    args = typing.get_args(hint)
    if isinstance(hint, types.UnionType) or typing.get_origin(hint) is typing.Union:
        if value is None:
            return None
        hint = next(a for a in args if a is not type(None))

    try:
        if hint is bool:
            if isinstance(value, str):
                lowered = value.lower()
                if lowered in ("true", "yes", "1", "on"):
                    return True
                if lowered in ("false", "no", "0", "off"):
                    return False
                raise ValueError(value)
            return bool(value)
        if hint is int:
            if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
                raise ValueError(value)
            return int(value)
        if hint is float:
            return float(value)
        return str(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid value for {name}: {value!r}") from None


def _parse_env_value(value: str) -> Any:
    """Parse an environment string, leaving typing to the field coercion."""
    if value.lower() in ("null", "none", ""):
        return None
    return value


# =============================================================================
# Sources
# =============================================================================


def load_file(path: str | Path) -> dict[str, Any]:
    """Load configuration values from a YAML or JSON file.

    Raises:
        ConfigError: If the file is missing, unparsable or not a mapping.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
        suffix = path.suffix.lower()
        if suffix in (".yaml", ".yml"):
            data = yaml.safe_load(content) or {}
        elif suffix == ".json":
            data = json.loads(content)
        else:
            raise ConfigError(f"Unsupported file format: {suffix}")
    except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to load config {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file must contain a mapping: {path}")
    return data


def load_env(prefix: str = "BUCKETDEDUP", environ: dict[str, str] | None = None) -> dict[str, Any]:
    """Collect ``<PREFIX>_<FIELD>`` environment variables."""
    environ = os.environ if environ is None else environ
    known = {f.name for f in fields(DeduperConfig)}
    full_prefix = f"{prefix}_"
    result: dict[str, Any] = {}

    for key, value in environ.items():
        if key.startswith(full_prefix):
            name = key[len(full_prefix):].lower()
            if name in known:
                result[name] = _parse_env_value(value)

    return result


def load_config(
    path: str | Path | None = None,
    *,
    env_prefix: str = "BUCKETDEDUP",
    environ: dict[str, str] | None = None,
    **overrides: Any,
) -> DeduperConfig:
    """Resolve configuration from file, environment and overrides.

    Overrides whose value is None are ignored, so CLI options can be
    passed through unconditionally.
    """
    data: dict[str, Any] = {}
    if path is not None:
        data.update(load_file(path))
    data.update(load_env(env_prefix, environ))
    data.update({k: v for k, v in overrides.items() if v is not None})
    return DeduperConfig.from_dict(data)
