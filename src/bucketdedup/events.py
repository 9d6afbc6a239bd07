"""Events and dedup key extraction.

An event carries the dedup key that identifies logically identical
events, the timestamp used for bucket assignment, and an opaque payload
that is handed downstream untouched (or through a convert function).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Sequence


KeyField = str | int | float
DedupKey = tuple[KeyField, ...]


class DeduperError(Exception):
    """Base exception for deduplication errors."""

    pass


class MalformedKeyError(DeduperError, ValueError):
    """Raised when an event lacks a usable dedup key or timestamp."""

    def __init__(self, message: str, record: Any = None) -> None:
        self.record = record
        super().__init__(message)


def _check_key_field(value: Any, name: str, record: Any) -> KeyField:
    if value is None:
        raise MalformedKeyError(f"Dedup key field '{name}' is null", record)
    # bool keys would collide with 1 and 1.0.
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise MalformedKeyError(
            f"Dedup key field '{name}' has unsupported type "
            f"{type(value).__name__}",
            record,
        )
    if isinstance(value, float) and value != value:
        raise MalformedKeyError(f"Dedup key field '{name}' is NaN", record)
    return value


def to_epoch_millis(value: Any) -> int:
    """Convert a timestamp value to epoch milliseconds.

    Accepts ints/floats (already in milliseconds), datetimes and ISO-8601
    strings. Naive datetimes are interpreted as local time.
    """
    if isinstance(value, bool):
        raise MalformedKeyError(f"Invalid timestamp: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value != value:
            raise MalformedKeyError("Timestamp is NaN")
        return int(value)
    if isinstance(value, datetime):
        return int(value.timestamp() * 1000)
    if isinstance(value, str):
        try:
            return int(datetime.fromisoformat(value).timestamp() * 1000)
        except ValueError:
            raise MalformedKeyError(f"Invalid timestamp: {value!r}") from None
    raise MalformedKeyError(f"Invalid timestamp: {value!r}")


@dataclass(frozen=True)
class Event:
    """A keyed, timestamped event.

    Attributes:
        key: Dedup key fields. Two events with equal keys are duplicates
            when they fall into the same bucket.
        timestamp: Event time in epoch milliseconds.
        payload: Opaque event body.

    Example:
        >>> event = Event(key=("order-1",), timestamp=1_700_000_000_000)
        >>> event.key
        ('order-1',)
    """

    key: DedupKey
    timestamp: int
    payload: Any = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not isinstance(self.key, tuple) or not self.key:
            raise MalformedKeyError(
                f"Dedup key must be a non-empty tuple, got {self.key!r}",
                self.payload,
            )
        for i, value in enumerate(self.key):
            _check_key_field(value, str(i), self.payload)
        if isinstance(self.timestamp, bool) or not isinstance(self.timestamp, int):
            raise MalformedKeyError(
                f"Timestamp must be epoch milliseconds, got {self.timestamp!r}",
                self.payload,
            )

    @classmethod
    def from_record(
        cls,
        record: Mapping[str, Any],
        key_fields: Sequence[str],
        time_field: str,
    ) -> "Event":
        """Build an event from a mapping record.

        Args:
            record: Source record; becomes the payload.
            key_fields: Field names that form the dedup key, in order.
            time_field: Field holding the event time.

        Raises:
            MalformedKeyError: If a key field or the time field is missing,
                null or of an unsupported type.
        """
        if not key_fields:
            raise MalformedKeyError("At least one key field is required", record)

        values = []
        for name in key_fields:
            if name not in record:
                raise MalformedKeyError(f"Missing dedup key field '{name}'", record)
            values.append(_check_key_field(record[name], name, record))

        if time_field not in record or record[time_field] is None:
            raise MalformedKeyError(f"Missing time field '{time_field}'", record)

        return cls(
            key=tuple(values),
            timestamp=to_epoch_millis(record[time_field]),
            payload=record,
        )
