"""Core bucket types.

A bucket is the unit of persistence and eviction: the set of dedup keys
seen within one time slot of ``bucket_span_ms`` milliseconds.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from bucketdedup.events import DedupKey


# =============================================================================
# Exceptions
# =============================================================================


class BucketStoreError(Exception):
    """Base exception for all bucket store errors."""

    pass


class StoreUnavailableError(BucketStoreError):
    """Raised when a load or write cannot complete."""

    def __init__(self, operation: str, bucket_key: int | None, message: str) -> None:
        self.operation = operation
        self.bucket_key = bucket_key
        super().__init__(f"Bucket store {operation} failed for {bucket_key}: {message}")


class CorruptBucketError(BucketStoreError):
    """Raised when a persisted bucket cannot be decoded."""

    pass


# =============================================================================
# Bucket State
# =============================================================================


class BucketState(str, Enum):
    """Lifecycle of a single bucket slot."""

    UNLOADED = "unloaded"
    LOADING = "loading"
    RESIDENT = "resident"
    DIRTY = "dirty"
    FLUSHED = "flushed"
    EVICTED = "evicted"
    QUARANTINED = "quarantined"


# =============================================================================
# Bucket
# =============================================================================


@dataclass
class Bucket:
    """Resident set of dedup keys for one bucket slot.

    Keys loaded from (or already written to) the store live in
    ``written_keys``; keys recorded since the last successful flush live
    in ``unwritten_keys``. A key is never in both sets.

    Attributes:
        bucket_key: Slot identifier (``timestamp // bucket_span_ms``).
        written_keys: Keys known to be persisted.
        unwritten_keys: Keys pending flush.
        last_access_ms: Clock reading of the most recent lookup or insert.
        state: Current lifecycle state.
    """

    bucket_key: int
    written_keys: set[DedupKey] = field(default_factory=set)
    unwritten_keys: set[DedupKey] = field(default_factory=set)
    last_access_ms: int = 0
    state: BucketState = BucketState.RESIDENT

    @classmethod
    def loaded(
        cls,
        bucket_key: int,
        keys: Iterable[DedupKey] | None,
        now_ms: int = 0,
    ) -> "Bucket":
        """Create a resident bucket from keys returned by the store."""
        return cls(
            bucket_key=bucket_key,
            written_keys=set(keys or ()),
            last_access_ms=now_ms,
            state=BucketState.FLUSHED if keys else BucketState.RESIDENT,
        )

    def __len__(self) -> int:
        return len(self.written_keys) + len(self.unwritten_keys)

    def __contains__(self, key: object) -> bool:
        return key in self.written_keys or key in self.unwritten_keys

    def add(self, key: DedupKey) -> bool:
        """Record a key. Returns False if the key was already present."""
        if key in self:
            return False
        self.unwritten_keys.add(key)
        self.state = BucketState.DIRTY
        return True

    @property
    def is_dirty(self) -> bool:
        return bool(self.unwritten_keys)

    def mark_flushed(self, keys: Iterable[DedupKey]) -> None:
        """Move successfully written keys into the persisted set.

        Only the given keys are moved, so keys added while a write was
        in progress stay dirty.
        """
        for key in keys:
            self.unwritten_keys.discard(key)
            self.written_keys.add(key)
        self.state = BucketState.DIRTY if self.unwritten_keys else BucketState.FLUSHED

    def all_keys(self) -> frozenset[DedupKey]:
        return frozenset(self.written_keys | self.unwritten_keys)
