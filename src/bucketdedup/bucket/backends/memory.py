"""In-memory bucket store backend.

Keeps buckets in a dict. Data is not persisted between sessions, but a
single instance survives ``Deduper`` teardown/setup, which makes it the
backend of choice for redeploy tests.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Iterable

from bucketdedup.bucket.store import BucketStore, BucketStoreConfig
from bucketdedup.events import DedupKey


@dataclass
class MemoryBucketStoreConfig(BucketStoreConfig):
    """Configuration for the memory bucket store."""

    pass


class MemoryBucketStore(BucketStore[MemoryBucketStoreConfig]):
    """Thread-safe in-memory bucket store.

    Example:
        >>> store = MemoryBucketStore()
        >>> store.write(1700000, [("a",), ("b",)])
        >>> sorted(store.load(1700000))
        [('a',), ('b',)]
    """

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(MemoryBucketStoreConfig(**kwargs))
        self._buckets: dict[int, set[DedupKey]] = {}
        self._lock = threading.Lock()

    @classmethod
    def _default_config(cls) -> MemoryBucketStoreConfig:
        return MemoryBucketStoreConfig()

    def load(self, bucket_key: int) -> frozenset[DedupKey] | None:
        with self._lock:
            keys = self._buckets.get(bucket_key)
            return frozenset(keys) if keys is not None else None

    def write(self, bucket_key: int, new_keys: Iterable[DedupKey]) -> None:
        with self._lock:
            self._buckets.setdefault(bucket_key, set()).update(new_keys)

    def delete_range(self, low: int, high: int) -> int:
        with self._lock:
            doomed = [k for k in self._buckets if low <= k <= high]
            for k in doomed:
                del self._buckets[k]
            return len(doomed)

    def bucket_keys(self) -> list[int]:
        with self._lock:
            return sorted(self._buckets)

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()
