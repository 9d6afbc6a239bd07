"""Bucket store interface.

A bucket store is a key-range blob store mapping a bucket key to the set
of dedup keys seen in that slot. Implementations must be safe to call
from the bucket manager's loader threads concurrently with writes issued
by the ingestion thread.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Generic, Iterable, TypeVar

from bucketdedup.events import DedupKey


@dataclass
class BucketStoreConfig:
    """Base configuration for bucket stores.

    Attributes:
        namespace: Isolates buckets of different dedup operators sharing
            a storage root.
        metadata: Additional backend-specific options.
    """

    namespace: str = "default"
    metadata: dict[str, Any] = field(default_factory=dict)


ConfigT = TypeVar("ConfigT", bound=BucketStoreConfig)


class BucketStore(ABC, Generic[ConfigT]):
    """Abstract base class for bucket stores.

    Contract:
        - ``load`` and ``write`` are idempotent; writing a key twice is a no-op.
        - ``write`` merges into whatever the bucket already holds.
        - No ordering is guaranteed across different bucket keys.
        - Failures raise ``StoreUnavailableError``.
    """

    def __init__(self, config: ConfigT | None = None) -> None:
        self._config = config or self._default_config()
        self._initialized = False

    @classmethod
    @abstractmethod
    def _default_config(cls) -> ConfigT:
        """Create default configuration for this store type."""
        pass

    @property
    def config(self) -> ConfigT:
        return self._config

    # -------------------------------------------------------------------------
    # Lifecycle Methods
    # -------------------------------------------------------------------------

    def initialize(self) -> None:
        """Initialize the store (create directories, connect, etc.).

        Called automatically on first use.
        """
        if not self._initialized:
            self._do_initialize()
            self._initialized = True

    def _do_initialize(self) -> None:
        pass

    def close(self) -> None:
        pass

    def __enter__(self) -> "BucketStore[ConfigT]":
        self.initialize()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Bucket Operations
    # -------------------------------------------------------------------------

    @abstractmethod
    def load(self, bucket_key: int) -> frozenset[DedupKey] | None:
        """Load the keys persisted for a bucket.

        Returns:
            The persisted keys, or None if the bucket has never been written.

        Raises:
            StoreUnavailableError: If the store cannot be read.
        """
        pass

    @abstractmethod
    def write(self, bucket_key: int, new_keys: Iterable[DedupKey]) -> None:
        """Append keys to a bucket, creating it if needed.

        Raises:
            StoreUnavailableError: If the write cannot complete. The caller
                must treat the keys as unwritten.
        """
        pass

    @abstractmethod
    def delete_range(self, low: int, high: int) -> int:
        """Delete every bucket with ``low <= bucket_key <= high``.

        Returns:
            Number of buckets removed.
        """
        pass

    @abstractmethod
    def bucket_keys(self) -> list[int]:
        """List persisted bucket keys in ascending order."""
        pass
