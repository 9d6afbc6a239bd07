"""Filesystem-based bucket store backend.

One JSON document per bucket key under ``<base_path>/<namespace>/``.
Writes merge with the existing document and replace it atomically, so a
crash mid-write leaves either the old or the new key set on disk.
"""

from __future__ import annotations

import gzip
import json
import logging
import os
import re
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from bucketdedup.bucket.base import CorruptBucketError, StoreUnavailableError
from bucketdedup.bucket.store import BucketStore, BucketStoreConfig
from bucketdedup.events import DedupKey

logger = logging.getLogger(__name__)

_FILE_PATTERN = re.compile(r"^bucket_(-?\d+)\.json$")
_GZ_FILE_PATTERN = re.compile(r"^bucket_(-?\d+)\.json\.gz$")


@dataclass
class FileSystemBucketStoreConfig(BucketStoreConfig):
    """Configuration for filesystem bucket store.

    Attributes:
        base_path: Root directory for bucket files.
        use_compression: Whether to gzip bucket files.
        create_dirs: Whether to create directories if they don't exist.
    """

    base_path: str = ".bucketdedup/buckets"
    use_compression: bool = False
    create_dirs: bool = True

    def get_full_path(self) -> Path:
        path = Path(self.base_path)
        if self.namespace:
            path = path / self.namespace
        return path


class FileSystemBucketStore(BucketStore[FileSystemBucketStoreConfig]):
    """Bucket store persisting each bucket as a JSON file.

    Example:
        >>> store = FileSystemBucketStore(base_path="/tmp/dedup")
        >>> store.write(42, [("user-1", "click")])
        >>> store.load(42)
        frozenset({('user-1', 'click')})
    """

    def __init__(
        self,
        base_path: str = ".bucketdedup/buckets",
        namespace: str = "default",
        compression: bool = False,
        **kwargs: Any,
    ) -> None:
        config = FileSystemBucketStoreConfig(
            base_path=str(base_path),
            namespace=namespace,
            use_compression=compression,
            **{k: v for k, v in kwargs.items() if hasattr(FileSystemBucketStoreConfig, k)},
        )
        super().__init__(config)
        self._lock = threading.Lock()

    @classmethod
    def _default_config(cls) -> FileSystemBucketStoreConfig:
        return FileSystemBucketStoreConfig()

    def _do_initialize(self) -> None:
        path = self._config.get_full_path()
        if self._config.create_dirs:
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StoreUnavailableError("initialize", None, str(e))

    def _get_file_path(self, bucket_key: int) -> Path:
        ext = ".json.gz" if self._config.use_compression else ".json"
        return self._config.get_full_path() / f"bucket_{bucket_key}{ext}"

    def _serialize(self, bucket_key: int, keys: set[DedupKey]) -> bytes:
        data = {
            "bucket_key": bucket_key,
            "keys": sorted((list(k) for k in keys), key=repr),
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        content = json.dumps(data).encode("utf-8")
        if self._config.use_compression:
            content = gzip.compress(content)
        return content

    def _deserialize(self, content: bytes) -> set[DedupKey]:
        if self._config.use_compression:
            content = gzip.decompress(content)
        data = json.loads(content.decode("utf-8"))
        return {tuple(k) for k in data["keys"]}

    def _read(self, bucket_key: int) -> set[DedupKey] | None:
        file_path = self._get_file_path(bucket_key)
        try:
            with open(file_path, "rb") as f:
                content = f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StoreUnavailableError("load", bucket_key, str(e))

        try:
            return self._deserialize(content)
        except (json.JSONDecodeError, KeyError, TypeError, OSError, EOFError) as e:
            raise CorruptBucketError(f"Failed to parse {file_path}: {e}")

    def load(self, bucket_key: int) -> frozenset[DedupKey] | None:
        self.initialize()
        keys = self._read(bucket_key)
        return frozenset(keys) if keys is not None else None

    def write(self, bucket_key: int, new_keys: Iterable[DedupKey]) -> None:
        self.initialize()
        new_keys = set(new_keys)
        file_path = self._get_file_path(bucket_key)

        with self._lock:
            existing = self._read(bucket_key) or set()
            if new_keys <= existing and file_path.exists():
                return
            merged = existing | new_keys

            try:
                fd, tmp_name = tempfile.mkstemp(
                    dir=file_path.parent, prefix=".tmp_", suffix=file_path.suffix
                )
                with os.fdopen(fd, "wb") as f:
                    f.write(self._serialize(bucket_key, merged))
                os.replace(tmp_name, file_path)
            except OSError as e:
                raise StoreUnavailableError("write", bucket_key, str(e))

        logger.debug(
            "Wrote bucket %d (%d new, %d total keys)",
            bucket_key,
            len(merged) - len(existing),
            len(merged),
        )

    def delete_range(self, low: int, high: int) -> int:
        self.initialize()
        removed = 0
        with self._lock:
            for bucket_key, file_path in self._scan():
                if low <= bucket_key <= high:
                    try:
                        file_path.unlink()
                    except FileNotFoundError:
                        continue
                    except OSError as e:
                        raise StoreUnavailableError("delete", bucket_key, str(e))
                    removed += 1
        return removed

    def bucket_keys(self) -> list[int]:
        self.initialize()
        return sorted({bucket_key for bucket_key, _ in self._scan()})

    def _scan(self) -> list[tuple[int, Path]]:
        path = self._config.get_full_path()
        if not path.exists():
            return []
        pattern = _GZ_FILE_PATTERN if self._config.use_compression else _FILE_PATTERN
        found = []
        for file_path in path.iterdir():
            match = pattern.match(file_path.name)
            if match:
                found.append((int(match.group(1)), file_path))
        return found
