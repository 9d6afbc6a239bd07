"""Factory functions for creating bucket stores.

New backends can be registered at runtime with ``register_bucket_store``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable

from bucketdedup.bucket.base import BucketStoreError
from bucketdedup.bucket.store import BucketStore

if TYPE_CHECKING:
    from bucketdedup.config import DeduperConfig

StoreConstructor = Callable[..., BucketStore[Any]]

_store_registry: dict[str, StoreConstructor] = {}


def register_bucket_store(name: str) -> Callable[[StoreConstructor], StoreConstructor]:
    """Decorator to register a bucket store backend.

    Example:
        >>> @register_bucket_store("redis")
        ... class RedisBucketStore(BucketStore):
        ...     pass
    """

    def decorator(cls: StoreConstructor) -> StoreConstructor:
        _store_registry[name] = cls
        return cls

    return decorator


def get_bucket_store(backend: str, **kwargs: Any) -> BucketStore[Any]:
    """Create a bucket store for the named backend.

    Args:
        backend: "filesystem", "memory", or a registered backend name.
        **kwargs: Backend-specific options.

    Raises:
        BucketStoreError: If the backend is unknown.
    """
    if backend not in _store_registry:
        _register_builtin(backend)

    if backend not in _store_registry:
        available = ", ".join(sorted(set(_store_registry) | {"filesystem", "memory"}))
        raise BucketStoreError(f"Unknown bucket store backend '{backend}'. Available: {available}")

    return _store_registry[backend](**kwargs)


def _register_builtin(backend: str) -> None:
    if backend == "filesystem":
        from bucketdedup.bucket.backends.filesystem import FileSystemBucketStore

        _store_registry["filesystem"] = FileSystemBucketStore
    elif backend == "memory":
        from bucketdedup.bucket.backends.memory import MemoryBucketStore

        _store_registry["memory"] = MemoryBucketStore


def store_from_config(config: "DeduperConfig") -> BucketStore[Any]:
    """Create the bucket store described by a ``DeduperConfig``."""
    if config.store_backend == "filesystem":
        return get_bucket_store(
            "filesystem",
            base_path=config.store_path,
            namespace=config.store_namespace,
            compression=config.store_compression,
        )
    return get_bucket_store(config.store_backend, namespace=config.store_namespace)
