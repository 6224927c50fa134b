from __future__ import annotations

from functools import lru_cache

from deploygate.config import get_storage_backend_name
from deploygate.storage.base import StorageBackend
from deploygate.storage.postgres_impl import PostgresStorageBackend
from deploygate.storage.sqlite_impl import SQLiteStorageBackend


@lru_cache(maxsize=1)
def get_storage_backend() -> StorageBackend:
    if get_storage_backend_name() == "postgres":
        return PostgresStorageBackend()
    return SQLiteStorageBackend()


def reset_storage_backend() -> None:
    """Drop the cached backend so the next call re-reads configuration."""
    get_storage_backend.cache_clear()
