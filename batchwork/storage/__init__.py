"""Key-value storage backends for batchwork processes."""

import os
from typing import Optional

from .base import KeyValueStore
from .local import LocalDBKeyValueStore
from .memory import MemoryKeyValueStore
from .remote import RemoteDBKeyValueStore


def get_store(backend: Optional[str] = None) -> KeyValueStore:
    """Return the configured key-value store backend.

    Backend is selected via the BATCHWORK_STORE_BACKEND env var (default: 'local').
    When 'remote' is selected, REMOTE_DB_URL must also be set.
    """
    backend = (backend or os.getenv("BATCHWORK_STORE_BACKEND", "local")).lower()
    if backend == "memory":
        return MemoryKeyValueStore()
    if backend == "local":
        return LocalDBKeyValueStore()
    if backend == "remote":
        url = os.getenv("REMOTE_DB_URL")
        if not url:
            raise RuntimeError("BATCHWORK_STORE_BACKEND=remote but REMOTE_DB_URL is not set")
        return RemoteDBKeyValueStore(db_url=url)
    raise RuntimeError(
        f"Unknown BATCHWORK_STORE_BACKEND={backend!r}. Valid values: 'memory', 'local', 'remote'"
    )


__all__ = [
    "KeyValueStore",
    "LocalDBKeyValueStore",
    "MemoryKeyValueStore",
    "RemoteDBKeyValueStore",
    "get_store",
]
