"""In-memory key-value store.

Useful for development and tests. Data is lost on restart.
"""

import copy
import time
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

from .base import DEFAULT_PURGE_INTERVAL


class MemoryKeyValueStore:
    """Dict-backed store honouring TTLs and insertion order."""

    def __init__(self, purge_interval: float = DEFAULT_PURGE_INTERVAL) -> None:
        self._entries: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = Lock()
        self.purge_interval = purge_interval
        self._last_purge = time.time()

    @staticmethod
    def _expires_at(ttl: Optional[float]) -> Optional[float]:
        return time.time() + ttl if ttl else None

    @staticmethod
    def _expired(expires_at: Optional[float]) -> bool:
        return expires_at is not None and expires_at <= time.time()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            value, expires_at = entry
            if self._expired(expires_at):
                del self._entries[key]
                return default
            return copy.deepcopy(value)

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._entries[key] = (copy.deepcopy(value), self._expires_at(ttl))

    def add(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        with self._lock:
            if time.time() - self._last_purge >= self.purge_interval:
                self._purge()
            entry = self._entries.get(key)
            if entry is not None and not self._expired(entry[1]):
                return False
            self._entries.pop(key, None)
            self._entries[key] = (copy.deepcopy(value), self._expires_at(ttl))
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def list(self, prefix: str, limit: int = 0) -> List[Tuple[str, Any]]:
        with self._lock:
            matches = [
                (key, copy.deepcopy(value))
                for key, (value, expires_at) in self._entries.items()
                if key.startswith(prefix) and not self._expired(expires_at)
            ]
        return matches[:limit] if limit > 0 else matches

    def _purge(self) -> int:
        expired = [key for key, (_, expires_at) in self._entries.items() if self._expired(expires_at)]
        for key in expired:
            del self._entries[key]
        self._last_purge = time.time()
        return len(expired)

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge()

    def close(self) -> None:
        with self._lock:
            self._entries.clear()
