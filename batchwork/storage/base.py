"""KeyValueStore Protocol defining the contract for all storage backends."""

from typing import Any, List, Optional, Protocol, Tuple, runtime_checkable

DEFAULT_PURGE_INTERVAL = 60.0


@runtime_checkable
class KeyValueStore(Protocol):
    """Protocol that all key-value storage backends must satisfy.

    Each operation is atomic for a single key. ``list`` returns matching
    entries in ascending insertion order; rewriting an existing key keeps
    its position. Expired entries are dropped by ``purge_expired``, which
    ``add`` also runs at most once per purge interval.
    """

    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None: ...

    def add(self, key: str, value: Any, ttl: Optional[float] = None) -> bool: ...

    def delete(self, key: str) -> None: ...

    def list(self, prefix: str, limit: int = 0) -> List[Tuple[str, Any]]: ...

    def purge_expired(self) -> int: ...

    def close(self) -> None: ...
