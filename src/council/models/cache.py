"""Lightweight TTL cache for retrieval results."""

from __future__ import annotations

import hashlib
import time
from typing import Any, Callable, Dict, Optional, Tuple


class CacheManager:
    """In-memory TTL cache keyed by request payload."""

    def __init__(
        self,
        ttl_seconds: float = 30,
        max_entries: int = 128,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.clock = clock
        self._store: Dict[str, Tuple[float, Any]] = {}

    def get_cache_key(self, payload: Dict[str, Any]) -> str:
        """Hash a request payload to derive a cache key."""
        data = repr(sorted(payload.items())).encode("utf-8")
        return hashlib.sha256(data).hexdigest()

    def get(self, key: str) -> Optional[Any]:
        """Retrieve a cached entry if still fresh."""
        entry = self._store.get(key)
        if not entry:
            return None
        ts, value = entry
        if (self.clock() - ts) > self.ttl_seconds:
            self._store.pop(key, None)
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        """Store an entry, evicting the oldest at capacity."""
        if key not in self._store and len(self._store) >= self.max_entries:
            oldest_key = next(iter(self._store.keys()))
            self._store.pop(oldest_key, None)
        self._store[key] = (self.clock(), value)

    def invalidate(self, key: str) -> None:
        self._store.pop(key, None)

    def clear(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)
