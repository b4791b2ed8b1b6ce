"""Expiry-ordered TTL cache."""

import time
from collections import deque
from typing import Callable, Deque, Dict, Generic, Optional, Tuple, TypeVar

T = TypeVar('T')


class TTLCache(Generic[T]):
    """
    In-memory cache with a fixed, absolute TTL per entry.

    Entries expire ``ttl`` seconds after insertion regardless of access.
    Since every entry gets the same TTL, insertion order is expiry order, so
    expired entries are popped from the head of a deque on each access rather
    than by a background sweep. The clock is injectable, which keeps expiry
    deterministic under test.

    Safe for asyncio (single-threaded event loop), not for threads.
    """

    def __init__(
        self,
        ttl: float = 60.0,
        max_size: int = 100000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        if max_size < 1:
            raise ValueError("max_size must be positive")

        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock
        self._data: Dict[str, Tuple[T, float]] = {}  # key -> (value, expires_at)
        self._expiry: Deque[Tuple[float, str]] = deque()  # (expires_at, key), oldest first
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, key: str) -> Optional[T]:
        """Get value if exists and not expired."""
        self._evict_expired()
        item = self._data.get(key)
        if item is None:
            self._misses += 1
            return None

        self._hits += 1
        return item[0]

    def set(self, key: str, value: T):
        """Insert or replace a value; its TTL starts now."""
        self._evict_expired()
        if key not in self._data and len(self._data) >= self.max_size:
            self._evict_oldest()

        expires_at = self._clock() + self.ttl
        self._data[key] = (value, expires_at)
        self._expiry.append((expires_at, key))

    def delete(self, key: str):
        """Delete a key."""
        self._data.pop(key, None)

    def contains(self, key: str) -> bool:
        """Check if key exists and is not expired."""
        return self.get(key) is not None

    def __len__(self) -> int:
        self._evict_expired()
        return len(self._data)

    def _evict_expired(self):
        """Drop entries whose expiry time has passed."""
        now = self._clock()
        while self._expiry and self._expiry[0][0] <= now:
            expires_at, key = self._expiry.popleft()
            item = self._data.get(key)
            # A replaced or deleted key leaves a stale queue entry behind
            if item is not None and item[1] == expires_at:
                del self._data[key]

    def _evict_oldest(self):
        """Drop the live entry closest to expiry."""
        while self._expiry:
            expires_at, key = self._expiry.popleft()
            item = self._data.get(key)
            if item is not None and item[1] == expires_at:
                del self._data[key]
                self._evictions += 1
                return

    @property
    def evictions(self) -> int:
        """Live entries dropped early because the cache was full."""
        return self._evictions

    def clear(self):
        """Clear all entries."""
        self._data.clear()
        self._expiry.clear()

    def stats(self) -> dict:
        """Get cache statistics."""
        hit_rate = self._hits / (self._hits + self._misses) if (self._hits + self._misses) > 0 else 0
        return {
            "size": len(self._data),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": hit_rate,
            "evictions": self._evictions,
            "ttl": self.ttl,
        }
