"""Deduplication filter for transaction hashes."""

import logging
import time
from typing import Callable

from core.ttl_cache import TTLCache

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_TTL_SECONDS = 60.0
DEFAULT_DEDUP_MAX_SIZE = 100000


class DedupFilter:
    """
    Transaction hash deduplication with a fixed expiry window.

    A hash present in the filter was forwarded within the last ``ttl``
    seconds. Absence does not prove a hash was never seen: once the window
    has passed the same transaction is forwarded again. The filter holds at
    most ``max_size`` hashes; past that the oldest are dropped before their
    window ends, so a late duplicate of one of them is forwarded again.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_DEDUP_TTL_SECONDS,
        max_size: int = DEFAULT_DEDUP_MAX_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl_seconds
        self._cache: TTLCache[bool] = TTLCache(ttl=float(ttl_seconds), max_size=max_size, clock=clock)

        # Stats
        self._checked = 0
        self._duplicates = 0

    def seen(self, tx_hash: str) -> bool:
        """Check whether a hash was forwarded within the window."""
        return self._cache.contains(tx_hash)

    def mark(self, tx_hash: str):
        """Record a hash as forwarded; expires ``ttl`` seconds from now."""
        evictions = self._cache.evictions
        self._cache.set(tx_hash, True)
        if self._cache.evictions > evictions:
            if evictions == 0:
                logger.warning(
                    f"Dedup cache full ({self._cache.max_size} hashes), "
                    f"dropping hashes before their {self.ttl}s window ends"
                )
            else:
                logger.debug(f"Dedup cache evicted a live hash ({self._cache.evictions} total)")

    def is_duplicate(self, tx_hash: str) -> bool:
        """
        Check a hash and mark it as seen.

        Returns:
            True if duplicate (already seen), False if new
        """
        self._checked += 1
        if self.seen(tx_hash):
            self._duplicates += 1
            return True

        self.mark(tx_hash)
        return False

    def __len__(self) -> int:
        return len(self._cache)

    def get_stats(self) -> dict:
        """Get dedup statistics."""
        dup_rate = (self._duplicates / self._checked * 100) if self._checked > 0 else 0

        return {
            "checked": self._checked,
            "duplicates": self._duplicates,
            "duplicate_rate_pct": dup_rate,
            "ttl_seconds": self.ttl,
            "cache": self._cache.stats(),
        }

    def reset_stats(self):
        """Reset statistics counters."""
        self._checked = 0
        self._duplicates = 0
