"""Process-local cache of listings already handled by the reconciler.

Uses an OrderedDict with time-window eviction, the same way event ids are
deduplicated. The cache only saves redundant store reads; the activity-log
fence in the store remains the authoritative idempotency check, so losing
the cache (restart, eviction) is always safe.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable


class ProcessedListingCache:
    """Bounded, time-windowed set of listing ids."""

    def __init__(
        self,
        ttl_seconds: float = 86_400.0,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._seen: OrderedDict[str, float] = OrderedDict()
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._hits = 0

    def __contains__(self, listing_id: object) -> bool:
        self._evict(self._clock())
        if listing_id in self._seen:
            self._hits += 1
            return True
        return False

    def __len__(self) -> int:
        self._evict(self._clock())
        return len(self._seen)

    def add(self, listing_id: str) -> None:
        """Record a listing as handled for this process lifetime."""
        now = self._clock()
        self._evict(now)
        self._seen.pop(listing_id, None)
        self._seen[listing_id] = now

        # Hard cap to prevent unbounded growth
        while len(self._seen) > self._max_entries:
            self._seen.popitem(last=False)

    def _evict(self, now: float) -> None:
        """Remove entries older than the TTL."""
        cutoff = now - self._ttl
        while self._seen:
            _, ts = next(iter(self._seen.items()))
            if ts >= cutoff:
                break
            self._seen.popitem(last=False)

    @property
    def stats(self) -> dict[str, int]:
        return {
            "tracked": len(self._seen),
            "hits": self._hits,
        }
