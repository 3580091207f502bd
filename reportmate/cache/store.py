"""
In-memory TTL cache holding one aggregate per logical endpoint.
"""
import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from .core import CacheEntry, Record

logger = logging.getLogger("cache.store")

Clock = Callable[[], float]


class TTLCache:
    """
    Key -> CacheEntry map with an injectable clock.

    Writes replace the whole entry under a lock. There is no eviction:
    an entry lives until it is overwritten or the process exits.
    Invalidation swaps in a payload-less marker stamped with the
    invalidation time, so a refresh that started earlier cannot write its
    result back. Freshness is decided per read against the entry's own TTL.
    """

    def __init__(self, clock: Clock = time.time):
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.clock = clock

    def now(self) -> float:
        return self.clock()

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(key)

    @staticmethod
    def is_fresh(entry: CacheEntry, now: float) -> bool:
        return entry.is_fresh(now)

    def put(
        self,
        key: str,
        payload: List[Record],
        now: float,
        ttl_seconds: float,
    ) -> CacheEntry:
        """Overwrite the entry for ``key`` unconditionally."""
        entry = CacheEntry(key=key, payload=payload, cached_at=now, ttl_seconds=ttl_seconds)
        with self._lock:
            self._entries[key] = entry
        return entry

    def put_if_current(
        self,
        key: str,
        payload: List[Record],
        started_at: float,
        ttl_seconds: float,
    ) -> bool:
        """
        Store a refresh result unless a later-started refresh or an
        invalidation already wrote.

        Returns:
            True if the entry was written
        """
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None and existing.cached_at > started_at:
                logger.info(
                    f"Discarding refresh for {key}: started at {started_at:.3f}, "
                    f"entry already at {existing.cached_at:.3f}"
                )
                return False
            self._entries[key] = CacheEntry(
                key=key, payload=payload, cached_at=started_at, ttl_seconds=ttl_seconds
            )
            return True

    def _tombstone(self, key: str, now: float) -> CacheEntry:
        # Payload-less marker: reads treat it as a miss, put_if_current
        # rejects refreshes that started before it
        return CacheEntry(key=key, payload=None, cached_at=now, ttl_seconds=0)

    def invalidate(self, key: str) -> bool:
        """
        Drop the payload for a specific entry.

        Returns:
            True if a payload was found and dropped
        """
        now = self.now()
        with self._lock:
            existing = self._entries.get(key)
            self._entries[key] = self._tombstone(key, now)
        if existing is not None and existing.has_payload:
            logger.info(f"Invalidated cache: {key}")
            return True
        return False

    def invalidate_matching(self, predicate: Callable[[CacheEntry], bool]) -> List[str]:
        """Drop every payload the predicate selects and return their keys."""
        now = self.now()
        with self._lock:
            doomed = [
                key for key, entry in self._entries.items()
                if entry.has_payload and predicate(entry)
            ]
            for key in doomed:
                self._entries[key] = self._tombstone(key, now)
        if doomed:
            logger.info(f"Invalidated {len(doomed)} entries: {', '.join(doomed)}")
        return doomed

    def clear(self) -> int:
        """
        Drop all cached payloads.

        Returns:
            Number of payloads cleared
        """
        now = self.now()
        with self._lock:
            count = sum(1 for entry in self._entries.values() if entry.has_payload)
            for key in list(self._entries):
                self._entries[key] = self._tombstone(key, now)
        logger.info(f"Cleared {count} cache entries")
        return count

    def keys(self) -> List[str]:
        """Keys currently holding a payload."""
        with self._lock:
            return [key for key, entry in self._entries.items() if entry.has_payload]

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for entry in self._entries.values() if entry.has_payload)
