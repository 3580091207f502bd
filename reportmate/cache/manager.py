"""
Cache orchestration: freshness check, coalesced refresh, stale fallback.
"""
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from reportmate.errors import CacheMissWithNoFallback, ConfigurationError

from .coalescer import RequestCoalescer
from .core import CacheEntry, CacheResult, CacheSource, Record
from .store import TTLCache

logger = logging.getLogger("cache.manager")

RefreshFn = Callable[[], List[Record]]


class CacheManager:
    """
    Drives one request through the cache state machine:

    - CHECK_CACHE: a fresh entry is served as ``memory-cache``
    - REFRESH: run the pipeline once per key (concurrent callers share it),
      store the result and serve it as ``fresh``
    - FALLBACK: if the refresh raises, serve the previous payload as
      ``stale-cache-fallback``; with nothing cached, raise
      CacheMissWithNoFallback

    No retries happen inside a request. The next request after expiry tries
    again.
    """

    def __init__(
        self,
        store: Optional[TTLCache] = None,
        coalesce_timeout: float = 60.0,
    ):
        self.store = store if store is not None else TTLCache()
        self._coalescer = RequestCoalescer(timeout=coalesce_timeout)
        self._stats_lock = threading.Lock()
        self._stats = {
            "hits": 0,
            "misses": 0,
            "refreshes": 0,
            "refresh_failures": 0,
            "stale_served": 0,
            "errors": 0,
        }

    def get(
        self,
        key: str,
        refresh_fn: RefreshFn,
        ttl_seconds: float,
        force_refresh: bool = False,
    ) -> CacheResult:
        """
        Serve ``key`` from cache or refresh it.

        Args:
            key: Cache key (one per logical endpoint)
            refresh_fn: Pipeline producing the aggregated payload
            ttl_seconds: Freshness window for a newly stored payload
            force_refresh: Skip the freshness check (fallback still applies)

        Raises:
            ConfigurationError: Passed through untouched, never masked by stale data
            CacheMissWithNoFallback: Refresh failed and nothing was cached
        """
        now = self.store.now()
        entry = self.store.get(key)

        if not force_refresh and entry is not None and entry.has_payload and entry.is_fresh(now):
            logger.debug(f"CACHE HIT: {key} [age={entry.age_seconds(now):.1f}s]")
            self._bump("hits")
            return self._result(entry, CacheSource.MEMORY_CACHE, now)

        if force_refresh:
            logger.info(f"FORCE REFRESH: {key}")
        elif entry is None or not entry.has_payload:
            logger.info(f"CACHE MISS: {key}")
        else:
            logger.info(f"CACHE EXPIRED: {key} [age={entry.age_seconds(now):.1f}s]")
        self._bump("misses")

        try:
            fresh = self._coalescer.run(key, lambda: self._refresh(key, refresh_fn, ttl_seconds))
        except ConfigurationError:
            self._bump("errors")
            raise
        except Exception as exc:
            self._bump("refresh_failures")
            return self._fallback(key, exc)

        return self._result(fresh, CacheSource.FRESH, self.store.now())

    def _refresh(self, key: str, refresh_fn: RefreshFn, ttl_seconds: float) -> CacheEntry:
        started_at = self.store.now()
        payload = refresh_fn()
        self._bump("refreshes")
        if self.store.put_if_current(key, payload, started_at, ttl_seconds):
            logger.info(f"Refreshed {key}: {len(payload)} records")
            return CacheEntry(key=key, payload=payload, cached_at=started_at, ttl_seconds=ttl_seconds)
        # A refresh that started later already wrote; serve the newer data
        newer = self.store.get(key)
        return newer if newer is not None and newer.has_payload else CacheEntry(
            key=key, payload=payload, cached_at=started_at, ttl_seconds=ttl_seconds
        )

    def _fallback(self, key: str, exc: Exception) -> CacheResult:
        previous = self.store.get(key)
        now = self.store.now()
        if previous is not None and previous.has_payload:
            logger.warning(
                f"Refresh failed for {key}, serving stale cache "
                f"[age={previous.age_seconds(now):.1f}s]: {exc}"
            )
            self._bump("stale_served")
            result = self._result(previous, CacheSource.STALE_FALLBACK, now)
            result.stale_error = str(exc)
            return result

        logger.error(f"Refresh failed for {key} with no cached data: {exc}")
        self._bump("errors")
        raise CacheMissWithNoFallback(
            details=f"Failed to fetch {key} data from upstream: {exc}"
        ) from exc

    @staticmethod
    def _result(entry: CacheEntry, source: CacheSource, now: float) -> CacheResult:
        return CacheResult(
            payload=entry.payload or [],
            source=source,
            cached_at=entry.cached_at,
            ttl_seconds=entry.ttl_seconds,
            age_seconds=entry.age_seconds(now),
        )

    def _bump(self, counter: str) -> None:
        with self._stats_lock:
            self._stats[counter] += 1

    def describe(self, key: str) -> Optional[Dict[str, Any]]:
        """Snapshot of one entry for the cache status endpoint."""
        entry = self.store.get(key)
        if entry is None or not entry.has_payload:
            return None
        now = self.store.now()
        return {
            "records": len(entry.payload or []),
            "ageSeconds": round(entry.age_seconds(now), 1),
            "ttlSeconds": entry.ttl_seconds,
            "fresh": entry.is_fresh(now),
            "refreshing": self._coalescer.is_in_flight(key),
        }

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._stats_lock:
            stats = dict(self._stats)
        lookups = stats["hits"] + stats["misses"]
        stats["entries"] = len(self.store)
        stats["hit_rate_percent"] = round(stats["hits"] / lookups * 100, 1) if lookups else 0
        stats["coalescer"] = self._coalescer.get_stats()
        return stats
