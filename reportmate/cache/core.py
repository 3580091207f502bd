"""
Core cache data structures.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


Record = Dict[str, Any]


class CacheSource(Enum):
    """Where the payload of a response came from (the X-Data-Source header)."""
    MEMORY_CACHE = "memory-cache"            # Within TTL, no upstream call
    FRESH = "fresh"                          # Refreshed during this request
    STALE_FALLBACK = "stale-cache-fallback"  # Refresh failed, previous payload served


@dataclass(frozen=True)
class CacheEntry:
    """
    One cached aggregate.

    Entries are immutable; the cache replaces them wholesale so a reader
    never observes a half-written payload. ``cached_at`` is the clock time
    at which the refresh that produced the payload started.
    """
    key: str
    payload: Optional[List[Record]]
    cached_at: float
    ttl_seconds: float

    def age_seconds(self, now: float) -> float:
        """Seconds since the refresh that produced this entry started."""
        return max(0.0, now - self.cached_at)

    def is_fresh(self, now: float) -> bool:
        """Check if data is within its TTL."""
        return now - self.cached_at < self.ttl_seconds

    @property
    def has_payload(self) -> bool:
        return self.payload is not None


@dataclass
class CacheResult:
    """Outcome of a cache lookup as seen by an endpoint handler."""
    payload: List[Record]
    source: CacheSource
    cached_at: float
    ttl_seconds: float
    age_seconds: float = 0.0
    stale_error: Optional[str] = None

    @property
    def is_stale(self) -> bool:
        return self.source is CacheSource.STALE_FALLBACK

    @property
    def fetched_at_iso(self) -> str:
        """ISO timestamp of the data, used for X-Fetched-At."""
        return datetime.fromtimestamp(self.cached_at, tz=timezone.utc).isoformat()


@dataclass
class CacheMeta:
    """
    Metadata about a cache access, included in API responses.
    """
    last_updated: str  # ISO timestamp
    cache_source: str  # "memory-cache", "fresh" or "stale-cache-fallback"
    ttl_seconds: Optional[float] = None
    age_seconds: Optional[float] = None
    stale: bool = False

    @classmethod
    def from_result(cls, result: CacheResult) -> "CacheMeta":
        return cls(
            last_updated=result.fetched_at_iso,
            cache_source=result.source.value,
            ttl_seconds=result.ttl_seconds,
            age_seconds=result.age_seconds,
            stale=result.is_stale,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "lastUpdated": self.last_updated,
            "cacheSource": self.cache_source,
            "stale": self.stale,
            "ttlSeconds": self.ttl_seconds,
            "ageSeconds": round(self.age_seconds, 1) if self.age_seconds is not None else None,
        }
