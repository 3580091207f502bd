"""
In-memory TTL cache with request coalescing and stale fallback for bulk endpoints.
"""
from .core import CacheEntry, CacheMeta, CacheResult, CacheSource, Record
from .ttl_policies import ENDPOINT_POLICIES, EndpointPolicy, get_policy
from .store import TTLCache
from .coalescer import RequestCoalescer
from .manager import CacheManager

__all__ = [
    # Core types
    "CacheEntry",
    "CacheMeta",
    "CacheResult",
    "CacheSource",
    "Record",
    # Policies
    "ENDPOINT_POLICIES",
    "EndpointPolicy",
    "get_policy",
    # Storage and coalescing
    "TTLCache",
    "RequestCoalescer",
    # Manager
    "CacheManager",
]
