"""
Gateway caching package.

Memoizes results of idempotent tools. Only tools whose cache policy is
enabled are cached, and a cache outage never fails a request.
"""

from .backends import CacheBackend, CacheEntry, MemoryCacheBackend, RedisCacheBackend
from .cache_manager import MISS, ToolResultCache, make_key
from .singleflight import SingleFlight

__all__ = [
    "CacheBackend",
    "CacheEntry",
    "MISS",
    "MemoryCacheBackend",
    "RedisCacheBackend",
    "SingleFlight",
    "ToolResultCache",
    "make_key",
]
