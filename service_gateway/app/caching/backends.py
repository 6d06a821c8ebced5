"""
Storage backends for cached tool results.

Both backends store JSON-serializable values with a TTL. Writes are
last-write-wins; readers never see an entry past its expiry.
"""

import asyncio
import json
import time
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as redis

from shared.logging import get_logger


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class CacheBackend(ABC):
    """Key/value store with per-entry TTL."""

    name = "backend"

    @abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for ``key`` or ``None``."""

    @abstractmethod
    async def put(self, key: str, value: Any, ttl_seconds: float) -> None:
        """Store ``value``; a non-positive TTL stores nothing."""

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Delete all keys starting with ``prefix``; returns the count."""

    async def close(self) -> None:
        """Release backend resources."""


class MemoryCacheBackend(CacheBackend):
    """In-process cache split into lock-striped shards.

    Expired entries are dropped lazily on read; ``sweep()`` evicts the rest
    and is run periodically by the service.
    """

    name = "memory"

    def __init__(self, shards: int = 16, clock: Callable[[], float] = time.monotonic):
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._clock = clock
        self._shards: List[Dict[str, CacheEntry]] = [{} for _ in range(shards)]
        self._locks = [asyncio.Lock() for _ in range(shards)]

    def _index(self, key: str) -> int:
        return zlib.crc32(key.encode("utf-8")) % len(self._shards)

    async def get(self, key: str) -> Optional[CacheEntry]:
        index = self._index(key)
        async with self._locks[index]:
            entry = self._shards[index].get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._shards[index][key]
                return None
            return entry

    async def put(self, key: str, value: Any, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            return
        index = self._index(key)
        entry = CacheEntry(value=value, expires_at=self._clock() + ttl_seconds)
        async with self._locks[index]:
            self._shards[index][key] = entry

    async def delete_prefix(self, prefix: str) -> int:
        removed = 0
        for shard, lock in zip(self._shards, self._locks):
            async with lock:
                for key in [k for k in shard if k.startswith(prefix)]:
                    del shard[key]
                    removed += 1
        return removed

    async def sweep(self) -> int:
        """Evict expired entries from every shard."""
        removed = 0
        now = self._clock()
        for shard, lock in zip(self._shards, self._locks):
            async with lock:
                for key in [k for k, entry in shard.items() if entry.is_expired(now)]:
                    del shard[key]
                    removed += 1
        return removed

    def __len__(self) -> int:
        return sum(len(shard) for shard in self._shards)


class RedisCacheBackend(CacheBackend):
    """Redis-backed cache shared between gateway replicas."""

    name = "redis"

    def __init__(self, redis_url: str, client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.logger = get_logger("gateway.cache_backend")
        self._redis: Optional[redis.Redis] = client

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    async def get(self, key: str) -> Optional[CacheEntry]:
        client = await self._get_redis()
        pipe = client.pipeline(transaction=False)
        pipe.get(key)
        pipe.pttl(key)
        raw, pttl = await pipe.execute()
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        remaining = (pttl / 1000.0) if pttl and pttl > 0 else 0.0
        return CacheEntry(value=json.loads(raw), expires_at=time.time() + remaining)

    async def put(self, key: str, value: Any, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            return
        client = await self._get_redis()
        # SETEX only takes whole seconds
        await client.setex(key, max(1, int(ttl_seconds)), json.dumps(value))

    async def delete_prefix(self, prefix: str) -> int:
        client = await self._get_redis()
        batch: List[Any] = []
        removed = 0
        async for key in client.scan_iter(match=f"{prefix}*", count=500):
            batch.append(key)
            if len(batch) >= 500:
                removed += await client.delete(*batch)
                batch = []
        if batch:
            removed += await client.delete(*batch)
        return removed

    async def ping(self) -> bool:
        client = await self._get_redis()
        return bool(await client.ping())

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def build_backend(config) -> CacheBackend:
    """Backend selected by ``config.cache_backend``."""
    if config.cache_backend == "redis":
        return RedisCacheBackend(config.redis_url)
    return MemoryCacheBackend()
