"""Shared key/value cache used for cross-instance coordination.

Only three atomic operations are needed by the rest of the service:

* ``set_if_absent`` backs the distributed job lock,
* ``compare_and_delete`` releases that lock without touching a lock that has
  since expired and been taken by another owner,
* ``incr_with_ttl`` backs the fixed-window rate limiter.

``RedisCache`` is the production backend. ``InMemoryCache`` gives the same
semantics inside one process and is used when no ``REDIS_URL`` is configured.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, Optional, Protocol, Tuple

from redis.asyncio import Redis as AsyncRedis

from alertwatch.core.settings import settings

logger = logging.getLogger(__name__)

# KEYS[1] = lock key, ARGV[1] = owner token
_COMPARE_AND_DELETE = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

# KEYS[1] = counter key, ARGV[1] = window in ms
_INCR_WITH_TTL = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
    redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
return count
"""


def _ms(seconds: float) -> int:
    return max(1, int(seconds * 1000))


class SharedCache(Protocol):
    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool: ...

    async def compare_and_delete(self, key: str, value: str) -> bool: ...

    async def incr_with_ttl(self, key: str, ttl: float) -> int: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def ttl(self, key: str) -> Optional[float]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class RedisCache:
    def __init__(self, client: AsyncRedis) -> None:
        self._redis = client
        self._cad = client.register_script(_COMPARE_AND_DELETE)
        self._incr = client.register_script(_INCR_WITH_TTL)

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        client = AsyncRedis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            socket_keepalive=True,
        )
        return cls(client)

    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        # SET key value NX PX ttl: one round trip, atomic on the server
        return bool(await self._redis.set(key, value, nx=True, px=_ms(ttl)))

    async def compare_and_delete(self, key: str, value: str) -> bool:
        return bool(await self._cad(keys=[key], args=[value]))

    async def incr_with_ttl(self, key: str, ttl: float) -> int:
        return int(await self._incr(keys=[key], args=[_ms(ttl)]))

    async def get(self, key: str) -> Optional[str]:
        return await self._redis.get(key)

    async def ttl(self, key: str) -> Optional[float]:
        ms = await self._redis.pttl(key)
        return ms / 1000.0 if ms is not None and ms >= 0 else None

    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    async def close(self) -> None:
        await self._redis.aclose()


class InMemoryCache:
    """Process-local cache with the same atomicity guarantees as RedisCache.

    Every operation runs under one asyncio lock, and expiry uses the monotonic
    clock so wall-clock adjustments cannot resurrect or kill entries.
    """

    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires = entry
        if expires is not None and expires <= self._clock():
            del self._data[key]
            return None
        return entry

    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._clock() + ttl)
            return True

    async def compare_and_delete(self, key: str, value: str) -> bool:
        async with self._lock:
            entry = self._live(key)
            if entry is None or entry[0] != value:
                return False
            del self._data[key]
            return True

    async def incr_with_ttl(self, key: str, ttl: float) -> int:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                self._data[key] = ("1", self._clock() + ttl)
                return 1
            count = int(entry[0]) + 1
            self._data[key] = (str(count), entry[1])
            return count

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def ttl(self, key: str) -> Optional[float]:
        async with self._lock:
            entry = self._live(key)
            if entry is None or entry[1] is None:
                return None
            return max(0.0, entry[1] - self._clock())

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._data.clear()


_cache: Optional[SharedCache] = None


def get_cache() -> SharedCache:
    """Return the process-wide cache, building it from settings on first use."""
    global _cache
    if _cache is None:
        if settings.REDIS_URL:
            _cache = RedisCache.from_url(settings.REDIS_URL)
            logger.info("shared cache: redis")
        else:
            _cache = InMemoryCache()
            logger.warning("REDIS_URL not set; using process-local cache (single instance only)")
    return _cache


async def close_cache() -> None:
    global _cache
    if _cache is not None:
        await _cache.close()
    _cache = None
