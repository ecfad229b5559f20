from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

from alertwatch.core.failopen import fail_open
from alertwatch.core.settings import settings
from alertwatch.services.cache import SharedCache

KEY_PREFIX = "rate_limit"


class FixedWindowCounter:
    """Fixed-window request counter over the shared cache.

    The first increment in a window creates the key and sets its expiry in
    the same atomic step, so a crash between the two can never leave a
    counter without a TTL.
    """

    def __init__(self, cache: SharedCache) -> None:
        self._cache = cache

    async def increment(self, key: str, window_sec: float) -> int:
        return await self._cache.incr_with_ttl(key, window_sec)


@dataclass(frozen=True)
class Tier:
    name: str  # auth | api | global
    scope: str  # key scope: auth | global
    limit: int


@dataclass(frozen=True)
class RatePolicy:
    auth_limit: int
    api_limit: int
    global_limit: int
    window_sec: int = 60

    @classmethod
    def from_settings(cls) -> "RatePolicy":
        return cls(
            auth_limit=settings.RATE_LIMIT_AUTH_PER_MIN,
            api_limit=settings.RATE_LIMIT_API_PER_MIN,
            global_limit=settings.RATE_LIMIT_GLOBAL_PER_MIN,
            window_sec=settings.RATE_LIMIT_WINDOW_SEC,
        )

    def tier_for(self, path: str) -> Tier:
        p = (path or "").lower()
        if p.startswith("/api/auth"):
            return Tier("auth", "auth", self.auth_limit)
        # the API tier shares the global key space, only the limit differs
        if p.startswith("/api"):
            return Tier("api", "global", self.api_limit)
        return Tier("global", "global", self.global_limit)

    def key_for(self, tier: Tier, client_ip: str) -> str:
        return f"{KEY_PREFIX}:{tier.scope}:{client_ip}"


def resolve_client_ip(headers: Mapping[str, str], peer_host: Optional[str]) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = (headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return peer_host or "unknown"


@dataclass(frozen=True)
class RateDecision:
    tier: Tier
    count: int

    @property
    def allowed(self) -> bool:
        return self.count <= self.tier.limit

    @property
    def remaining(self) -> int:
        return max(0, self.tier.limit - self.count)


class RateLimiter:
    def __init__(self, cache: SharedCache, policy: Optional[RatePolicy] = None) -> None:
        self.counter = FixedWindowCounter(cache)
        self.policy = policy or RatePolicy.from_settings()

    async def check(self, path: str, client_ip: str) -> Optional[RateDecision]:
        """Count one request; None means the cache is down and the request is allowed."""
        tier = self.policy.tier_for(path)
        count = await self._count(self.policy.key_for(tier, client_ip))
        if count is None:
            return None
        return RateDecision(tier, count)

    @fail_open(lambda: None, what="rate-limit counter")
    async def _count(self, key: str) -> Optional[int]:
        return await self.counter.increment(key, self.policy.window_sec)
