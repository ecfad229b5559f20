import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse

from alertwatch.rate_limit import RateLimiter, resolve_client_ip
from alertwatch.services.metrics import rate_limit_rejected_total

log = logging.getLogger(__name__)

RETRY_AFTER_SEC = "60"
_EXEMPT_PREFIXES = ("/health", "/metrics")


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, limiter_factory, enabled: bool = True):
        super().__init__(app)
        # factory so the limiter can bind to the cache built at startup
        self._limiter_factory = limiter_factory
        self._enabled = enabled

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not self._enabled or path.startswith(_EXEMPT_PREFIXES):
            return await call_next(request)

        limiter: RateLimiter = self._limiter_factory()
        peer = request.client.host if request.client else None
        client_ip = resolve_client_ip(request.headers, peer)
        decision = await limiter.check(path, client_ip)
        if decision is None:
            return await call_next(request)

        limit = str(decision.tier.limit)
        if not decision.allowed:
            log.warning(
                "Rate limit exceeded for %s on %s. Requests: %d/%d",
                client_ip, path, decision.count, decision.tier.limit,
            )
            rate_limit_rejected_total.labels(tier=decision.tier.name).inc()
            return PlainTextResponse(
                "Rate limit exceeded. Please try again later.",
                status_code=429,
                headers={
                    "X-RateLimit-Limit": limit,
                    "X-RateLimit-Remaining": "0",
                    "Retry-After": RETRY_AFTER_SEC,
                },
            )

        rsp = await call_next(request)
        rsp.headers["X-RateLimit-Limit"] = limit
        rsp.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        return rsp
