import functools
import inspect
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)


def fail_open(fallback_factory: Callable[[], Any], *, what: str = "operation"):
    """Decorate a coroutine so infrastructure errors yield a fallback value.

    Any exception raised by the wrapped coroutine (other than cancellation)
    is logged at WARNING and ``fallback_factory()`` is returned instead.

    Examples
    --------
    ::

        @fail_open(lambda: None, what="rate-limit counter")
        async def bump(key):
            return await cache.incr_with_ttl(key, 60)

        await bump("k")  # None when the cache is unreachable
    """
    def decorator(fn):
        if not inspect.iscoroutinefunction(fn):
            raise TypeError("fail_open only wraps coroutine functions")

        @functools.wraps(fn)
        async def wrapper(*args, **kwargs):
            try:
                return await fn(*args, **kwargs)
            except Exception as e:
                logger.warning("%s unavailable, failing open: %s", what, e.__class__.__name__)
                return fallback_factory()
        return wrapper
    return decorator
