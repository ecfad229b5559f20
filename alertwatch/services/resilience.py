from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

import httpx

from alertwatch.services.metrics import circuit_breaker_open_total

logger = logging.getLogger(__name__)

_RETRY_STATUSES = {429}


class CircuitOpenError(httpx.TransportError):
    """Raised instead of sending while a dependency's breaker is open."""


def _is_transient(status_code: int) -> bool:
    return status_code in _RETRY_STATUSES or 500 <= status_code < 600


class CircuitBreaker:
    """Consecutive-failure breaker: closed -> open -> half-open -> closed.

    While open every call fails fast. After ``open_sec`` one trial call is let
    through; its outcome closes or re-opens the breaker.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        open_sec: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.open_sec = open_sec
        self._clock = clock
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return "closed"
        if self._clock() - self._opened_at >= self.open_sec:
            return "half-open"
        return "open"

    def allow(self) -> bool:
        state = self.state
        if state == "closed":
            return True
        if state == "half-open" and not self._trial_in_flight:
            self._trial_in_flight = True
            logger.info("circuit breaker %s half-open", self.name)
            return True
        return False

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("circuit breaker %s reset", self.name)
        self._failures = 0
        self._opened_at = None
        self._trial_in_flight = False

    def abandon_trial(self) -> None:
        # a cancelled trial call must not leave the breaker waiting forever
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self._failures += 1
        if self._trial_in_flight or self._failures >= self.failure_threshold:
            self._opened_at = self._clock()
            self._trial_in_flight = False
            circuit_breaker_open_total.labels(dependency=self.name).inc()
            logger.error(
                "circuit breaker %s opened for %.0fs after %d consecutive failures",
                self.name, self.open_sec, self._failures,
            )


class ResilientTransport(httpx.AsyncBaseTransport):
    """httpx transport adding retry-with-backoff and a circuit breaker.

    Wraps an inner transport (the default pooled one in production,
    ``httpx.MockTransport`` in tests). Transport errors, 5xx and 429 are
    retried up to ``retries`` times with exponential backoff; the final
    response is always returned to the caller so it can inspect the body.
    """

    def __init__(
        self,
        name: str,
        inner: Optional[httpx.AsyncBaseTransport] = None,
        *,
        retries: int = 3,
        backoff_base: float = 1.0,
        breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.name = name
        self._inner = inner or httpx.AsyncHTTPTransport()
        self.retries = max(0, retries)
        self.backoff_base = backoff_base
        self.breaker = breaker or CircuitBreaker(name)
        self._sleep = sleep

    def _delay(self, attempt: int) -> float:
        return self.backoff_base * (2 ** attempt)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if not self.breaker.allow():
            raise CircuitOpenError(f"{self.name} circuit open", request=request)
        # every exit records an outcome, otherwise a failed half-open trial call would pin the breaker
        try:
            return await self._send_with_retry(request)
        except asyncio.CancelledError:
            self.breaker.abandon_trial()
            raise
        except httpx.TransportError:
            raise  # outcome already recorded
        except Exception:
            self.breaker.record_failure()
            raise

    async def _send_with_retry(self, request: httpx.Request) -> httpx.Response:
        attempt = 0
        while True:
            try:
                response = await self._inner.handle_async_request(request)
                if not _is_transient(response.status_code) or attempt >= self.retries:
                    if response.status_code >= 500:
                        self.breaker.record_failure()
                    else:
                        self.breaker.record_success()
                    return response
                reason = str(response.status_code)
                # drain the discarded response; a broken body counts as a transport error
                await response.aread()
                await response.aclose()
            except httpx.TransportError as exc:
                if attempt >= self.retries:
                    self.breaker.record_failure()
                    raise
                reason = exc.__class__.__name__

            delay = self._delay(attempt)
            attempt += 1
            logger.warning("%s retry %d after %.0fms (%s)", self.name, attempt, delay * 1000, reason)
            await self._sleep(delay)

    async def aclose(self) -> None:
        await self._inner.aclose()
