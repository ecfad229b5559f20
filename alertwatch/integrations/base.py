from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

from alertwatch.core.settings import settings
from alertwatch.schemas.notifications import NotificationChannelType, NotificationSendRequest
from alertwatch.services.resilience import CircuitBreaker, ResilientTransport

MAX_LOGGED_BODY = 200

# httpx logs every request line at INFO; those URLs carry webhook secrets and the bot token
logging.getLogger("httpx").setLevel(logging.WARNING)


class ChannelSender(Protocol):
    channel_type: NotificationChannelType

    async def send(self, request: NotificationSendRequest) -> bool:
        """Deliver one message; never raises, False on any failure."""
        ...


def truncate_body(body: str, limit: int = MAX_LOGGED_BODY) -> str:
    return body if len(body) <= limit else body[:limit] + "..."


def build_client(name: str, inner: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """HTTP client for one external dependency class, with its own breaker."""
    transport = ResilientTransport(
        name,
        inner,
        retries=settings.NOTIFY_RETRY_COUNT,
        backoff_base=settings.NOTIFY_RETRY_BASE_SEC,
        breaker=CircuitBreaker(
            name,
            failure_threshold=settings.NOTIFY_BREAKER_FAILURES,
            open_sec=settings.NOTIFY_BREAKER_OPEN_SEC,
        ),
    )
    return httpx.AsyncClient(transport=transport, timeout=settings.NOTIFY_TIMEOUT_SEC)
