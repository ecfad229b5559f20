from __future__ import annotations

import logging
from typing import Optional

import httpx

from alertwatch.integrations.base import build_client
from alertwatch.schemas.notifications import NotificationChannelType, NotificationSendRequest

logger = logging.getLogger(__name__)


class SlackSender:
    """Incoming-webhook sender. Slack answers a good post with the body ``ok``."""

    channel_type = NotificationChannelType.SLACK

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client or build_client("slack")

    async def send(self, request: NotificationSendRequest) -> bool:
        # the webhook URL is the credential; it never goes into a log line
        try:
            r = await self._client.post(request.destination, json={"text": request.message})
            if not r.is_success:
                logger.warning("Slack API returned %s", r.status_code)
                return False
            if r.text.strip().lower() == "ok":
                return True
            logger.warning("Slack returned unexpected response")
            return False
        except Exception as exc:
            logger.error("Failed to send Slack notification: %s", exc.__class__.__name__)
            return False

    async def aclose(self) -> None:
        await self._client.aclose()
