from __future__ import annotations

import json
import logging
from typing import Optional

import httpx

from alertwatch.core.settings import settings
from alertwatch.integrations.base import build_client, truncate_body
from alertwatch.schemas.notifications import NotificationChannelType, NotificationSendRequest

logger = logging.getLogger(__name__)

API_BASE = "https://api.telegram.org"
PARSE_MODE = "MarkdownV2"
_MARKDOWN_V2_SPECIAL = "_*[]()~`>#+-=|{}.!"


def escape_markdown_v2(text: str) -> str:
    # backslash first, or the escapes added below would be doubled
    text = text.replace("\\", "\\\\")
    for ch in _MARKDOWN_V2_SPECIAL:
        text = text.replace(ch, "\\" + ch)
    return text


class TelegramSender:
    channel_type = NotificationChannelType.TELEGRAM

    def __init__(self, client: Optional[httpx.AsyncClient] = None, bot_token: Optional[str] = None) -> None:
        self._client = client or build_client("telegram")
        self._token = bot_token if bot_token is not None else settings.TELEGRAM_BOT_TOKEN

    async def send(self, request: NotificationSendRequest) -> bool:
        if not self._token:
            logger.warning("Telegram bot token not configured")
            return False
        # the URL embeds the bot token: never log it or an exception that may quote it
        url = f"{API_BASE}/bot{self._token}/sendMessage"
        payload = {
            "chat_id": request.destination,
            "text": escape_markdown_v2(request.message),
            "parse_mode": PARSE_MODE,
        }
        try:
            r = await self._client.post(url, json=payload)
        except Exception as exc:
            logger.error("Failed to send Telegram notification: %s", exc.__class__.__name__)
            return False

        raw = r.text
        try:
            result = json.loads(raw)
        except ValueError:
            # proxies and WAFs answer with HTML error pages
            logger.warning("Telegram API HTTP %s, non-JSON response: %s", r.status_code, truncate_body(raw))
            return False
        if not isinstance(result, dict):
            logger.warning("Telegram API HTTP %s, unexpected response: %s", r.status_code, truncate_body(raw))
            return False

        if not r.is_success:
            logger.warning(
                "Telegram API HTTP %s, Error: %s - %s",
                r.status_code, result.get("error_code"), result.get("description"),
            )
            return False
        if result.get("ok") is True:
            return True
        logger.warning("Telegram API error: %s - %s", result.get("error_code"), result.get("description"))
        return False

    async def aclose(self) -> None:
        await self._client.aclose()
