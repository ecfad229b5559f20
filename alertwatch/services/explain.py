from __future__ import annotations

import json
from decimal import Decimal
from typing import Optional

import httpx

from alertwatch.core.settings import settings

CHATDATA_URL = "https://api.chat-data.com/api/v2/chat"

SYSTEM = """You explain triggered market alerts to retail investors.
Use ONLY the fields given in ALERT JSON. Reply with at most two short sentences,
plain text, no markdown, no advice to buy or sell. Never invent prices."""


async def explain_alert(
    symbol: str,
    alert_type: str,
    current_value: Decimal,
    threshold: Optional[Decimal],
) -> Optional[str]:
    """One-line explanation for a triggered alert, or None if unavailable.

    Callers bound this with a timeout and fall back to a fixed text.
    """
    api_key = settings.CHATDATA_API_KEY or ""
    bot_id = settings.CHATDATA_CHATBOT_ID or ""
    if not (api_key and bot_id):
        return None
    alert = {
        "symbol": symbol,
        "type": alert_type,
        "current_value": str(current_value),
        "threshold": str(threshold) if threshold is not None else None,
    }
    payload = {
        "chatbotId": bot_id,
        "messages": [{
            "role": "user",
            "content": "ALERT JSON:\n" + json.dumps(alert, separators=(",", ":")) + "\n\nTask: explain why it fired.",
        }],
        "basePrompt": SYSTEM,
        "openAIFormat": True,
        "stream": False,
        "appendMessages": False,
    }
    headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
    async with httpx.AsyncClient(timeout=10.0) as c:
        r = await c.post(CHATDATA_URL, headers=headers, json=payload)
        r.raise_for_status()
        data = r.json() or {}
    content = ((data.get("choices") or [{}])[0].get("message") or {}).get("content")
    return content.strip() if isinstance(content, str) and content.strip() else None
