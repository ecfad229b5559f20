"""Structured one-line JSON events.

Every event carries the correlation id of the HTTP request or monitor tick
that produced it, so a channel delivery line can be joined to the tick that
triggered the alert.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

from alertwatch.core.settings import settings

_logger = logging.getLogger("alertwatch.events")

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

_correlation_id: ContextVar[Optional[str]] = ContextVar("alertwatch_correlation_id", default=None)

MAX_INBOUND_ID = 64


def new_request_id(rid: Optional[str] = None) -> str:
    """Open a correlation scope, reusing an inbound ``X-Request-ID`` when sane."""
    rid = (rid or "").strip()[:MAX_INBOUND_ID] or uuid.uuid4().hex[:16]
    _correlation_id.set(rid)
    return rid


def get_request_id() -> Optional[str]:
    return _correlation_id.get()


def event_payload(event: str, **fields: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "ts": int(time.time() * 1000),
        "service": settings.APP_NAME,
        "event": event,
    }
    rid = get_request_id()
    if rid:
        payload["rid"] = rid
    payload.update({k: v for k, v in fields.items() if v is not None})
    return payload


def log_event(event: str, level: str = "info", **fields: Any) -> None:
    payload = event_payload(event, **fields)
    payload["level"] = level
    _logger.log(
        _LEVELS.get(level, logging.INFO),
        json.dumps(payload, ensure_ascii=False, default=str, separators=(",", ":")),
    )
