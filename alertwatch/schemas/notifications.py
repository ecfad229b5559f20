from __future__ import annotations

import datetime as dt
import enum
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

from pydantic import BaseModel, Field

from alertwatch.db.models import Alert

EXPLANATION_FALLBACK = "AI explanation unavailable"


class NotificationChannelType(enum.IntEnum):
    SLACK = 1
    TELEGRAM = 2

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass
class NotificationSendRequest:
    channel_type: NotificationChannelType
    destination: str  # webhook URL or chat id; never log it
    message: str
    subject: Optional[str] = None
    metadata: Optional[Dict[str, str]] = None


@dataclass
class AlertTriggeredContext:
    alert: Alert
    user_id: uuid.UUID
    current_value: Decimal  # price or volume observed when the condition matched
    triggered_at: dt.datetime
    operator: str  # one of ">", "<", ">=", "<=", "="
    matched_condition: str  # e.g. "Price > 100000", for display and logs
    explanation: str = EXPLANATION_FALLBACK


class NotificationChannelConfigRead(BaseModel):
    # Webhook URLs are secrets; only report whether one is stored.
    has_slack_webhook: bool = False
    enabled_slack: bool = False
    telegram_chat_id: Optional[str] = None
    enabled_telegram: bool = False


class NotificationChannelConfigUpdate(BaseModel):
    # None or blank keeps the stored value
    slack_webhook_url: Optional[str] = Field(None, max_length=2048)
    enabled_slack: bool = False
    telegram_chat_id: Optional[str] = Field(None, max_length=64)
    enabled_telegram: bool = False


class NotificationChannelConfigEnvelope(BaseModel):
    ok: bool = True
    config: Optional[NotificationChannelConfigRead] = None


class ChannelTestResult(BaseModel):
    ok: bool
    channel: str
