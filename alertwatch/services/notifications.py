from __future__ import annotations

import asyncio
import datetime as dt
import logging
import uuid
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alertwatch.db.models import AlertType, NotificationChannelConfig, NotificationEventType
from alertwatch.integrations.base import ChannelSender
from alertwatch.obs import log_event
from alertwatch.schemas.notifications import (
    EXPLANATION_FALLBACK,
    AlertTriggeredContext,
    NotificationChannelConfigRead,
    NotificationChannelConfigUpdate,
    NotificationChannelType,
    NotificationSendRequest,
)
from alertwatch.services import alert_store
from alertwatch.services.metrics import notification_send_total
from alertwatch.services.templates import default_body, render_template, validate_template

logger = logging.getLogger(__name__)

SLACK_WEBHOOK_PREFIX = "https://hooks.slack.com/"
TEST_MESSAGE = "🔔 Test notification from alertwatch"


class ChannelConfigError(Exception):
    """Invalid or missing notification channel configuration."""


def _fmt_number(value: Optional[Decimal]) -> str:
    if value is None:
        return "0"
    return f"{value:,.0f}"


def _template_variables(ctx: AlertTriggeredContext) -> Dict[str, str]:
    alert = ctx.alert
    kind = alert.alert_type
    return {
        "Symbol": alert.ticker.symbol if alert.ticker is not None else "Unknown",
        "AlertType": kind.name.title() if kind is not None else str(alert.type),
        "Operator": ctx.operator,
        "Threshold": _fmt_number(alert.threshold),
        "CurrentValue": _fmt_number(ctx.current_value),
        "Time": ctx.triggered_at.strftime("%Y-%m-%d %H:%M:%S"),
        "AiExplanation": ctx.explanation or EXPLANATION_FALLBACK,
    }


def _mask(config: NotificationChannelConfig) -> NotificationChannelConfigRead:
    return NotificationChannelConfigRead(
        has_slack_webhook=bool(config.slack_webhook_url),
        enabled_slack=bool(config.enabled_slack),
        telegram_chat_id=config.telegram_chat_id,
        enabled_telegram=bool(config.enabled_telegram),
    )


def _blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


class NotificationRouter:
    """Routes triggered alerts to every channel the owner has enabled.

    Delivery is best-effort: each channel runs as its own task, a failure in
    one never affects another, and nothing here raises back into the caller.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], senders: Iterable[ChannelSender]) -> None:
        self._session_factory = session_factory
        self._senders: Dict[NotificationChannelType, ChannelSender] = {s.channel_type: s for s in senders}

    # ---------- dispatch ----------
    async def send_alert_notification(self, ctx: AlertTriggeredContext) -> Dict[str, bool]:
        event_type = (
            NotificationEventType.PRICE_ALERT
            if ctx.alert.alert_type == AlertType.PRICE
            else NotificationEventType.VOLUME_ALERT
        )
        async with self._session_factory() as session:
            config = await alert_store.get_channel_config(session, ctx.user_id)
            if config is None:
                logger.debug("No notification config for user %s", ctx.user_id)
                return {}
            template = await alert_store.get_active_template(session, event_type)

        if template is None:
            logger.debug("No active template for %s; using built-in body", event_type.name)
            body, subject = default_body(event_type), None
        elif not validate_template(template.body):
            logger.warning("Template %s has unbalanced placeholders; using built-in body", template.id)
            body, subject = default_body(event_type), template.subject or None
        else:
            body, subject = template.body, template.subject or None
        message = render_template(body, _template_variables(ctx))

        requests = self._requests_for(config, message, subject, ctx)
        if not requests:
            logger.debug("No enabled channels for user %s", ctx.user_id)
            return {}
        return await self._fan_out(requests, ctx.alert.id)

    def _requests_for(
        self,
        config: NotificationChannelConfig,
        message: str,
        subject: Optional[str],
        ctx: AlertTriggeredContext,
    ) -> List[NotificationSendRequest]:
        metadata = {"alert_id": str(ctx.alert.id), "condition": ctx.matched_condition}
        out: List[NotificationSendRequest] = []
        if config.enabled_slack and config.slack_webhook_url:
            out.append(NotificationSendRequest(
                NotificationChannelType.SLACK, config.slack_webhook_url, message, subject, dict(metadata)
            ))
        if config.enabled_telegram and config.telegram_chat_id:
            out.append(NotificationSendRequest(
                NotificationChannelType.TELEGRAM, config.telegram_chat_id, message, subject, dict(metadata)
            ))
        return out

    async def _deliver(self, request: NotificationSendRequest, alert_id: uuid.UUID) -> bool:
        channel = request.channel_type.label
        sender = self._senders.get(request.channel_type)
        if sender is None:
            logger.warning("No sender registered for channel %s", channel)
            return False
        ok = await sender.send(request)
        notification_send_total.labels(channel=channel, result="sent" if ok else "failed").inc()
        log_event("notification.delivery", level="info" if ok else "warning",
                  channel=channel, alert_id=str(alert_id), ok=ok)
        return ok

    async def _fan_out(self, requests: List[NotificationSendRequest], alert_id: uuid.UUID) -> Dict[str, bool]:
        tasks = [
            asyncio.create_task(self._deliver(r, alert_id), name=f"notify-{r.channel_type.label}-{alert_id}")
            for r in requests
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)
        outcome: Dict[str, bool] = {}
        for request, result in zip(requests, results):
            channel = request.channel_type.label
            if isinstance(result, BaseException):
                logger.error("%s delivery crashed for alert %s", channel, alert_id, exc_info=result)
                notification_send_total.labels(channel=channel, result="error").inc()
                outcome[channel] = False
            else:
                outcome[channel] = bool(result)
        return outcome

    # ---------- per-user configuration ----------
    async def get_user_config(self, user_id: uuid.UUID) -> Optional[NotificationChannelConfigRead]:
        async with self._session_factory() as session:
            config = await alert_store.get_channel_config(session, user_id)
            return _mask(config) if config is not None else None

    async def save_config(
        self, user_id: uuid.UUID, body: NotificationChannelConfigUpdate
    ) -> NotificationChannelConfigRead:
        async with self._session_factory() as session:
            config = await alert_store.get_channel_config(session, user_id)

            # validate what the row will hold after the update, not just the request
            slack_url = body.slack_webhook_url if not _blank(body.slack_webhook_url) else (
                config.slack_webhook_url if config else None
            )
            chat_id = body.telegram_chat_id if not _blank(body.telegram_chat_id) else (
                config.telegram_chat_id if config else None
            )
            if body.enabled_slack:
                if _blank(slack_url):
                    raise ChannelConfigError("Slack webhook URL required when Slack is enabled")
                if not slack_url.startswith(SLACK_WEBHOOK_PREFIX):
                    raise ChannelConfigError("Invalid Slack webhook URL format")
            if body.enabled_telegram and _blank(chat_id):
                raise ChannelConfigError("Telegram chat ID required when Telegram is enabled")

            now = dt.datetime.now(dt.timezone.utc)
            if config is None:
                config = NotificationChannelConfig(user_id=user_id, created_at=now)
                session.add(config)
            config.slack_webhook_url = slack_url
            config.enabled_slack = body.enabled_slack
            config.telegram_chat_id = chat_id.strip() if chat_id else None
            config.enabled_telegram = body.enabled_telegram
            config.updated_at = now
            await session.commit()
            return _mask(config)

    async def test_channel(self, user_id: uuid.UUID, channel: NotificationChannelType) -> bool:
        async with self._session_factory() as session:
            config = await alert_store.get_channel_config(session, user_id)
        if config is None:
            raise ChannelConfigError("Please configure notification channels first")

        if channel == NotificationChannelType.SLACK:
            if not config.enabled_slack or not config.slack_webhook_url:
                raise ChannelConfigError("Slack channel not configured")
            destination = config.slack_webhook_url
        else:
            if not config.enabled_telegram or not config.telegram_chat_id:
                raise ChannelConfigError("Telegram channel not configured")
            destination = config.telegram_chat_id

        sender = self._senders.get(channel)
        if sender is None:
            return False
        ok = await sender.send(NotificationSendRequest(channel, destination, TEST_MESSAGE))
        notification_send_total.labels(channel=channel.label, result="sent" if ok else "failed").inc()
        return ok
