from __future__ import annotations

import datetime as dt
import enum
import uuid
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class AlertType(enum.IntEnum):
    PRICE = 1
    VOLUME = 2
    TECHNICAL_INDICATOR = 3
    SENTIMENT = 4
    VOLATILITY = 5


class NotificationEventType(enum.IntEnum):
    PRICE_ALERT = 1
    NEWS_SUMMARY = 2
    EVENT_UPCOMING = 3
    FORECAST_UPDATED = 4
    VOLUME_ALERT = 5


class StockTicker(Base):
    """Latest price/volume per symbol, refreshed outside this service."""

    __tablename__ = "stock_tickers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    symbol: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    current_price: Mapped[Decimal] = mapped_column(Numeric(18, 4), default=Decimal("0"))
    volume: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    alerts: Mapped[List["Alert"]] = relationship(back_populates="ticker")


class Alert(Base):
    __tablename__ = "alerts"
    __table_args__ = (Index("ix_alerts_is_active_triggered_at", "is_active", "triggered_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True)
    ticker_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("stock_tickers.id"), nullable=True, index=True
    )
    type: Mapped[int] = mapped_column(Integer, default=int(AlertType.PRICE))
    # JSON text, e.g. {"operator": ">", "value": 100000}
    condition: Mapped[str] = mapped_column(Text)
    threshold: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 4), nullable=True)
    timeframe: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    triggered_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    ticker: Mapped[Optional[StockTicker]] = relationship(back_populates="alerts")

    @property
    def alert_type(self) -> Optional[AlertType]:
        try:
            return AlertType(self.type)
        except ValueError:
            return None


class NotificationChannelConfig(Base):
    __tablename__ = "notification_channel_configs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, unique=True, index=True)
    slack_webhook_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    enabled_slack: Mapped[bool] = mapped_column(Boolean, default=False)
    # group chat ids can be negative and longer than 32 bits
    telegram_chat_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    enabled_telegram: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class NotificationTemplate(Base):
    __tablename__ = "notification_templates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(128))
    event_type: Mapped[int] = mapped_column(Integer, index=True)
    subject: Mapped[str] = mapped_column(String(256), default="")
    # placeholders: {Symbol}, {AlertType}, {Operator}, {Threshold}, {CurrentValue}, {Time}, {AiExplanation}
    body: Mapped[str] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
