from __future__ import annotations

import datetime as dt
import uuid
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from alertwatch.db.models import Alert, NotificationChannelConfig, NotificationEventType, NotificationTemplate


async def list_active_with_tickers(session: AsyncSession) -> List[Alert]:
    """All active, ticker-scoped alerts with their ticker rows (two queries total)."""
    stmt = (
        select(Alert)
        .where(Alert.is_active.is_(True), Alert.ticker_id.is_not(None))
        .options(selectinload(Alert.ticker))
        .order_by(Alert.created_at, Alert.id)
    )
    return list((await session.execute(stmt)).scalars().all())


async def try_mark_triggered(session: AsyncSession, alert_id: uuid.UUID, triggered_at: dt.datetime) -> bool:
    """Flip an alert to triggered; False if it was already inactive or triggered.

    The WHERE clause makes this a compare-and-set at the row level, so even two
    overlapping ticks cannot both claim the same alert.
    """
    stmt = (
        update(Alert)
        .where(Alert.id == alert_id, Alert.is_active.is_(True), Alert.triggered_at.is_(None))
        .values(is_active=False, triggered_at=triggered_at)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.commit()
    return (result.rowcount or 0) > 0


async def get_channel_config(session: AsyncSession, user_id: uuid.UUID) -> Optional[NotificationChannelConfig]:
    stmt = select(NotificationChannelConfig).where(NotificationChannelConfig.user_id == user_id)
    return (await session.execute(stmt)).scalars().first()


async def get_active_template(
    session: AsyncSession, event_type: NotificationEventType
) -> Optional[NotificationTemplate]:
    stmt = (
        select(NotificationTemplate)
        .where(NotificationTemplate.event_type == int(event_type), NotificationTemplate.is_active.is_(True))
        .order_by(NotificationTemplate.created_at)
        .limit(1)
    )
    return (await session.execute(stmt)).scalars().first()
