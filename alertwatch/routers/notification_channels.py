from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request

from alertwatch.schemas.notifications import (
    ChannelTestResult,
    NotificationChannelConfigEnvelope,
    NotificationChannelConfigUpdate,
    NotificationChannelType,
)
from alertwatch.security import current_user_id, require_api_key
from alertwatch.services.notifications import ChannelConfigError, NotificationRouter

router = APIRouter(
    prefix="/api/notification-channels",
    tags=["notifications"],
    dependencies=[Depends(require_api_key)],
)


def get_router(request: Request) -> NotificationRouter:
    notifier = getattr(request.app.state, "notifier", None)
    if notifier is None:
        raise HTTPException(status_code=503, detail="Notifications not initialised")
    return notifier


@router.get("", response_model=NotificationChannelConfigEnvelope)
async def get_config(
    user_id: uuid.UUID = Depends(current_user_id),
    notifier: NotificationRouter = Depends(get_router),
):
    config = await notifier.get_user_config(user_id)
    return NotificationChannelConfigEnvelope(ok=True, config=config)


@router.put("", response_model=NotificationChannelConfigEnvelope)
async def put_config(
    body: NotificationChannelConfigUpdate,
    user_id: uuid.UUID = Depends(current_user_id),
    notifier: NotificationRouter = Depends(get_router),
):
    try:
        config = await notifier.save_config(user_id, body)
    except ChannelConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return NotificationChannelConfigEnvelope(ok=True, config=config)


@router.post("/test/{channel}", response_model=ChannelTestResult)
async def test_channel(
    channel: str,
    user_id: uuid.UUID = Depends(current_user_id),
    notifier: NotificationRouter = Depends(get_router),
):
    try:
        kind = NotificationChannelType[channel.upper()]
    except KeyError:
        raise HTTPException(status_code=400, detail=f"Unknown channel: {channel}")
    try:
        ok = await notifier.test_channel(user_id, kind)
    except ChannelConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ChannelTestResult(ok=ok, channel=kind.label)
