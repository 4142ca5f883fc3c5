from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import RealtimeHub, get_async_db, get_current_user_id, get_realtime_hub
from app.schemas.presence import PresenceMapResponse, PresenceResponse
from app.services.presence import AsyncPresenceService, presence_view

router = APIRouter()


@router.post("/heartbeat", response_model=PresenceResponse)
async def heartbeat(
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
    hub: RealtimeHub = Depends(get_realtime_hub),
):
    """Mark the current user online. Clients call this every PRESENCE_HEARTBEAT_SECONDS."""
    record = await AsyncPresenceService.touch_presence(db, current_user_id, True, hub=hub)
    return presence_view(current_user_id, record)


@router.post("/offline", response_model=PresenceResponse)
async def go_offline(
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
    hub: RealtimeHub = Depends(get_realtime_hub),
):
    record = await AsyncPresenceService.touch_presence(db, current_user_id, False, hub=hub)
    return presence_view(current_user_id, record)


@router.get("", response_model=PresenceMapResponse)
async def get_presence(
    user_ids: List[str] = Query(..., description="Users to look up"),
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
):
    return PresenceMapResponse(presence=await AsyncPresenceService.get_presence(db, user_ids))
