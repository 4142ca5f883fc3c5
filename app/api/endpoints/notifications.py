from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_async_db, get_current_user_id
from app.schemas.chat import UnreadCountResponse
from app.schemas.notification import NotificationListResponse, NotificationResponse
from app.services.notification import AsyncNotificationService

router = APIRouter()


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    limit: int = Query(20, ge=1, le=100),
    unread_only: bool = Query(False),
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
):
    """Newest notifications first."""
    notifications = await AsyncNotificationService.list_notifications(
        db, current_user_id, limit=limit, unread_only=unread_only
    )
    unread_count = await AsyncNotificationService.get_unread_count(db, current_user_id)
    return NotificationListResponse(
        notifications=[NotificationResponse.model_validate(n) for n in notifications],
        unread_count=unread_count,
    )


@router.get("/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
):
    return UnreadCountResponse(unread_count=await AsyncNotificationService.get_unread_count(db, current_user_id))


@router.post("/read-all", response_model=UnreadCountResponse)
async def mark_all_read(
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
):
    await AsyncNotificationService.mark_all_read(db, current_user_id)
    return UnreadCountResponse(unread_count=0)


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(
    notification_id: str,
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
):
    return await AsyncNotificationService.mark_read(db, notification_id, current_user_id)
