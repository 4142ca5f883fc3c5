from typing import List, Optional

from pydantic import BaseModel

from app.schemas.base import BaseResponseSchema


class NotificationResponse(BaseResponseSchema):
    user_id: str
    title: str
    body: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    is_read: bool


class NotificationListResponse(BaseModel):
    notifications: List[NotificationResponse]
    unread_count: int
