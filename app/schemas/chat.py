from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from app.schemas.base import BaseSchema, BaseResponseSchema


class MessageType(str, Enum):
    """Message types supported by the chat system."""
    TEXT = "text"
    OFFER = "offer"
    SYSTEM = "system"
    PAYMENT = "payment"


class ConversationFilter(str, Enum):
    """Filters offered by the conversation list."""
    ALL = "all"
    UNREAD = "unread"
    PINNED = "pinned"


class DeliveryState(str, Enum):
    """Derived delivery state of a server-confirmed message."""
    SENT = "sent"
    DELIVERED = "delivered"
    SEEN = "seen"
    READ = "read"


# Request Schemas
class ConversationCreate(BaseModel):
    """Schema for starting (or reopening) a conversation."""
    target_user_id: str = Field(..., min_length=1, max_length=64, description="The other participant")
    subject: Optional[str] = Field(default=None, max_length=255, description="Optional subject, e.g. listing title")


class MessageCreate(BaseModel):
    """Schema for sending a message."""
    content: str = Field(..., description="Message text")
    request_id: Optional[str] = Field(default=None, max_length=64, description="Client idempotency key")


class MessageReceipt(BaseModel):
    """Schema for delivered/seen receipts."""
    message_ids: Optional[List[str]] = Field(default=None, description="Limit to these messages; all when omitted")


class PinUpdate(BaseModel):
    is_pinned: bool


class TypingUpdate(BaseModel):
    conversation_id: str
    is_typing: bool


# Response Schemas
class MessageResponse(BaseResponseSchema):
    """Schema for message response."""
    conversation_id: str
    sender_id: str
    content: Optional[str] = None
    message_type: MessageType
    offer_id: Optional[str] = None
    request_id: Optional[str] = None
    delivered_at: Optional[datetime] = None
    seen_at: Optional[datetime] = None
    read_at: Optional[datetime] = None


class SendMessageResponse(BaseModel):
    """Result of a send; `created` is False when the request id was already used."""
    message: MessageResponse
    created: bool


class MessageListResponse(BaseModel):
    messages: List[MessageResponse]
    has_more: bool
    next_before: Optional[str] = Field(default=None, description="Cursor (message id) for the previous page")


class ParticipantProfile(BaseSchema):
    """Snapshot of the other participant."""
    user_id: str
    full_name: Optional[str] = None
    role: Optional[str] = None
    avatar_url: Optional[str] = None
    district: Optional[str] = None
    state: Optional[str] = None
    is_online: bool = False
    last_seen_at: Optional[datetime] = None


class ConversationResponse(BaseResponseSchema):
    """Schema for a single conversation."""
    subject: Optional[str] = None
    conversation_key: str
    last_message: Optional[str] = None
    last_activity_at: Optional[datetime] = None


class ConversationSummary(BaseModel):
    """Row of the conversation list."""
    id: str
    subject: Optional[str] = None
    last_message: Optional[str] = None
    last_activity_at: Optional[datetime] = None
    is_pinned: bool = False
    unread_count: int = 0
    other_participant: ParticipantProfile


class ConversationListResponse(BaseModel):
    conversations: List[ConversationSummary]
    total_count: int


class ReadReceiptResponse(BaseModel):
    conversation_id: str
    updated: int


class UnreadCountResponse(BaseModel):
    unread_count: int


class ClientConfigResponse(BaseModel):
    """Timings clients use for heartbeats, typing and list refresh."""
    presence_heartbeat_seconds: int
    presence_stale_seconds: int
    typing_idle_seconds: float
    typing_ttl_seconds: float
    conversation_refresh_seconds: int
    message_max_length: int
