from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import (
    NotificationSink,
    RealtimeHub,
    get_async_db,
    get_current_user_id,
    get_notification_sink,
    get_realtime_hub,
)
from app.core.config import settings
from app.schemas.chat import (
    ClientConfigResponse,
    ConversationCreate,
    ConversationFilter,
    ConversationListResponse,
    ConversationResponse,
    MessageCreate,
    MessageListResponse,
    MessageReceipt,
    MessageResponse,
    PinUpdate,
    ReadReceiptResponse,
    SendMessageResponse,
    TypingUpdate,
    UnreadCountResponse,
)
from app.services.async_conversation_store import AsyncConversationStore
from app.services.async_messaging import AsyncMessagingService
from app.services.typing_signal import TypingSignaler
from app.utils.logger import api_logger

router = APIRouter()


# Conversation endpoints
@router.post("/conversations", response_model=ConversationResponse, status_code=status.HTTP_201_CREATED)
async def create_conversation(
    conversation_data: ConversationCreate,
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
):
    """Open the conversation with another user, creating it on first contact."""
    api_logger.info("Open conversation", "CHAT", user_id=current_user_id, target=conversation_data.target_user_id)
    return await AsyncConversationStore.find_or_create_conversation(
        db, current_user_id, conversation_data.target_user_id, subject=conversation_data.subject
    )


@router.get("/conversations", response_model=ConversationListResponse)
async def list_conversations(
    filter: ConversationFilter = Query(ConversationFilter.ALL, description="all, unread or pinned"),
    search: Optional[str] = Query(None, description="Match subject or the other participant's name"),
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
):
    """Get the current user's visible conversations."""
    conversations = await AsyncConversationStore.list_conversations_for(
        db, current_user_id, filter=filter, search=search
    )
    return ConversationListResponse(conversations=conversations, total_count=len(conversations))


@router.get("/conversations/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(
    conversation_id: str,
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
):
    await AsyncConversationStore.require_participant(db, conversation_id, current_user_id)
    return await AsyncConversationStore.get_conversation(db, conversation_id)


@router.post("/conversations/{conversation_id}/hide", status_code=status.HTTP_204_NO_CONTENT)
async def hide_conversation(
    conversation_id: str,
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
):
    """Hide a conversation for the current user only."""
    await AsyncConversationStore.hide_conversation(db, conversation_id, current_user_id)


@router.put("/conversations/{conversation_id}/pin", status_code=status.HTTP_204_NO_CONTENT)
async def pin_conversation(
    conversation_id: str,
    pin_update: PinUpdate,
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
):
    await AsyncConversationStore.set_pinned(db, conversation_id, current_user_id, pin_update.is_pinned)


# Message endpoints
@router.get("/conversations/{conversation_id}/messages", response_model=MessageListResponse)
async def get_messages(
    conversation_id: str,
    limit: int = Query(50, ge=1, le=200),
    before: Optional[str] = Query(None, description="Message id cursor"),
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
):
    """Get a page of messages, oldest first."""
    messages, has_more = await AsyncMessagingService.get_messages(
        db, conversation_id, current_user_id, limit=limit, before=before
    )
    return MessageListResponse(
        messages=[MessageResponse.model_validate(m) for m in messages],
        has_more=has_more,
        next_before=messages[0].id if has_more and messages else None,
    )


@router.post("/conversations/{conversation_id}/messages", response_model=SendMessageResponse)
async def send_message(
    conversation_id: str,
    message_data: MessageCreate,
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
    hub: RealtimeHub = Depends(get_realtime_hub),
    notifier: NotificationSink = Depends(get_notification_sink),
):
    """
    Send a text message.

    Re-sending with the same `request_id` returns the original message with
    `created: false`.
    """
    message, created = await AsyncMessagingService.send_message(
        db,
        conversation_id,
        current_user_id,
        message_data.content,
        request_id=message_data.request_id,
        hub=hub,
        notifier=notifier,
    )
    return SendMessageResponse(message=MessageResponse.model_validate(message), created=created)


@router.post("/conversations/{conversation_id}/delivered", response_model=ReadReceiptResponse)
async def mark_delivered(
    conversation_id: str,
    receipt: Optional[MessageReceipt] = None,
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
    hub: RealtimeHub = Depends(get_realtime_hub),
):
    updated = await AsyncMessagingService.mark_delivered(
        db, conversation_id, current_user_id, receipt.message_ids if receipt else None, hub=hub
    )
    return ReadReceiptResponse(conversation_id=conversation_id, updated=updated)


@router.post("/conversations/{conversation_id}/seen", response_model=ReadReceiptResponse)
async def mark_seen(
    conversation_id: str,
    receipt: Optional[MessageReceipt] = None,
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
    hub: RealtimeHub = Depends(get_realtime_hub),
):
    updated = await AsyncMessagingService.mark_seen(
        db, conversation_id, current_user_id, receipt.message_ids if receipt else None, hub=hub
    )
    return ReadReceiptResponse(conversation_id=conversation_id, updated=updated)


@router.post("/conversations/{conversation_id}/read", response_model=ReadReceiptResponse)
async def mark_read(
    conversation_id: str,
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
    hub: RealtimeHub = Depends(get_realtime_hub),
):
    """Mark every incoming message in the conversation read."""
    updated = await AsyncMessagingService.mark_conversation_read(db, conversation_id, current_user_id, hub=hub)
    return ReadReceiptResponse(conversation_id=conversation_id, updated=updated)


@router.get("/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
):
    """Badge count across visible conversations."""
    return UnreadCountResponse(unread_count=await AsyncMessagingService.get_total_unread(db, current_user_id))


@router.post("/typing", status_code=status.HTTP_204_NO_CONTENT)
async def send_typing(
    typing_update: TypingUpdate,
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
    hub: RealtimeHub = Depends(get_realtime_hub),
):
    await AsyncConversationStore.require_participant(db, typing_update.conversation_id, current_user_id)
    await TypingSignaler(hub).send_typing(typing_update.conversation_id, current_user_id, typing_update.is_typing)


@router.get("/client-config", response_model=ClientConfigResponse)
async def get_client_config(current_user_id: str = Depends(get_current_user_id)):
    """Polling and debounce intervals for chat clients."""
    return ClientConfigResponse(
        presence_heartbeat_seconds=settings.PRESENCE_HEARTBEAT_SECONDS,
        presence_stale_seconds=settings.PRESENCE_STALE_SECONDS,
        typing_idle_seconds=settings.TYPING_IDLE_SECONDS,
        typing_ttl_seconds=settings.TYPING_TTL_SECONDS,
        conversation_refresh_seconds=settings.CONVERSATION_REFRESH_SECONDS,
        message_max_length=settings.MESSAGE_MAX_LENGTH,
    )
