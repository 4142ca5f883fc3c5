"""
Messaging engine: send, delivery receipts, read state and history.

Delivery timestamps on a message only ever move forward:
delivered_at <= seen_at <= read_at, each written once.
"""

import logging
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import select, update, func, and_, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import NotFound, ValidationFailed
from app.db.base_class import as_utc, utcnow
from app.models.conversation import Conversation, ConversationParticipant
from app.models.message import Message
from app.services.async_conversation_store import AsyncConversationStore
from app.services.async_error_handler import handle_async_db_errors
from app.services.notification import NotificationSink, notify_safely
from app.services.realtime import RealtimeHub, hub as default_hub, messages_topic
from app.utils.logger import chat_logger

logger = logging.getLogger(__name__)

MESSAGE_TYPES = {"text", "offer", "system", "payment"}
PREVIEW_LENGTH = 120


def message_event(message: Message) -> dict:
    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "sender_id": message.sender_id,
        "content": message.content,
        "message_type": message.message_type,
        "offer_id": message.offer_id,
        "request_id": message.request_id,
        "created_at": as_utc(message.created_at).isoformat(),
    }


def _preview(content: Optional[str], message_type: str) -> str:
    if content:
        return content[:PREVIEW_LENGTH]
    return message_type.capitalize()


class AsyncMessagingService:
    """Async service for chat messages."""

    @staticmethod
    def _validate(content: Optional[str], message_type: str, offer_id: Optional[str]) -> Optional[str]:
        if message_type not in MESSAGE_TYPES:
            raise ValidationFailed(f"Unknown message type: {message_type}")

        if content is not None:
            content = content.strip()
        if message_type in ("offer", "payment"):
            if not offer_id:
                raise ValidationFailed(f"{message_type.capitalize()} messages must reference an offer")
        elif not content:
            raise ValidationFailed("Message content cannot be empty")

        if content and len(content) > settings.MESSAGE_MAX_LENGTH:
            raise ValidationFailed(f"Message exceeds {settings.MESSAGE_MAX_LENGTH} characters")
        return content or None

    @staticmethod
    async def _find_by_request(db: AsyncSession, sender_id: str, request_id: str) -> Optional[Message]:
        result = await db.execute(
            select(Message).where(and_(Message.sender_id == sender_id, Message.request_id == request_id))
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _touch_statement(conversation_id: str, preview: str, at: datetime):
        # Never move last_activity_at backwards
        return (
            update(Conversation)
            .where(and_(
                Conversation.id == conversation_id,
                or_(Conversation.last_activity_at.is_(None), Conversation.last_activity_at <= at),
            ))
            .values(last_message=preview, last_activity_at=at, updated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )

    @staticmethod
    async def _touch_conversation(db: AsyncSession, conversation_id: str, preview: str, at: datetime) -> None:
        await db.execute(AsyncMessagingService._touch_statement(conversation_id, preview, at))
        await AsyncConversationStore.unhide_for_all(db, conversation_id)

    @staticmethod
    @handle_async_db_errors("send message")
    async def send_message(
        db: AsyncSession,
        conversation_id: str,
        sender_id: str,
        content: Optional[str],
        request_id: Optional[str] = None,
        message_type: str = "text",
        offer_id: Optional[str] = None,
        hub: Optional[RealtimeHub] = None,
        notifier: Optional[NotificationSink] = None,
        notify: bool = True,
    ) -> Tuple[Message, bool]:
        """
        Append a message to a conversation.

        Returns:
            (message, created); `created` is False when `request_id` was
            already used by this sender, in which case the stored message is
            returned unchanged.
        """
        await AsyncConversationStore.require_participant(db, conversation_id, sender_id)
        content = AsyncMessagingService._validate(content, message_type, offer_id)

        if request_id:
            existing = await AsyncMessagingService._find_by_request(db, sender_id, request_id)
            if existing is not None:
                chat_logger.debug("Duplicate send resolved", request_id=request_id, message_id=existing.id)
                return existing, False

        try:
            message, touched = await AsyncMessagingService.stage_message(
                db, conversation_id, sender_id, content, message_type, offer_id, request_id
            )
        except IntegrityError:
            await db.rollback()
            if not request_id:
                raise
            existing = await AsyncMessagingService._find_by_request(db, sender_id, request_id)
            if existing is None:
                raise
            return existing, False

        await db.commit()
        await AsyncMessagingService.after_commit(db, message, touched, hub)

        if notify:
            recipient_id = await AsyncMessagingService._recipient_of(db, conversation_id, sender_id)
            if recipient_id:
                await notify_safely(
                    notifier, recipient_id, "New message",
                    _preview(message.content, message_type), "conversation", conversation_id,
                )

        return message, True

    @staticmethod
    async def stage_message(
        db: AsyncSession,
        conversation_id: str,
        sender_id: str,
        content: Optional[str],
        message_type: str = "text",
        offer_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> Tuple[Message, bool]:
        """
        Insert a message and touch its conversation inside the caller's
        transaction. Nothing is committed or published.

        Returns:
            (message, touched); `touched` is False when the conversation
            update failed and must be retried by `after_commit`.
        """
        now = utcnow()
        message = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            message_type=message_type,
            offer_id=offer_id,
            request_id=request_id,
            created_at=now,
        )
        db.add(message)
        await db.flush()

        try:
            async with db.begin_nested():
                await AsyncMessagingService._touch_conversation(
                    db, conversation_id, _preview(content, message_type), now
                )
        except SQLAlchemyError as e:
            logger.warning(f"Conversation touch failed for {conversation_id}, retrying after commit: {e}")
            return message, False
        return message, True

    @staticmethod
    async def after_commit(db: AsyncSession, message: Message, touched: bool,
                           hub: Optional[RealtimeHub] = None) -> None:
        """Retry a failed conversation touch, then publish the committed message."""
        # Snapshot before any rollback expires the instance
        event = message_event(message)
        conversation_id, message_id = event["conversation_id"], event["id"]
        if not touched:
            try:
                await AsyncMessagingService._touch_conversation(
                    db, conversation_id, _preview(event["content"], event["message_type"]), message.created_at
                )
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                await db.refresh(message)
                logger.error(f"Conversation {conversation_id} not touched for message {message_id}: {e}")

        chat_logger.info("Message sent", conversation_id=conversation_id, message_id=message_id,
                         message_type=event["message_type"])

        try:
            await (hub or default_hub).publish(messages_topic(conversation_id), "message.created", event)
        except Exception as e:
            logger.warning(f"Publishing message {message_id} failed: {e}")

    @staticmethod
    async def _recipient_of(db: AsyncSession, conversation_id: str, sender_id: str) -> Optional[str]:
        result = await db.execute(
            select(ConversationParticipant.user_id).where(and_(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.user_id != sender_id,
            ))
        )
        return result.scalars().first()

    @staticmethod
    async def _incoming_ids(
        db: AsyncSession,
        conversation_id: str,
        user_id: str,
        unset_column,
        message_ids: Optional[Sequence[str]] = None,
    ) -> List[str]:
        """Ids of messages addressed to `user_id` where `unset_column` is still NULL."""
        query = select(Message.id).where(and_(
            Message.conversation_id == conversation_id,
            Message.sender_id != user_id,
            unset_column.is_(None),
        ))
        if message_ids is not None:
            query = query.where(Message.id.in_(list(message_ids)))
        result = await db.execute(query)
        return list(result.scalars().all())

    @staticmethod
    async def _fill(db: AsyncSession, ids: List[str], column, at: datetime) -> None:
        await db.execute(
            update(Message)
            .where(and_(Message.id.in_(ids), column.is_(None)))
            .values({column.key: at})
            .execution_options(synchronize_session="fetch")
        )

    @staticmethod
    async def _publish_receipt(
        hub: Optional[RealtimeHub], conversation_id: str, event_type: str, user_id: str, ids: List[str], at: datetime
    ) -> None:
        try:
            await (hub or default_hub).publish(
                messages_topic(conversation_id),
                event_type,
                {"conversation_id": conversation_id, "user_id": user_id, "message_ids": ids, "at": at.isoformat()},
            )
        except Exception as e:
            logger.warning(f"Publishing {event_type} for {conversation_id} failed: {e}")

    @staticmethod
    @handle_async_db_errors("mark delivered")
    async def mark_delivered(
        db: AsyncSession,
        conversation_id: str,
        user_id: str,
        message_ids: Optional[Sequence[str]] = None,
        hub: Optional[RealtimeHub] = None,
    ) -> int:
        await AsyncConversationStore.require_participant(db, conversation_id, user_id)
        ids = await AsyncMessagingService._incoming_ids(
            db, conversation_id, user_id, Message.delivered_at, message_ids
        )
        if not ids:
            return 0

        now = utcnow()
        await AsyncMessagingService._fill(db, ids, Message.delivered_at, now)
        await db.commit()
        await AsyncMessagingService._publish_receipt(hub, conversation_id, "message.delivered", user_id, ids, now)
        return len(ids)

    @staticmethod
    @handle_async_db_errors("mark seen")
    async def mark_seen(
        db: AsyncSession,
        conversation_id: str,
        user_id: str,
        message_ids: Optional[Sequence[str]] = None,
        hub: Optional[RealtimeHub] = None,
    ) -> int:
        await AsyncConversationStore.require_participant(db, conversation_id, user_id)
        ids = await AsyncMessagingService._incoming_ids(
            db, conversation_id, user_id, Message.seen_at, message_ids
        )
        if not ids:
            return 0

        now = utcnow()
        await AsyncMessagingService._fill(db, ids, Message.delivered_at, now)
        await AsyncMessagingService._fill(db, ids, Message.seen_at, now)
        await db.commit()
        await AsyncMessagingService._publish_receipt(hub, conversation_id, "message.seen", user_id, ids, now)
        return len(ids)

    @staticmethod
    @handle_async_db_errors("mark conversation read")
    async def mark_conversation_read(
        db: AsyncSession,
        conversation_id: str,
        user_id: str,
        hub: Optional[RealtimeHub] = None,
    ) -> int:
        """Mark every unread incoming message read in one transaction."""
        await AsyncConversationStore.require_participant(db, conversation_id, user_id)
        ids = await AsyncMessagingService._incoming_ids(db, conversation_id, user_id, Message.read_at)
        if not ids:
            return 0

        now = utcnow()
        for column in (Message.delivered_at, Message.seen_at, Message.read_at):
            await AsyncMessagingService._fill(db, ids, column, now)
        await db.commit()

        chat_logger.debug("Conversation read", conversation_id=conversation_id, user_id=user_id, count=len(ids))
        await AsyncMessagingService._publish_receipt(hub, conversation_id, "message.read", user_id, ids, now)
        return len(ids)

    @staticmethod
    async def get_message(db: AsyncSession, message_id: str) -> Message:
        result = await db.execute(select(Message).where(Message.id == message_id))
        message = result.scalar_one_or_none()
        if message is None:
            raise NotFound("message", message_id)
        return message

    @staticmethod
    @handle_async_db_errors("get messages")
    async def get_messages(
        db: AsyncSession,
        conversation_id: str,
        user_id: str,
        limit: Optional[int] = None,
        before: Optional[str] = None,
    ) -> Tuple[List[Message], bool]:
        """
        A page of history in chronological order, ordered by (created_at, id).

        Args:
            before: message id cursor; only older messages are returned

        Returns:
            (messages, has_more)
        """
        await AsyncConversationStore.require_participant(db, conversation_id, user_id)
        limit = limit or settings.MESSAGE_PAGE_SIZE

        query = select(Message).where(Message.conversation_id == conversation_id)
        if before:
            cursor = await AsyncMessagingService.get_message(db, before)
            if cursor.conversation_id != conversation_id:
                raise ValidationFailed("Cursor belongs to another conversation")
            query = query.where(or_(
                Message.created_at < cursor.created_at,
                and_(Message.created_at == cursor.created_at, Message.id < cursor.id),
            ))

        result = await db.execute(
            query.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit + 1)
        )
        rows = list(result.scalars().all())
        has_more = len(rows) > limit
        page = rows[:limit]
        page.reverse()
        return page, has_more

    @staticmethod
    async def get_unread_count(db: AsyncSession, conversation_id: str, user_id: str) -> int:
        await AsyncConversationStore.require_participant(db, conversation_id, user_id)
        result = await db.execute(
            select(func.count(Message.id)).where(and_(
                Message.conversation_id == conversation_id,
                Message.sender_id != user_id,
                Message.read_at.is_(None),
            ))
        )
        return result.scalar_one()

    @staticmethod
    async def get_total_unread(db: AsyncSession, user_id: str) -> int:
        """Unread incoming messages across the user's visible conversations."""
        result = await db.execute(
            select(func.count(Message.id))
            .join(ConversationParticipant, ConversationParticipant.conversation_id == Message.conversation_id)
            .where(and_(
                ConversationParticipant.user_id == user_id,
                ConversationParticipant.hidden_at.is_(None),
                Message.sender_id != user_id,
                Message.read_at.is_(None),
            ))
        )
        return result.scalar_one()
