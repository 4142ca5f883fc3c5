"""
Conversation and participant lifecycle.

A conversation is identified by the unordered pair of its two users
(`conversation_key`), which makes find-or-create safe under concurrent
callers: the unique key decides the winner and everyone else reads it.
"""

import logging
import uuid
from typing import List, Optional

from sqlalchemy import select, update, func, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from app.core.config import settings
from app.core.exceptions import NotFound, PermissionDenied, ValidationFailed
from app.db.base_class import as_utc, utcnow
from app.db.upsert import upsert_insert
from app.models.conversation import Conversation, ConversationParticipant
from app.models.message import Message
from app.schemas.chat import ConversationFilter, ConversationSummary, ParticipantProfile
from app.services.async_error_handler import handle_async_db_errors
from app.services.presence import AsyncPresenceService
from app.services.profile import profile_provider
from app.utils.logger import chat_logger

logger = logging.getLogger(__name__)


def conversation_key(user_a: str, user_b: str) -> str:
    low, high = sorted((user_a, user_b))
    return f"{low}:{high}"


def other_participant_id(conversation: Conversation, user_id: str) -> Optional[str]:
    for participant in conversation.participants:
        if participant.user_id != user_id:
            return participant.user_id
    return None


class AsyncConversationStore:
    """Async service for conversations and their participants."""

    @staticmethod
    @handle_async_db_errors("find or create conversation")
    async def find_or_create_conversation(
        db: AsyncSession,
        user_a: str,
        user_b: str,
        subject: Optional[str] = None,
    ) -> Conversation:
        """
        Return the 1:1 conversation between two users, creating it on first
        contact. Safe to call concurrently for the same pair.
        """
        if not user_a or not user_b:
            raise ValidationFailed("Both participants are required")
        if user_a == user_b:
            raise ValidationFailed("Cannot start a conversation with yourself")

        if settings.CONVERSATION_CREATE_STRATEGY == "scan" or upsert_insert(db, Conversation) is None:
            conversation = await AsyncConversationStore._find_or_create_by_scan(db, user_a, user_b, subject)
        else:
            conversation = await AsyncConversationStore._find_or_create_by_key(db, user_a, user_b, subject)

        # Explicitly opening a thread brings it back for the requester
        await db.execute(
            update(ConversationParticipant)
            .where(and_(
                ConversationParticipant.conversation_id == conversation.id,
                ConversationParticipant.user_id == user_a,
                ConversationParticipant.hidden_at.isnot(None),
            ))
            .values(hidden_at=None)
            .execution_options(synchronize_session="fetch")
        )
        await db.commit()
        return await AsyncConversationStore._load(db, conversation_key(user_a, user_b))

    @staticmethod
    async def _load(db: AsyncSession, key: str) -> Optional[Conversation]:
        result = await db.execute(
            select(Conversation)
            .where(Conversation.conversation_key == key)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _find_or_create_by_key(
        db: AsyncSession, user_a: str, user_b: str, subject: Optional[str]
    ) -> Conversation:
        key = conversation_key(user_a, user_b)
        now = utcnow()

        try:
            await db.execute(
                upsert_insert(db, Conversation)
                .values(
                    id=str(uuid.uuid4()),
                    subject=subject,
                    conversation_key=key,
                    created_at=now,
                    updated_at=now,
                )
                .on_conflict_do_nothing(index_elements=["conversation_key"])
            )
            conversation_id = (await db.execute(
                select(Conversation.id).where(Conversation.conversation_key == key)
            )).scalar_one()

            await db.execute(
                upsert_insert(db, ConversationParticipant)
                .values([
                    {"id": str(uuid.uuid4()), "conversation_id": conversation_id, "user_id": user_id,
                     "joined_at": now, "is_pinned": False, "created_at": now}
                    for user_id in (user_a, user_b)
                ])
                .on_conflict_do_nothing(index_elements=["conversation_id", "user_id"])
            )
            await db.commit()
        except IntegrityError as e:
            await db.rollback()
            logger.info(f"Conversation {key} created concurrently, reading winner: {e}")

        conversation = await AsyncConversationStore._load(db, key)
        if conversation is None:
            raise NotFound("conversation", key)
        return conversation

    @staticmethod
    async def _find_or_create_by_scan(
        db: AsyncSession, user_a: str, user_b: str, subject: Optional[str]
    ) -> Conversation:
        """Participant scan for stores without keyed upsert. Deprecated."""
        logger.warning("Conversation scan strategy is deprecated; configure CONVERSATION_CREATE_STRATEGY=upsert")

        mine = aliased(ConversationParticipant)
        theirs = aliased(ConversationParticipant)
        result = await db.execute(
            select(Conversation)
            .join(mine, mine.conversation_id == Conversation.id)
            .join(theirs, theirs.conversation_id == Conversation.id)
            .where(and_(mine.user_id == user_a, theirs.user_id == user_b))
            .limit(1)
        )
        existing = result.scalar_one_or_none()
        if existing is not None:
            return existing

        key = conversation_key(user_a, user_b)
        try:
            conversation = Conversation(subject=subject, conversation_key=key)
            db.add(conversation)
            await db.flush()
            db.add_all([
                ConversationParticipant(conversation_id=conversation.id, user_id=user_id)
                for user_id in (user_a, user_b)
            ])
            await db.commit()
            chat_logger.info("Conversation created", "SCAN", conversation_id=conversation.id)
            return conversation
        except IntegrityError:
            await db.rollback()
            conversation = await AsyncConversationStore._load(db, key)
            if conversation is None:
                raise
            return conversation

    @staticmethod
    async def get_conversation(db: AsyncSession, conversation_id: str) -> Conversation:
        result = await db.execute(select(Conversation).where(Conversation.id == conversation_id))
        conversation = result.scalar_one_or_none()
        if conversation is None:
            raise NotFound("conversation", conversation_id)
        return conversation

    @staticmethod
    async def get_participant(
        db: AsyncSession, conversation_id: str, user_id: str
    ) -> Optional[ConversationParticipant]:
        result = await db.execute(
            select(ConversationParticipant).where(and_(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.user_id == user_id,
            ))
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def require_participant(
        db: AsyncSession, conversation_id: str, user_id: str
    ) -> ConversationParticipant:
        """
        Raises:
            NotFound: conversation does not exist
            PermissionDenied: user is not one of its participants
        """
        participant = await AsyncConversationStore.get_participant(db, conversation_id, user_id)
        if participant is not None:
            return participant

        await AsyncConversationStore.get_conversation(db, conversation_id)
        chat_logger.warning("Non-participant access", "POLICY", conversation_id=conversation_id, user_id=user_id)
        raise PermissionDenied("Not a participant of this conversation")

    @staticmethod
    async def hide_conversation(db: AsyncSession, conversation_id: str, user_id: str) -> ConversationParticipant:
        """Hide the thread for this participant only. Messages are kept."""
        participant = await AsyncConversationStore.require_participant(db, conversation_id, user_id)
        if participant.hidden_at is None:
            participant.hidden_at = utcnow()
            await db.commit()
            await db.refresh(participant)
        return participant

    @staticmethod
    async def set_pinned(
        db: AsyncSession, conversation_id: str, user_id: str, pinned: bool
    ) -> ConversationParticipant:
        participant = await AsyncConversationStore.require_participant(db, conversation_id, user_id)
        if participant.is_pinned != pinned:
            participant.is_pinned = pinned
            await db.commit()
            await db.refresh(participant)
        return participant

    @staticmethod
    async def unhide_for_all(db: AsyncSession, conversation_id: str) -> None:
        """Clear `hidden_at` for every participant. Caller commits."""
        await db.execute(
            update(ConversationParticipant)
            .where(and_(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.hidden_at.isnot(None),
            ))
            .values(hidden_at=None)
            .execution_options(synchronize_session="fetch")
        )

    @staticmethod
    @handle_async_db_errors("list conversations")
    async def list_conversations_for(
        db: AsyncSession,
        user_id: str,
        filter: ConversationFilter = ConversationFilter.ALL,
        search: Optional[str] = None,
    ) -> List[ConversationSummary]:
        """
        Visible conversations of a user, pinned first, then most recent
        activity (conversations without messages last).
        """
        result = await db.execute(
            select(Conversation, ConversationParticipant.is_pinned)
            .join(ConversationParticipant, ConversationParticipant.conversation_id == Conversation.id)
            .where(and_(
                ConversationParticipant.user_id == user_id,
                ConversationParticipant.hidden_at.is_(None),
            ))
            .order_by(
                ConversationParticipant.is_pinned.desc(),
                Conversation.last_activity_at.desc().nulls_last(),
                Conversation.created_at.desc(),
            )
        )
        rows = result.all()
        if not rows:
            return []

        conversation_ids = [conversation.id for conversation, _ in rows]
        unread_result = await db.execute(
            select(Message.conversation_id, func.count(Message.id))
            .where(and_(
                Message.conversation_id.in_(conversation_ids),
                Message.sender_id != user_id,
                Message.read_at.is_(None),
            ))
            .group_by(Message.conversation_id)
        )
        unread = dict(unread_result.all())

        other_ids = {
            conversation.id: other_participant_id(conversation, user_id) for conversation, _ in rows
        }
        known_ids = [other for other in other_ids.values() if other]
        profiles = await profile_provider.get_profiles(db, known_ids)
        presence = await AsyncPresenceService.get_presence(db, known_ids)

        summaries = []
        for conversation, is_pinned in rows:
            other_id = other_ids[conversation.id]
            profile = profiles.get(other_id)
            status = presence.get(other_id, {})
            summaries.append(ConversationSummary(
                id=conversation.id,
                subject=conversation.subject,
                last_message=conversation.last_message,
                last_activity_at=as_utc(conversation.last_activity_at),
                is_pinned=bool(is_pinned),
                unread_count=unread.get(conversation.id, 0),
                other_participant=ParticipantProfile(
                    user_id=other_id or "",
                    full_name=profile.full_name if profile else None,
                    role=profile.role if profile else None,
                    avatar_url=profile.avatar_url if profile else None,
                    district=profile.district if profile else None,
                    state=profile.state if profile else None,
                    is_online=status.get("is_online", False),
                    last_seen_at=status.get("last_seen_at"),
                ),
            ))

        if filter == ConversationFilter.UNREAD:
            summaries = [s for s in summaries if s.unread_count > 0]
        elif filter == ConversationFilter.PINNED:
            summaries = [s for s in summaries if s.is_pinned]

        if search:
            needle = search.strip().lower()
            summaries = [
                s for s in summaries
                if needle in (s.subject or "").lower()
                or needle in (s.other_participant.full_name or "").lower()
            ]

        return summaries
