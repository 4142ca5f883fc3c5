"""WebSocket endpoint for real-time chat, typing and presence."""

import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional, Set

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import decode_access_token
from app.core.exceptions import MessagingError, ValidationFailed
from app.db.async_session import get_async_db_manager
from app.services.async_conversation_store import AsyncConversationStore
from app.services.async_messaging import AsyncMessagingService
from app.services.presence import AsyncPresenceService, PresenceRoster, roster as default_roster
from app.services.realtime import PRESENCE_TOPIC, RealtimeHub, hub as default_hub, messages_topic, typing_topic
from app.services.typing_signal import TypingSignaler
from app.utils.logger import chat_logger

logger = logging.getLogger(__name__)

router = APIRouter()


@asynccontextmanager
async def _default_session_scope():
    manager = await get_async_db_manager()
    async with manager.session_scope() as session:
        yield session


class ChatSocketSession:
    """
    Protocol handler for one authenticated socket.

    Frames are JSON objects with a `type` of join_conversation,
    leave_conversation, typing, heartbeat, delivered or seen. Hub events for
    joined conversations and the presence roster are forwarded as-is.
    """

    def __init__(
        self,
        websocket: Any,
        user_id: str,
        hub: Optional[RealtimeHub] = None,
        roster: Optional[PresenceRoster] = None,
        session_scope: Optional[Callable[[], Any]] = None,
    ):
        self.websocket = websocket
        self.user_id = user_id
        self.hub = hub or default_hub
        self.roster = roster or default_roster
        self.session_scope = session_scope or _default_session_scope
        self.conversations: Set[str] = set()
        self._handlers = {
            "join_conversation": self._join,
            "leave_conversation": self._leave,
            "typing": self._typing,
            "heartbeat": self._heartbeat,
            "delivered": self._delivered,
            "seen": self._seen,
        }

    async def open(self) -> None:
        self.hub.subscribe(PRESENCE_TOPIC, self.websocket)
        members = await self.roster.join(self.user_id)
        async with self.session_scope() as db:
            await AsyncPresenceService.touch_presence(db, self.user_id, True, hub=self.hub)
        await self.websocket.send_json({"type": "presence.roster", "data": {"user_ids": members}})

    async def close(self) -> None:
        self.hub.unsubscribe_all(self.websocket)
        self.conversations.clear()
        await self.roster.leave(self.user_id)
        if self.roster.connection_count(self.user_id) > 0:
            return
        async with self.session_scope() as db:
            await AsyncPresenceService.touch_presence(db, self.user_id, False, hub=self.hub)

    async def handle_frame(self, frame: Dict[str, Any]) -> None:
        handler = self._handlers.get(frame.get("type")) if isinstance(frame, dict) else None
        if handler is None:
            await self.websocket.send_json({"type": "error", "error": "unknown_frame", "detail": "Unknown frame type"})
            return
        try:
            await handler(frame)
        except MessagingError as e:
            await self.websocket.send_json({"type": "error", **e.to_dict()})

    @staticmethod
    def _conversation_id(frame: Dict[str, Any]) -> str:
        conversation_id = frame.get("conversation_id")
        if not conversation_id:
            raise ValidationFailed("conversation_id is required")
        return str(conversation_id)

    async def _require_participant(self, db: AsyncSession, conversation_id: str) -> None:
        await AsyncConversationStore.require_participant(db, conversation_id, self.user_id)

    async def _join(self, frame: Dict[str, Any]) -> None:
        conversation_id = self._conversation_id(frame)
        async with self.session_scope() as db:
            await self._require_participant(db, conversation_id)
        self.hub.subscribe(messages_topic(conversation_id), self.websocket)
        self.hub.subscribe(typing_topic(conversation_id), self.websocket)
        self.conversations.add(conversation_id)
        await self.websocket.send_json({"type": "joined", "data": {"conversation_id": conversation_id}})

    async def _leave(self, frame: Dict[str, Any]) -> None:
        conversation_id = self._conversation_id(frame)
        self.hub.unsubscribe(messages_topic(conversation_id), self.websocket)
        self.hub.unsubscribe(typing_topic(conversation_id), self.websocket)
        self.conversations.discard(conversation_id)
        await self.websocket.send_json({"type": "left", "data": {"conversation_id": conversation_id}})

    async def _typing(self, frame: Dict[str, Any]) -> None:
        conversation_id = self._conversation_id(frame)
        if conversation_id not in self.conversations:
            raise ValidationFailed("Join the conversation before sending typing signals")
        await TypingSignaler(self.hub).send_typing(conversation_id, self.user_id, bool(frame.get("is_typing")))

    async def _heartbeat(self, frame: Dict[str, Any]) -> None:
        self.roster.heartbeat(self.user_id)
        async with self.session_scope() as db:
            await AsyncPresenceService.touch_presence(db, self.user_id, True, hub=self.hub)
        await self.websocket.send_json({"type": "heartbeat_ack"})

    async def _delivered(self, frame: Dict[str, Any]) -> None:
        conversation_id = self._conversation_id(frame)
        async with self.session_scope() as db:
            await AsyncMessagingService.mark_delivered(
                db, conversation_id, self.user_id, frame.get("message_ids"), hub=self.hub
            )

    async def _seen(self, frame: Dict[str, Any]) -> None:
        conversation_id = self._conversation_id(frame)
        async with self.session_scope() as db:
            await AsyncMessagingService.mark_seen(
                db, conversation_id, self.user_id, frame.get("message_ids"), hub=self.hub
            )


@router.websocket("/chat")
async def chat_websocket(websocket: WebSocket, token: Optional[str] = None):
    """
    Real-time channel.

    Query parameters:
    - token: JWT bearer token
    """
    try:
        user_id = decode_access_token(token or "")
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    session = ChatSocketSession(websocket, user_id)
    await session.open()
    chat_logger.info("Socket connected", "WS", user_id=user_id)

    try:
        while True:
            frame = await websocket.receive_json()
            await session.handle_frame(frame)
    except WebSocketDisconnect:
        chat_logger.info("Socket disconnected", "WS", user_id=user_id)
    finally:
        await session.close()
