"""
Async tests for the WebSocket protocol handler.

The socket is a FakeWebSocket and database work goes through sessions from
the test session factory.
"""

from contextlib import asynccontextmanager

import pytest
import pytest_asyncio

from app.api.endpoints.realtime import ChatSocketSession
from app.services.async_conversation_store import AsyncConversationStore
from app.services.async_messaging import AsyncMessagingService
from app.services.presence import AsyncPresenceService, PresenceRoster
from app.services.realtime import PRESENCE_TOPIC, messages_topic, typing_topic
from tests.factories import BUYER_ID, FARMER_ID, OTHER_BUYER_ID, FakeWebSocket


@pytest.fixture
def session_scope(session_factory):
    @asynccontextmanager
    async def scope():
        async with session_factory() as session:
            yield session
    return scope


@pytest.fixture
def roster(hub):
    return PresenceRoster(hub=hub)


@pytest_asyncio.fixture
async def conversation(async_db_session):
    return await AsyncConversationStore.find_or_create_conversation(async_db_session, BUYER_ID, FARMER_ID)


def _socket_session(user_id, hub, roster, session_scope, websocket=None):
    return ChatSocketSession(websocket or FakeWebSocket(), user_id, hub=hub, roster=roster,
                             session_scope=session_scope)


class TestSocketLifecycle:
    """Test open and close."""

    @pytest.mark.asyncio
    async def test_open_marks_online_and_sends_roster(self, async_db_session, hub, roster, session_scope):
        farmer = _socket_session(FARMER_ID, hub, roster, session_scope)
        await farmer.open()
        buyer = _socket_session(BUYER_ID, hub, roster, session_scope)
        await buyer.open()

        assert buyer.websocket.of_type("presence.roster")[0]["data"]["user_ids"] == [BUYER_ID, FARMER_ID]
        joins = [f["data"]["user_id"] for f in farmer.websocket.of_type("presence.join")]
        assert BUYER_ID in joins
        presence = await AsyncPresenceService.get_presence(async_db_session, [FARMER_ID])
        assert presence[FARMER_ID]["is_online"] is True

    @pytest.mark.asyncio
    async def test_close_marks_offline_and_unsubscribes(self, async_db_session, hub, roster, session_scope):
        farmer = _socket_session(FARMER_ID, hub, roster, session_scope)
        await farmer.open()

        await farmer.close()

        assert hub.subscriber_count(PRESENCE_TOPIC) == 0
        assert roster.members() == []
        presence = await AsyncPresenceService.get_presence(async_db_session, [FARMER_ID])
        assert presence[FARMER_ID]["is_online"] is False

    @pytest.mark.asyncio
    async def test_second_tab_keeps_user_online(self, async_db_session, hub, roster, session_scope):
        # Arrange: the farmer has the chat open in two tabs
        first_tab = _socket_session(FARMER_ID, hub, roster, session_scope)
        second_tab = _socket_session(FARMER_ID, hub, roster, session_scope)
        await first_tab.open()
        await second_tab.open()

        # Act
        await first_tab.close()

        # Assert
        assert roster.members() == [FARMER_ID]
        presence = await AsyncPresenceService.get_presence(async_db_session, [FARMER_ID])
        assert presence[FARMER_ID]["is_online"] is True

        await second_tab.close()
        async_db_session.expire_all()

        assert roster.members() == []
        presence = await AsyncPresenceService.get_presence(async_db_session, [FARMER_ID])
        assert presence[FARMER_ID]["is_online"] is False


class TestSocketFrames:
    """Test frame handling."""

    @pytest.mark.asyncio
    async def test_join_forwards_messages(self, async_db_session, conversation, hub, roster, session_scope, notifier):
        farmer = _socket_session(FARMER_ID, hub, roster, session_scope)

        await farmer.handle_frame({"type": "join_conversation", "conversation_id": conversation.id})
        await AsyncMessagingService.send_message(
            async_db_session, conversation.id, BUYER_ID, "Tomatoes ready?", hub=hub, notifier=notifier
        )

        assert farmer.websocket.of_type("joined")[0]["data"] == {"conversation_id": conversation.id}
        created = farmer.websocket.of_type("message.created")
        assert created[0]["data"]["content"] == "Tomatoes ready?"

    @pytest.mark.asyncio
    async def test_outsider_cannot_join(self, conversation, hub, roster, session_scope):
        stranger = _socket_session(OTHER_BUYER_ID, hub, roster, session_scope)

        await stranger.handle_frame({"type": "join_conversation", "conversation_id": conversation.id})

        error = stranger.websocket.of_type("error")[0]
        assert error["error"] == "permission_denied"
        assert hub.subscriber_count(messages_topic(conversation.id)) == 0

    @pytest.mark.asyncio
    async def test_typing_requires_join(self, conversation, hub, roster, session_scope):
        farmer = _socket_session(FARMER_ID, hub, roster, session_scope)
        buyer = _socket_session(BUYER_ID, hub, roster, session_scope)

        await buyer.handle_frame({"type": "typing", "conversation_id": conversation.id, "is_typing": True})
        assert buyer.websocket.of_type("error")[0]["error"] == "validation_failed"

        await farmer.handle_frame({"type": "join_conversation", "conversation_id": conversation.id})
        await buyer.handle_frame({"type": "join_conversation", "conversation_id": conversation.id})
        await buyer.handle_frame({"type": "typing", "conversation_id": conversation.id, "is_typing": True})

        typing = farmer.websocket.of_type("typing")
        assert typing[0]["data"] == {"conversation_id": conversation.id, "user_id": BUYER_ID, "is_typing": True}

    @pytest.mark.asyncio
    async def test_leave_stops_forwarding(self, conversation, hub, roster, session_scope):
        farmer = _socket_session(FARMER_ID, hub, roster, session_scope)
        await farmer.handle_frame({"type": "join_conversation", "conversation_id": conversation.id})

        await farmer.handle_frame({"type": "leave_conversation", "conversation_id": conversation.id})

        assert farmer.websocket.of_type("left")
        assert hub.subscriber_count(typing_topic(conversation.id)) == 0

    @pytest.mark.asyncio
    async def test_seen_frame_updates_receipts(
        self, async_db_session, conversation, hub, roster, session_scope, notifier
    ):
        message, _ = await AsyncMessagingService.send_message(
            async_db_session, conversation.id, BUYER_ID, "Hello", hub=hub, notifier=notifier
        )
        buyer = _socket_session(BUYER_ID, hub, roster, session_scope)
        await buyer.handle_frame({"type": "join_conversation", "conversation_id": conversation.id})
        farmer = _socket_session(FARMER_ID, hub, roster, session_scope)

        await farmer.handle_frame({"type": "seen", "conversation_id": conversation.id, "message_ids": [message.id]})

        seen = buyer.websocket.of_type("message.seen")
        assert seen[0]["data"]["message_ids"] == [message.id]

    @pytest.mark.asyncio
    async def test_heartbeat_and_unknown_frames(self, hub, roster, session_scope):
        farmer = _socket_session(FARMER_ID, hub, roster, session_scope)

        await farmer.handle_frame({"type": "heartbeat"})
        await farmer.handle_frame({"type": "shout"})
        await farmer.handle_frame({"type": "delivered"})

        assert farmer.websocket.of_type("heartbeat_ack")
        errors = farmer.websocket.of_type("error")
        assert errors[0]["error"] == "unknown_frame"
        assert errors[1]["error"] == "validation_failed"
