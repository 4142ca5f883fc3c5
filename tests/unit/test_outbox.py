"""
Unit tests for the optimistic outbox.

The transport is a plain coroutine in most tests; the last test drives the
real messaging service to show a lost response does not duplicate the row.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, func

from app.models.message import Message
from app.services.async_conversation_store import AsyncConversationStore
from app.services.async_messaging import AsyncMessagingService
from app.services.outbox import FAILED, SENDING, SENT, LocalMessage, OptimisticOutbox, order_messages
from tests.factories import BUYER_ID, FARMER_ID

T0 = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)


class StepClock:
    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        self.now = self.now + timedelta(seconds=1)
        return self.now


class ScriptedTransport:
    """Returns server records, or raises for the scripted attempts."""

    def __init__(self, failures=0):
        self.failures = failures
        self.requests = []

    async def __call__(self, content, request_id):
        self.requests.append(request_id)
        if self.failures:
            self.failures -= 1
            raise ConnectionError("network down")
        return {
            "id": f"srv-{len(self.requests)}",
            "content": content,
            "request_id": request_id,
            "sender_id": BUYER_ID,
            "created_at": T0 + timedelta(minutes=len(self.requests)),
            "message_type": "text",
        }


class TestOptimisticSend:
    """Test local entries and their confirmation."""

    @pytest.mark.asyncio
    async def test_successful_send_replaces_local_entry(self):
        transport = ScriptedTransport()
        outbox = OptimisticOutbox(transport, sender_id=BUYER_ID, clock=StepClock())

        entry = await outbox.send("Is the onion still available?")

        assert entry.status == SENT
        assert entry.server_id == "srv-1"
        assert entry.local_id.startswith("local-")
        assert len(outbox.entries) == 1
        assert outbox.get("srv-1") is outbox.get(entry.local_id)

    @pytest.mark.asyncio
    async def test_failed_send_then_retry_keeps_single_entry(self):
        # Arrange
        transport = ScriptedTransport(failures=1)
        outbox = OptimisticOutbox(transport, sender_id=BUYER_ID, clock=StepClock())

        # Act
        failed = await outbox.send("Hello")
        assert failed.status == FAILED
        assert failed.error == "network down"
        retried = await outbox.retry_send(failed.local_id)

        # Assert
        assert retried.status == SENT
        assert len(outbox.entries) == 1
        assert transport.requests[0] == transport.requests[1]

    @pytest.mark.asyncio
    async def test_retry_requires_failed_entry(self):
        outbox = OptimisticOutbox(ScriptedTransport(), clock=StepClock())
        entry = await outbox.send("Hello")

        with pytest.raises(ValueError):
            await outbox.retry_send(entry.local_id)

    @pytest.mark.asyncio
    async def test_push_before_response_is_not_duplicated(self):
        """The realtime push for our own message may beat the HTTP response."""
        outbox = OptimisticOutbox(None, sender_id=BUYER_ID, clock=StepClock())
        pending = LocalMessage(local_id="local-1", request_id="req-1", content="Hi", created_at=T0)
        outbox._entries.append(pending)

        pushed = {"id": "srv-9", "request_id": "req-1", "sender_id": BUYER_ID, "content": "Hi", "created_at": T0}
        outbox.ingest(pushed)
        outbox.confirm("local-1", pushed)
        outbox.ingest(pushed)

        assert [(e.id, e.status) for e in outbox.entries] == [("srv-9", SENT)]

    @pytest.mark.asyncio
    async def test_ingest_foreign_message_appends(self):
        outbox = OptimisticOutbox(ScriptedTransport(), sender_id=BUYER_ID, clock=StepClock())

        entry = outbox.ingest({
            "id": "srv-f1", "request_id": "req-x", "sender_id": FARMER_ID,
            "content": "Rate is 2100", "created_at": T0.isoformat(),
        })

        assert entry.status == SENT
        assert entry.created_at == T0
        assert len(outbox.entries) == 1


class TestOrdering:
    """Test chronological ordering of mixed local and server entries."""

    @pytest.mark.asyncio
    async def test_failed_entry_keeps_its_position(self):
        transport = ScriptedTransport(failures=1)
        outbox = OptimisticOutbox(transport, sender_id=BUYER_ID, clock=StepClock())

        failed = await outbox.send("first")
        outbox.ingest({"id": "srv-late", "sender_id": FARMER_ID, "content": "reply",
                       "created_at": T0 + timedelta(hours=1)})

        ordered = outbox.ordered()
        assert [e.id for e in ordered] == [failed.local_id, "srv-late"]
        assert outbox.snapshot() == {failed.local_id: FAILED, "srv-late": SENT}

    @pytest.mark.asyncio
    async def test_retried_entry_keeps_its_position(self):
        # Arrange: "first" fails, then the farmer's reply arrives
        transport = ScriptedTransport(failures=1)
        outbox = OptimisticOutbox(transport, sender_id=BUYER_ID, clock=StepClock())
        failed = await outbox.send("first")
        outbox.ingest({"id": "srv-late", "sender_id": FARMER_ID, "content": "reply",
                       "created_at": T0 + timedelta(seconds=30)})

        # Act: the server stamps the retried message after the reply
        retried = await outbox.retry_send(failed.local_id)

        # Assert
        assert retried.created_at > T0 + timedelta(seconds=30)
        assert [(e.content, e.status) for e in outbox.ordered()] == [("first", SENT), ("reply", SENT)]

    def test_order_breaks_ties_by_id(self):
        entries = [
            LocalMessage(local_id="b", request_id=None, content="", created_at=T0, status=SENDING),
            LocalMessage(local_id="a", request_id=None, content="", created_at=T0.replace(tzinfo=None)),
        ]

        assert [e.id for e in order_messages(entries)] == ["a", "b"]


class TestOutboxAgainstService:
    """Test retries against the real messaging service."""

    @pytest.mark.asyncio
    async def test_lost_response_retry_yields_one_row(self, async_db_session, hub, notifier):
        # Arrange: the first attempt is stored but its response is lost
        conversation = await AsyncConversationStore.find_or_create_conversation(
            async_db_session, BUYER_ID, FARMER_ID
        )
        attempts = []

        async def transport(content, request_id):
            message, _ = await AsyncMessagingService.send_message(
                async_db_session, conversation.id, BUYER_ID, content,
                request_id=request_id, hub=hub, notifier=notifier,
            )
            attempts.append(message.id)
            if len(attempts) == 1:
                raise TimeoutError("response lost")
            return message

        outbox = OptimisticOutbox(transport, sender_id=BUYER_ID)

        # Act
        failed = await outbox.send("20 bags at 1800?")
        confirmed = await outbox.retry_send(failed.local_id)

        # Assert
        assert confirmed.status == SENT
        assert attempts[0] == attempts[1] == confirmed.server_id
        count = (await async_db_session.execute(select(func.count(Message.id)))).scalar_one()
        assert count == 1
        assert len(outbox.entries) == 1
