"""Unit tests for typing debounce, receiver TTL and the signaler."""

import asyncio

import pytest

from app.services.realtime import typing_topic
from app.services.typing_signal import TypingDebouncer, TypingIndicators, TypingSignaler
from tests.factories import BUYER_ID, FARMER_ID, drain


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestTypingDebouncer:
    """Test sender-side edges."""

    def test_emits_true_once_then_false_after_idle(self):
        clock = FakeClock()
        emitted = []
        debouncer = TypingDebouncer(emitted.append, idle_seconds=2, clock=clock)

        debouncer.keystroke()
        clock.advance(1)
        debouncer.keystroke()
        clock.advance(1)
        debouncer.tick()
        assert emitted == [True]

        clock.advance(2)
        debouncer.tick()
        assert emitted == [True, False]
        assert debouncer.is_typing is False

    def test_sent_stops_immediately(self):
        emitted = []
        debouncer = TypingDebouncer(emitted.append, idle_seconds=2, clock=FakeClock())

        debouncer.keystroke()
        debouncer.sent()
        debouncer.sent()

        assert emitted == [True, False]

    @pytest.mark.asyncio
    async def test_idle_check_is_scheduled_on_running_loop(self):
        emitted = []
        debouncer = TypingDebouncer(emitted.append, idle_seconds=0.01)

        debouncer.keystroke()
        await asyncio.sleep(0.05)

        assert emitted == [True, False]


class TestTypingIndicators:
    """Test receiver-side expiry."""

    def test_indicator_expires_after_ttl(self):
        clock = FakeClock()
        indicators = TypingIndicators(ttl_seconds=5, clock=clock)

        indicators.apply(FARMER_ID, True)
        clock.advance(4)
        assert indicators.active() == [FARMER_ID]

        clock.advance(2)
        assert indicators.is_typing(FARMER_ID) is False

    def test_false_edge_clears_indicator(self):
        indicators = TypingIndicators(ttl_seconds=5, clock=FakeClock())

        indicators.apply_event({"data": {"user_id": BUYER_ID, "is_typing": True}})
        indicators.apply_event({"user_id": BUYER_ID, "is_typing": False})

        assert indicators.active() == []


class TestTypingSignaler:
    """Test publishing to the conversation's typing topic."""

    @pytest.mark.asyncio
    async def test_send_typing_publishes(self, hub):
        queue = hub.open_queue(typing_topic("conv-1"))

        await TypingSignaler(hub).send_typing("conv-1", FARMER_ID, True)

        events = drain(queue)
        assert events[0]["type"] == "typing"
        assert events[0]["data"] == {"conversation_id": "conv-1", "user_id": FARMER_ID, "is_typing": True}

    @pytest.mark.asyncio
    async def test_send_typing_without_subscribers_is_silent(self, hub):
        await TypingSignaler(hub).send_typing("conv-2", FARMER_ID, False)
