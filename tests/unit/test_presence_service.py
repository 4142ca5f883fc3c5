"""Async unit tests for persisted presence and the in-memory roster."""

from datetime import timedelta

import pytest
from sqlalchemy import select, func

from app.db.base_class import utcnow
from app.models.presence import UserPresence
from app.services.presence import AsyncPresenceService, PresenceRoster, is_online
from app.services.realtime import PRESENCE_TOPIC
from tests.factories import BUYER_ID, FARMER_ID, drain


class TestEffectivePresence:
    """Test the stale threshold."""

    def test_recent_heartbeat_is_online(self):
        now = utcnow()
        record = UserPresence(user_id=FARMER_ID, is_online=True, last_seen_at=now - timedelta(seconds=119))

        assert is_online(record, now, stale_seconds=120) is True

    def test_stale_heartbeat_is_offline(self):
        now = utcnow()
        record = UserPresence(user_id=FARMER_ID, is_online=True, last_seen_at=now - timedelta(seconds=121))

        assert is_online(record, now, stale_seconds=120) is False

    def test_offline_record_and_missing_record(self):
        now = utcnow()
        record = UserPresence(user_id=FARMER_ID, is_online=False, last_seen_at=now)

        assert is_online(record, now) is False
        assert is_online(None, now) is False


class TestTouchPresence:
    """Test the presence upsert."""

    @pytest.mark.asyncio
    async def test_touch_keeps_single_row(self, async_db_session, hub):
        await AsyncPresenceService.touch_presence(async_db_session, FARMER_ID, True, hub=hub)
        await AsyncPresenceService.touch_presence(async_db_session, FARMER_ID, True, hub=hub)
        record = await AsyncPresenceService.touch_presence(async_db_session, FARMER_ID, False, hub=hub)

        count = (await async_db_session.execute(
            select(func.count(UserPresence.id)).where(UserPresence.user_id == FARMER_ID)
        )).scalar_one()
        assert count == 1
        assert record.is_online is False

    @pytest.mark.asyncio
    async def test_publishes_only_on_flip(self, async_db_session, hub):
        queue = hub.open_queue(PRESENCE_TOPIC)

        await AsyncPresenceService.touch_presence(async_db_session, FARMER_ID, True, hub=hub)
        await AsyncPresenceService.touch_presence(async_db_session, FARMER_ID, True, hub=hub)
        await AsyncPresenceService.touch_presence(async_db_session, FARMER_ID, False, hub=hub)

        events = drain(queue)
        assert [e["type"] for e in events] == ["presence.changed", "presence.changed"]
        assert [e["data"]["is_online"] for e in events] == [True, False]

    @pytest.mark.asyncio
    async def test_get_presence_defaults_unknown_to_offline(self, async_db_session, hub):
        await AsyncPresenceService.touch_presence(async_db_session, FARMER_ID, True, hub=hub)

        presence = await AsyncPresenceService.get_presence(async_db_session, [FARMER_ID, BUYER_ID])

        assert presence[FARMER_ID]["is_online"] is True
        assert presence[BUYER_ID] == {"user_id": BUYER_ID, "is_online": False, "last_seen_at": None}


class TestPresenceRoster:
    """Test join, leave and stale expiry on the roster."""

    @pytest.mark.asyncio
    async def test_join_and_leave_publish_events(self, hub):
        roster = PresenceRoster(hub=hub, stale_seconds=120)
        queue = hub.open_queue(PRESENCE_TOPIC)

        assert await roster.join(FARMER_ID) == [FARMER_ID]
        assert await roster.join(BUYER_ID) == [BUYER_ID, FARMER_ID]
        await roster.join(BUYER_ID)
        assert await roster.leave(FARMER_ID) is True
        assert await roster.leave(FARMER_ID) is False

        events = [(e["type"], e["data"]["user_id"]) for e in drain(queue)]
        assert events == [
            ("presence.join", FARMER_ID),
            ("presence.join", BUYER_ID),
            ("presence.leave", FARMER_ID),
        ]

    @pytest.mark.asyncio
    async def test_expire_stale_drops_silent_members(self, hub):
        roster = PresenceRoster(hub=hub, stale_seconds=120)
        start = utcnow()
        await roster.join(FARMER_ID, now=start)
        await roster.join(BUYER_ID, now=start)
        roster.heartbeat(BUYER_ID, now=start + timedelta(seconds=100))

        expired = await roster.expire_stale(now=start + timedelta(seconds=150))

        assert expired == [FARMER_ID]
        assert roster.members() == [BUYER_ID]

    @pytest.mark.asyncio
    async def test_user_stays_until_last_connection_leaves(self, hub):
        roster = PresenceRoster(hub=hub, stale_seconds=120)
        queue = hub.open_queue(PRESENCE_TOPIC)

        await roster.join(FARMER_ID)
        await roster.join(FARMER_ID)

        assert roster.connection_count(FARMER_ID) == 2
        assert await roster.leave(FARMER_ID) is False
        assert roster.members() == [FARMER_ID]
        assert await roster.leave(FARMER_ID) is True
        assert roster.members() == []
        assert [e["type"] for e in drain(queue)] == ["presence.join", "presence.leave"]
