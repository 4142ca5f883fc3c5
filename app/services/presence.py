"""
Presence tracking.

The persisted record keeps only the latest value per user. Effective
presence treats an online record whose heartbeat is older than the stale
threshold as offline, so a crashed client cannot stay online forever.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.db.base_class import as_utc, utcnow
from app.db.upsert import upsert_insert
from app.models.presence import UserPresence
from app.services.realtime import PRESENCE_TOPIC, RealtimeHub, hub as default_hub
from app.utils.logger import presence_logger

logger = logging.getLogger(__name__)


def is_online(record: Optional[UserPresence], now: Optional[datetime] = None,
              stale_seconds: Optional[int] = None) -> bool:
    """Effective presence of a stored record."""
    if record is None or not record.is_online or record.last_seen_at is None:
        return False
    now = as_utc(now) if now else utcnow()
    threshold = stale_seconds if stale_seconds is not None else settings.PRESENCE_STALE_SECONDS
    return now - as_utc(record.last_seen_at) <= timedelta(seconds=threshold)


def presence_view(user_id: str, record: Optional[UserPresence], now: Optional[datetime] = None) -> Dict:
    return {
        "user_id": user_id,
        "is_online": is_online(record, now),
        "last_seen_at": as_utc(record.last_seen_at) if record else None,
    }


class AsyncPresenceService:
    """Persisted presence operations."""

    @staticmethod
    async def get_record(db: AsyncSession, user_id: str) -> Optional[UserPresence]:
        result = await db.execute(select(UserPresence).where(UserPresence.user_id == user_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def touch_presence(
        db: AsyncSession,
        user_id: str,
        is_online_now: bool = True,
        hub: Optional[RealtimeHub] = None,
    ) -> UserPresence:
        """
        Upsert the user's presence and publish `presence.changed` when the
        effective state flips.
        """
        now = utcnow()
        previous = await AsyncPresenceService.get_record(db, user_id)
        was_online = is_online(previous, now)

        insert_stmt = upsert_insert(db, UserPresence)
        if insert_stmt is not None:
            stmt = insert_stmt.values(
                user_id=user_id, is_online=is_online_now, last_seen_at=now, created_at=now
            ).on_conflict_do_update(
                index_elements=["user_id"],
                set_={"is_online": is_online_now, "last_seen_at": now},
            )
            await db.execute(stmt)
        elif previous is None:
            db.add(UserPresence(user_id=user_id, is_online=is_online_now, last_seen_at=now))
        else:
            previous.is_online = is_online_now
            previous.last_seen_at = now
        await db.commit()

        result = await db.execute(
            select(UserPresence)
            .where(UserPresence.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one()

        if was_online != is_online_now:
            presence_logger.info(
                f"User {'online' if is_online_now else 'offline'}", user_id=user_id
            )
            await (hub or default_hub).publish(
                PRESENCE_TOPIC, "presence.changed", presence_view(user_id, record, now)
            )
        return record

    @staticmethod
    async def get_presence(db: AsyncSession, user_ids: Iterable[str]) -> Dict[str, Dict]:
        """Effective presence for each id; unknown users read as offline."""
        ids = list(set(user_ids))
        if not ids:
            return {}
        result = await db.execute(select(UserPresence).where(UserPresence.user_id.in_(ids)))
        records = {record.user_id: record for record in result.scalars().all()}
        now = utcnow()
        return {user_id: presence_view(user_id, records.get(user_id), now) for user_id in ids}


class PresenceRoster:
    """
    Per-process roster of users joined to the presence channel.

    A user may hold several connections (tabs, devices); they stay on the
    roster until the last one leaves. Joins and heartbeats refresh a user's
    entry; entries older than the stale threshold are dropped by
    `expire_stale`, emitting leave events.
    """

    def __init__(self, hub: Optional[RealtimeHub] = None, stale_seconds: Optional[int] = None):
        self._hub = hub
        self.stale_seconds = stale_seconds if stale_seconds is not None else settings.PRESENCE_STALE_SECONDS
        # user_id -> last heartbeat
        self._members: Dict[str, datetime] = {}
        # user_id -> open connections
        self._connections: Dict[str, int] = {}

    @property
    def hub(self) -> RealtimeHub:
        return self._hub or default_hub

    def members(self) -> List[str]:
        return sorted(self._members)

    def connection_count(self, user_id: str) -> int:
        return self._connections.get(user_id, 0)

    async def join(self, user_id: str, now: Optional[datetime] = None) -> List[str]:
        """Add a connection for the user and return the roster as seen after the join."""
        newly_joined = user_id not in self._members
        self._members[user_id] = now or utcnow()
        self._connections[user_id] = self.connection_count(user_id) + 1
        if newly_joined:
            await self.hub.publish(PRESENCE_TOPIC, "presence.join", {"user_id": user_id})
        return self.members()

    def heartbeat(self, user_id: str, now: Optional[datetime] = None) -> None:
        if user_id in self._members:
            self._members[user_id] = now or utcnow()

    async def leave(self, user_id: str) -> bool:
        """Close one connection; returns True when the user left the roster."""
        remaining = self.connection_count(user_id) - 1
        if remaining > 0:
            self._connections[user_id] = remaining
            return False
        return await self._drop(user_id)

    async def _drop(self, user_id: str) -> bool:
        self._connections.pop(user_id, None)
        if self._members.pop(user_id, None) is None:
            return False
        await self.hub.publish(PRESENCE_TOPIC, "presence.leave", {"user_id": user_id})
        return True

    async def expire_stale(self, now: Optional[datetime] = None) -> List[str]:
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.stale_seconds)
        stale = [user_id for user_id, seen in self._members.items() if seen < cutoff]
        for user_id in stale:
            await self._drop(user_id)
        if stale:
            logger.info(f"Expired stale presence for {len(stale)} users")
        return stale


roster = PresenceRoster()
