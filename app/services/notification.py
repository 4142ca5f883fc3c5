"""
Notification sink and the in-app notification inbox.

Business transitions call `notify_safely`, which never raises: a failed
notification is logged and the transition stands.
"""

import logging
from typing import Any, Callable, List, Optional, Protocol

from sqlalchemy import select, update, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFound
from app.db.async_session import get_async_db_manager
from app.models.notification import Notification
from app.services.async_error_handler import AsyncRetryManager, async_transaction_rollback
from app.utils.logger import chat_logger

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20


class NotificationSink(Protocol):
    async def notify(
        self,
        user_id: str,
        title: str,
        body: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> None:
        ...


class DatabaseNotificationSink:
    """
    Persists notifications in their own session so a failure can never roll
    back the caller's unit of work.
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        retry_manager: Optional[AsyncRetryManager] = None,
    ):
        self._session_factory = session_factory
        self._retry = retry_manager or AsyncRetryManager(max_retries=2, base_delay=0.2, max_delay=1.0)

    async def _open_session(self) -> AsyncSession:
        if self._session_factory is not None:
            return self._session_factory()
        manager = await get_async_db_manager()
        return manager.async_session_factory()

    async def notify(
        self,
        user_id: str,
        title: str,
        body: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> None:
        await self._retry.execute_with_retry(self._store, user_id, title, body, entity_type, entity_id)

    async def _store(self, user_id, title, body, entity_type, entity_id) -> None:
        session = await self._open_session()
        async with session:
            session.add(Notification(
                user_id=user_id,
                title=title,
                body=body,
                entity_type=entity_type,
                entity_id=entity_id,
                is_read=False,
            ))
            await session.commit()


class LoggingNotificationSink:
    """Writes notifications to the chat log only."""

    async def notify(
        self,
        user_id: str,
        title: str,
        body: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> None:
        chat_logger.info(f"Notify {user_id}: {title}", "NOTIFY", body=body, entity=f"{entity_type}:{entity_id}")


_default_sink: NotificationSink = LoggingNotificationSink()


def get_notification_sink() -> NotificationSink:
    """FastAPI dependency returning the configured sink."""
    return _default_sink


def set_notification_sink(sink: NotificationSink) -> None:
    global _default_sink
    _default_sink = sink


async def notify_safely(
    sink: Optional[NotificationSink],
    user_id: str,
    title: str,
    body: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
) -> bool:
    """Deliver one notification; returns False (after logging) on failure."""
    sink = sink or get_notification_sink()
    try:
        await sink.notify(user_id, title, body, entity_type, entity_id)
        return True
    except Exception as e:
        logger.error(f"Notification to {user_id} failed ({title}): {e}")
        return False


class AsyncNotificationService:
    """Inbox operations for the current user."""

    @staticmethod
    async def list_notifications(
        db: AsyncSession,
        user_id: str,
        limit: int = DEFAULT_PAGE_SIZE,
        unread_only: bool = False,
    ) -> List[Notification]:
        query = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            query = query.where(Notification.is_read.is_(False))
        query = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)

        result = await db.execute(query)
        return list(result.scalars().all())

    @staticmethod
    async def get_unread_count(db: AsyncSession, user_id: str) -> int:
        result = await db.execute(
            select(func.count(Notification.id)).where(
                and_(Notification.user_id == user_id, Notification.is_read.is_(False))
            )
        )
        return result.scalar_one()

    @staticmethod
    async def mark_read(db: AsyncSession, notification_id: str, user_id: str) -> Notification:
        result = await db.execute(
            select(Notification).where(
                and_(Notification.id == notification_id, Notification.user_id == user_id)
            )
        )
        notification = result.scalar_one_or_none()
        if notification is None:
            raise NotFound("notification", notification_id)

        if not notification.is_read:
            notification.is_read = True
            await db.commit()
            await db.refresh(notification)
        return notification

    @staticmethod
    async def mark_all_read(db: AsyncSession, user_id: str) -> int:
        async with async_transaction_rollback(db):
            result = await db.execute(
                update(Notification)
                .where(and_(Notification.user_id == user_id, Notification.is_read.is_(False)))
                .values(is_read=True)
            )
        return result.rowcount or 0
