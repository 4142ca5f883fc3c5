"""
Async test configuration and fixtures for pytest.

Each test gets its own SQLite file (via aiosqlite) with tables created from
the model metadata, so tests can open several independent sessions against
the same database.
"""

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app import models  # noqa: F401
from app.main import app
from app.db.async_session import AsyncDatabaseManager, get_async_db, set_async_db_manager
from app.db.base_class import Base
from app.models.user_profile import UserProfile
from app.services.notification import get_notification_sink
from app.services.realtime import RealtimeHub, get_realtime_hub
from tests.factories import BUYER_ID, FARMER_ID, OTHER_BUYER_ID, RecordingNotificationSink


@pytest.fixture
def async_test_db_url(tmp_path) -> str:
    """Get the async test database URL."""
    return f"sqlite+aiosqlite:///{tmp_path / 'test_async.db'}"


@pytest_asyncio.fixture
async def async_engine(async_test_db_url):
    """Create an async SQLAlchemy engine with all tables."""
    engine = create_async_engine(async_test_db_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    return async_sessionmaker(
        bind=async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def async_db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create an async SQLAlchemy session for tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def hub() -> RealtimeHub:
    return RealtimeHub()


@pytest.fixture
def notifier() -> RecordingNotificationSink:
    return RecordingNotificationSink()


@pytest_asyncio.fixture
async def profiles(async_db_session):
    """Farmer and buyers known to the account projection."""
    rows = [
        UserProfile(id=FARMER_ID, full_name="Ramesh Patil", role="farmer", district="Nashik", state="Maharashtra"),
        UserProfile(id=BUYER_ID, full_name="Anita Traders", role="buyer", district="Pune", state="Maharashtra"),
        UserProfile(id=OTHER_BUYER_ID, full_name="Gupta Wholesale", role="buyer", district="Indore",
                    state="Madhya Pradesh"),
    ]
    async_db_session.add_all(rows)
    await async_db_session.commit()
    return {row.id: row for row in rows}


@pytest_asyncio.fixture
async def db_manager(async_test_db_url, async_engine):
    """Install a database manager pointing at the test database."""
    manager = AsyncDatabaseManager(async_test_db_url)
    set_async_db_manager(manager)
    yield manager
    await manager.close()
    set_async_db_manager(None)


@pytest_asyncio.fixture
async def async_client(session_factory, hub, notifier):
    """Create a FastAPI test client with the database, hub and sink overridden."""

    async def override_get_async_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_async_db] = override_get_async_db
    app.dependency_overrides[get_realtime_hub] = lambda: hub
    app.dependency_overrides[get_notification_sink] = lambda: notifier

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    # Clear dependency overrides
    app.dependency_overrides = {}
