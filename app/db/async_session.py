from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import text
from typing import AsyncGenerator, Optional, Dict, Any
import logging
import asyncio
import time
from datetime import datetime, timezone
from contextlib import asynccontextmanager

from app.core.config import settings
from app.utils.logger import db_logger

logger = logging.getLogger(__name__)


class AsyncDatabaseManager:
    """
    Manages async database connections and sessions.

    This class provides centralized management of async database connections,
    including connection pooling, session lifecycle management, and proper
    cleanup of resources.
    """

    def __init__(self, database_url: Optional[str] = None):
        self.async_engine = None
        self.async_session_factory = None
        self._is_initialized = False
        self._initialize_engine(database_url or settings.async_database_url)

    def _initialize_engine(self, async_db_url: str):
        """Initialize the async database engine."""
        try:
            if not async_db_url:
                raise ValueError("Async database URL is not configured")

            # Replace any escaped colons in the URL
            async_db_url = async_db_url.replace("\\x3a", ":")

            logger.info(f"Initializing async database engine with URL: {async_db_url[:50]}...")
            logger.info(f"Environment: {settings.ENVIRONMENT}")

            engine_kwargs: Dict[str, Any] = {
                "echo": settings.ASYNC_DB_ECHO,
                "pool_pre_ping": settings.ASYNC_DB_POOL_PRE_PING,
            }

            if async_db_url.startswith("postgresql+asyncpg"):
                pool_size = settings.ASYNC_DB_POOL_SIZE
                max_overflow = settings.ASYNC_DB_MAX_OVERFLOW
                if settings.ENVIRONMENT == "development":
                    pool_size = min(pool_size, 5)
                    max_overflow = min(max_overflow, 5)

                logger.info(f"Pool configuration - Size: {pool_size}, Max Overflow: {max_overflow}, "
                            f"Timeout: {settings.ASYNC_DB_POOL_TIMEOUT}s, Recycle: {settings.ASYNC_DB_POOL_RECYCLE}s")

                engine_kwargs.update(
                    pool_size=pool_size,
                    max_overflow=max_overflow,
                    pool_recycle=settings.ASYNC_DB_POOL_RECYCLE,
                    pool_timeout=settings.ASYNC_DB_POOL_TIMEOUT,
                    connect_args={
                        "server_settings": {
                            "application_name": "kisanmandi_messaging",
                            "statement_timeout": str(settings.ASYNC_DB_STATEMENT_TIMEOUT),
                            "idle_in_transaction_session_timeout": str(settings.ASYNC_DB_IDLE_TIMEOUT),
                        },
                        "command_timeout": settings.ASYNC_DB_COMMAND_TIMEOUT,
                    },
                )

            self.async_engine = create_async_engine(async_db_url, **engine_kwargs)

            self.async_session_factory = async_sessionmaker(
                bind=self.async_engine,
                class_=AsyncSession,
                expire_on_commit=False,  # Keep objects accessible after commit
                autoflush=False,
            )

            self._is_initialized = True
            logger.info("Async database engine initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize async database engine: {e}")
            raise

    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get an async database session with proper lifecycle management.

        Rolls back on any exception and always closes the session.
        """
        if not self._is_initialized:
            raise RuntimeError("AsyncDatabaseManager is not initialized")

        async with self.async_session_factory() as session:
            try:
                yield session
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Database error in session: {e}")
                raise
            except Exception as e:
                await session.rollback()
                logger.error(f"Unexpected error in database session: {e}")
                raise
            finally:
                await session.close()

    @asynccontextmanager
    async def session_scope(self) -> AsyncGenerator[AsyncSession, None]:
        """Standalone session for work outside a request (notifications, sweeps)."""
        async for session in self.get_async_session():
            yield session

    async def test_connection(self) -> bool:
        """Test the database connection."""
        try:
            async with self.async_engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database connection test failed: {e}")
            return False

    async def get_connection_info(self) -> dict:
        """Get connection pool information."""
        if not self.async_engine:
            return {"status": "not_initialized"}

        pool = self.async_engine.pool
        info = {"pool_class": type(pool).__name__}
        for attr in ("size", "checkedin", "checkedout", "overflow"):
            getter = getattr(pool, attr, None)
            if callable(getter):
                info[attr] = getter()
        return info

    async def close(self):
        """Dispose of the engine and all pooled connections."""
        if self.async_engine:
            await self.async_engine.dispose()
            logger.info("Async database engine disposed")
        self._is_initialized = False


# Global database manager instance
_async_db_manager: Optional[AsyncDatabaseManager] = None
_manager_lock = asyncio.Lock()


async def get_async_db_manager() -> AsyncDatabaseManager:
    """
    Get or create the global async database manager instance.

    Returns:
        AsyncDatabaseManager: The global database manager instance
    """
    global _async_db_manager

    if _async_db_manager is None:
        async with _manager_lock:
            # Double-check locking pattern
            if _async_db_manager is None:
                _async_db_manager = AsyncDatabaseManager()
                logger.info("Created new AsyncDatabaseManager singleton instance")

    return _async_db_manager


def set_async_db_manager(manager: Optional[AsyncDatabaseManager]) -> None:
    """Install a manager instance (used by tests and alternate entry points)."""
    global _async_db_manager
    _async_db_manager = manager


# Async dependency injection function for FastAPI
async def get_async_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for async database session injection.

    The session is automatically:
    - Created from the connection pool
    - Rolled back on any exception
    - Closed after use to prevent connection leaks
    """
    try:
        manager = await get_async_db_manager()
        async for session in manager.get_async_session():
            yield session
    except Exception as e:
        logger.error(f"Failed to provide async database session: {e}")
        raise


# Database startup and shutdown handlers
async def startup_async_database():
    """Initialize async database connections on application startup."""
    try:
        logger.info("Starting async database initialization...")
        manager = await get_async_db_manager()

        connection_test = await manager.test_connection()
        if not connection_test:
            raise RuntimeError("Failed to establish database connection during startup")

        pool_info = await manager.get_connection_info()
        db_logger.success("Async database ready", "STARTUP", **pool_info)

    except Exception as e:
        logger.error(f"Failed to initialize async database during startup: {e}")
        raise


async def shutdown_async_database():
    """Clean up async database connections on application shutdown."""
    global _async_db_manager
    try:
        logger.info("Starting async database shutdown...")
        if _async_db_manager is not None:
            await _async_db_manager.close()
            _async_db_manager = None
        logger.info("Async database shutdown completed successfully")
    except Exception as e:
        logger.error(f"Error during async database shutdown: {e}")


async def check_async_database_health() -> dict:
    """
    Health check of the async database connection.

    Returns:
        dict: Health check results with status and details
    """
    start_time = time.time()
    health_status = {
        "status": "unhealthy",
        "connection_test": False,
        "pool_info": {},
        "response_time_ms": 0,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error": None
    }

    try:
        manager = await get_async_db_manager()

        connection_test = await manager.test_connection()
        health_status["connection_test"] = connection_test

        if not connection_test:
            health_status["error"] = "Database connection test failed"
            return health_status

        health_status["pool_info"] = await manager.get_connection_info()
        health_status["status"] = "healthy"

    except Exception as e:
        health_status["error"] = str(e)
        db_logger.error("Database health check failed", "HEALTH", error=str(e))
    finally:
        health_status["response_time_ms"] = round((time.time() - start_time) * 1000, 2)

    return health_status
