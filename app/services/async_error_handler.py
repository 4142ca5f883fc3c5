"""
Async error handling utilities for database operations.

This module classifies storage errors into the messaging error taxonomy,
provides retry logic with exponential backoff for transient failures, and
a transaction context manager that rolls back on error.
"""

import asyncio
import logging
import random
from typing import Any, Callable, Dict
from functools import wraps
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import (
    SQLAlchemyError,
    IntegrityError,
    OperationalError,
    DisconnectionError,
    TimeoutError as SQLTimeoutError,
    StatementError,
    DataError,
    DatabaseError
)
import asyncpg

from app.core.exceptions import MessagingError, Transient

logger = logging.getLogger(__name__)


class AsyncErrorHandler:
    """
    Error classifier for database operations.

    Maps SQLAlchemy and asyncpg errors to a retryable flag and a short
    description used in logs and `Transient` errors.
    """

    # Order matters: subclasses before DatabaseError
    ERROR_MAPPINGS = {
        IntegrityError: {
            'detail': 'Data integrity constraint violation',
            'retryable': False
        },
        OperationalError: {
            'detail': 'Database operation failed',
            'retryable': True
        },
        DisconnectionError: {
            'detail': 'Database connection lost',
            'retryable': True
        },
        SQLTimeoutError: {
            'detail': 'Database operation timed out',
            'retryable': True
        },
        StatementError: {
            'detail': 'Invalid database query',
            'retryable': False
        },
        DataError: {
            'detail': 'Invalid data format',
            'retryable': False
        },
        DatabaseError: {
            'detail': 'Database error occurred',
            'retryable': False
        }
    }

    @classmethod
    def classify_error(cls, error: Exception) -> Dict[str, Any]:
        """
        Classify an error and return its description and retryable flag.

        Args:
            error: The exception that occurred

        Returns:
            Dictionary with detail and retryable flag
        """
        if isinstance(error, MessagingError):
            return {'detail': error.detail, 'retryable': error.retryable}

        for exc_type, mapping in cls.ERROR_MAPPINGS.items():
            if isinstance(error, exc_type):
                return mapping.copy()

        if isinstance(error, asyncpg.PostgresError):
            return cls._handle_postgres_error(error)

        if isinstance(error, (ConnectionError, asyncio.TimeoutError)):
            return {'detail': 'Connection to storage failed', 'retryable': True}

        return {
            'detail': 'An unexpected database error occurred',
            'retryable': False
        }

    @classmethod
    def _handle_postgres_error(cls, error: asyncpg.PostgresError) -> Dict[str, Any]:
        """Handle PostgreSQL-specific errors from asyncpg."""
        if isinstance(error, (asyncpg.ConnectionDoesNotExistError,
                              asyncpg.ConnectionFailureError)):
            return {'detail': 'Database connection failed', 'retryable': True}

        if isinstance(error, asyncpg.UniqueViolationError):
            return {'detail': 'Unique constraint violation', 'retryable': False}

        if isinstance(error, asyncpg.ForeignKeyViolationError):
            return {'detail': 'Foreign key constraint violation', 'retryable': False}

        return {
            'detail': f'PostgreSQL error: {error.sqlstate}',
            'retryable': False
        }

    @classmethod
    def is_retryable(cls, error: Exception) -> bool:
        """Check if an error is retryable."""
        return cls.classify_error(error).get('retryable', False)

    @classmethod
    def to_domain_error(cls, error: Exception, operation_name: str = "database operation") -> Exception:
        """
        Translate a storage error into the messaging taxonomy.

        Retryable errors become `Transient`; anything else is returned
        unchanged so it propagates with its original type.
        """
        if isinstance(error, MessagingError):
            return error

        error_info = cls.classify_error(error)
        if error_info['retryable']:
            logger.warning(f"Retryable error in {operation_name}: {error}")
            return Transient(f"{error_info['detail']} during {operation_name}", original_error=error)

        logger.error(f"Non-retryable error in {operation_name}: {error}")
        return error


class AsyncRetryManager:
    """
    Retry manager for async database operations.

    Provides configurable retry logic with exponential backoff
    for transient database errors.
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate delay for a retry attempt.

        Args:
            attempt: Current attempt number (0-based)

        Returns:
            Delay in seconds
        """
        delay = self.base_delay * (self.exponential_base ** attempt)
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)  # Add 0-50% jitter

        return delay

    async def execute_with_retry(
        self,
        operation: Callable,
        *args,
        **kwargs
    ) -> Any:
        """
        Execute an operation with retry logic.

        Only retryable errors are retried; everything else is raised on the
        first failure.
        """
        for attempt in range(self.max_retries + 1):
            try:
                return await operation(*args, **kwargs)
            except Exception as e:
                if not AsyncErrorHandler.is_retryable(e):
                    raise

                if attempt == self.max_retries:
                    logger.error(f"All retry attempts failed. Last error: {e}")
                    raise

                delay = self.calculate_delay(attempt)
                logger.warning(f"Attempt {attempt + 1} failed, retrying in {delay:.2f}s: {e}")
                await asyncio.sleep(delay)


def handle_async_db_errors(operation_name: str = "database operation"):
    """
    Decorator translating storage errors raised by a service coroutine.

    Domain errors pass through untouched; retryable storage errors surface
    as `Transient`.
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except MessagingError:
                raise
            except (SQLAlchemyError, asyncpg.PostgresError, ConnectionError) as e:
                raise AsyncErrorHandler.to_domain_error(e, operation_name) from e
        return wrapper
    return decorator


@asynccontextmanager
async def async_transaction_rollback(db: AsyncSession):
    """
    Context manager committing on success and rolling back on error.

    Usage:
        async with async_transaction_rollback(db) as session:
            # Perform database operations
    """
    try:
        yield db
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.error(f"Transaction rolled back due to error: {e}")
        raise
