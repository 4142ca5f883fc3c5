import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, String
from sqlalchemy.orm import as_declarative, declared_attr


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@as_declarative()
class Base:
    """Base class for all database models."""

    __name__: str

    # Generate tablename automatically
    @declared_attr
    def __tablename__(cls) -> str:
        """Generate database table name automatically."""
        return cls.__name__.lower()

    # Common columns for all models
    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
