from sqlalchemy import Column, String, Boolean, DateTime

from app.db.base_class import Base, utcnow


class UserPresence(Base):
    """Latest presence value per user."""
    __tablename__ = "user_presence"

    user_id = Column(String(64), nullable=False, unique=True, index=True)
    is_online = Column(Boolean, nullable=False, default=False)
    last_seen_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
