from sqlalchemy import Column, String, Text, Boolean, Index

from app.db.base_class import Base


class Notification(Base):
    __tablename__ = "notifications"

    user_id = Column(String(64), nullable=False)
    title = Column(String(200), nullable=False)
    body = Column(Text)
    entity_type = Column(String(50))
    entity_id = Column(String(64))
    is_read = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_notifications_user_created", "user_id", "created_at"),
    )
