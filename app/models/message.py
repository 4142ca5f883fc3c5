from sqlalchemy import Column, ForeignKey, String, Text, DateTime, CheckConstraint, UniqueConstraint, Index

from app.db.base_class import Base


class Message(Base):
    __tablename__ = "messages"

    conversation_id = Column(String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    sender_id = Column(String(64), nullable=False)
    content = Column(Text)
    message_type = Column(String(20), nullable=False, default="text")
    offer_id = Column(String(36), ForeignKey("offers.id", ondelete="SET NULL"), nullable=True)
    # Client idempotency key
    request_id = Column(String(64), nullable=True)
    delivered_at = Column(DateTime(timezone=True))
    seen_at = Column(DateTime(timezone=True))
    read_at = Column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint("message_type IN ('text', 'offer', 'system', 'payment')", name="valid_message_type"),
        UniqueConstraint("sender_id", "request_id", name="uq_message_sender_request"),
        Index("ix_messages_conversation_created", "conversation_id", "created_at", "id"),
        Index("ix_messages_conversation_unread", "conversation_id", "read_at"),
    )
