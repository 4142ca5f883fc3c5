from sqlalchemy import Column, ForeignKey, String, Text, Boolean, DateTime, UniqueConstraint, Index
from sqlalchemy.orm import relationship

from app.db.base_class import Base, utcnow


class Conversation(Base):
    __tablename__ = "conversations"

    subject = Column(String(255))
    # "<min_user_id>:<max_user_id>", one row per pair of users
    conversation_key = Column(String(160), nullable=False, unique=True)
    last_message = Column(Text)
    last_activity_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    participants = relationship(
        "ConversationParticipant",
        back_populates="conversation",
        lazy="selectin",
        cascade="all, delete-orphan",
    )


class ConversationParticipant(Base):
    __tablename__ = "conversation_participants"

    conversation_id = Column(String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(64), nullable=False, index=True)
    joined_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    is_pinned = Column(Boolean, nullable=False, default=False)
    hidden_at = Column(DateTime(timezone=True))

    conversation = relationship("Conversation", back_populates="participants")

    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_participant_conversation_user"),
        Index("ix_participant_user_hidden", "user_id", "hidden_at"),
    )
