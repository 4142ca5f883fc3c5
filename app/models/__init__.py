"""Database models."""

# Import all models here to ensure they're recognized by SQLAlchemy
from app.models.conversation import Conversation, ConversationParticipant
from app.models.message import Message
from app.models.notification import Notification
from app.models.offer import Offer, Payment
from app.models.presence import UserPresence
from app.models.user_profile import UserProfile

__all__ = [
    "Conversation",
    "ConversationParticipant",
    "Message",
    "Notification",
    "Offer",
    "Payment",
    "UserPresence",
    "UserProfile",
]
