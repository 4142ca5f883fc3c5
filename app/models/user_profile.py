from sqlalchemy import Column, String, CheckConstraint

from app.db.base_class import Base


class UserProfile(Base):
    """Read-only projection of account profiles; `id` is the user id."""
    __tablename__ = "user_profiles"

    id = Column(String(64), primary_key=True)
    full_name = Column(String(120))
    role = Column(String(20), nullable=False, default="buyer")
    avatar_url = Column(String(500))
    district = Column(String(100))
    state = Column(String(100))

    __table_args__ = (
        CheckConstraint("role IN ('farmer', 'buyer')", name="valid_role"),
    )
