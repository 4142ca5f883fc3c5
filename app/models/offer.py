from sqlalchemy import Column, ForeignKey, String, Text, Integer, Numeric, DateTime, CheckConstraint, Index

from app.db.base_class import Base, utcnow


class Offer(Base):
    __tablename__ = "offers"

    listing_id = Column(String(64), nullable=False, index=True)
    buyer_id = Column(String(64), nullable=False)
    farmer_id = Column(String(64), nullable=False)
    conversation_id = Column(String(36), ForeignKey("conversations.id", ondelete="SET NULL"), nullable=True)
    offer_price = Column(Numeric(12, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    message = Column(Text)
    status = Column(String(20), nullable=False, default="pending")
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'accepted', 'rejected', 'expired', 'completed')",
            name="valid_offer_status",
        ),
        CheckConstraint("quantity > 0", name="positive_quantity"),
        Index("ix_offers_status", "status"),
    )


class Payment(Base):
    __tablename__ = "payments"

    offer_id = Column(String(36), ForeignKey("offers.id", ondelete="CASCADE"), nullable=False, index=True)
    payer_id = Column(String(64), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    transaction_ref = Column(String(120))
    screenshot_url = Column(String(500))
    status = Column(String(20), nullable=False, default="submitted")

    __table_args__ = (
        CheckConstraint("status IN ('submitted', 'confirmed', 'failed')", name="valid_payment_status"),
    )
