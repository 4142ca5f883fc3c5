from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from app.schemas.base import BaseResponseSchema


class OfferStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    COMPLETED = "completed"


class PaymentStatus(str, Enum):
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class OfferCreate(BaseModel):
    """Buyer's offer on a listing."""
    listing_id: str = Field(..., min_length=1, max_length=64)
    farmer_id: str = Field(..., min_length=1, max_length=64, description="Owner of the listing")
    offer_price: Decimal = Field(..., gt=0, description="Offered price in rupees")
    quantity: int = Field(..., gt=0)
    message: Optional[str] = Field(default=None, max_length=1000)


class PaymentCreate(BaseModel):
    amount: Decimal = Field(..., gt=0)
    transaction_ref: Optional[str] = Field(default=None, max_length=120, description="UPI transaction reference")
    screenshot_url: Optional[str] = Field(default=None, max_length=500)


class OfferResponse(BaseResponseSchema):
    listing_id: str
    buyer_id: str
    farmer_id: str
    conversation_id: Optional[str] = None
    offer_price: Decimal
    quantity: int
    message: Optional[str] = None
    status: OfferStatus
    updated_at: Optional[datetime] = None


class PaymentResponse(BaseResponseSchema):
    offer_id: str
    payer_id: str
    amount: Decimal
    transaction_ref: Optional[str] = None
    screenshot_url: Optional[str] = None
    status: PaymentStatus


class PaymentResult(BaseModel):
    payment: PaymentResponse
    offer: OfferResponse


class UpiLinkResponse(BaseModel):
    offer_id: str
    amount: Decimal
    upi_link: str
