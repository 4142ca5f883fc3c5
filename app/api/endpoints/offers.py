from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import (
    NotificationSink,
    RealtimeHub,
    get_async_db,
    get_current_user_id,
    get_notification_sink,
    get_realtime_hub,
)
from app.schemas.offer import (
    OfferCreate,
    OfferResponse,
    PaymentCreate,
    PaymentResponse,
    PaymentResult,
    UpiLinkResponse,
)
from app.services.async_offer import AsyncOfferService
from app.utils.logger import api_logger

router = APIRouter()


@router.post("", response_model=OfferResponse, status_code=status.HTTP_201_CREATED)
async def create_offer(
    offer_data: OfferCreate,
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
    hub: RealtimeHub = Depends(get_realtime_hub),
    notifier: NotificationSink = Depends(get_notification_sink),
):
    """Make an offer on a listing as the current (buyer) user."""
    api_logger.info("Create offer", "OFFERS", buyer_id=current_user_id, listing_id=offer_data.listing_id)
    return await AsyncOfferService.create_offer(
        db,
        listing_id=offer_data.listing_id,
        buyer_id=current_user_id,
        farmer_id=offer_data.farmer_id,
        offer_price=offer_data.offer_price,
        quantity=offer_data.quantity,
        message=offer_data.message,
        hub=hub,
        notifier=notifier,
    )


@router.get("/{offer_id}", response_model=OfferResponse)
async def get_offer(
    offer_id: str,
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
):
    return await AsyncOfferService.get_offer(db, offer_id, current_user_id)


@router.post("/{offer_id}/accept", response_model=OfferResponse)
async def accept_offer(
    offer_id: str,
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
    hub: RealtimeHub = Depends(get_realtime_hub),
    notifier: NotificationSink = Depends(get_notification_sink),
):
    return await AsyncOfferService.accept_offer(db, offer_id, current_user_id, hub=hub, notifier=notifier)


@router.post("/{offer_id}/reject", response_model=OfferResponse)
async def reject_offer(
    offer_id: str,
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
    hub: RealtimeHub = Depends(get_realtime_hub),
    notifier: NotificationSink = Depends(get_notification_sink),
):
    return await AsyncOfferService.reject_offer(db, offer_id, current_user_id, hub=hub, notifier=notifier)


@router.post("/{offer_id}/expire", response_model=OfferResponse)
async def expire_offer(
    offer_id: str,
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
    hub: RealtimeHub = Depends(get_realtime_hub),
    notifier: NotificationSink = Depends(get_notification_sink),
):
    return await AsyncOfferService.expire_offer(db, offer_id, current_user_id, hub=hub, notifier=notifier)


@router.post("/{offer_id}/complete", response_model=OfferResponse)
async def complete_offer(
    offer_id: str,
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
    hub: RealtimeHub = Depends(get_realtime_hub),
    notifier: NotificationSink = Depends(get_notification_sink),
):
    """Settle an accepted offer outside the app (farmer only)."""
    return await AsyncOfferService.complete_offer(db, offer_id, current_user_id, hub=hub, notifier=notifier)


@router.post("/{offer_id}/payments", response_model=PaymentResult, status_code=status.HTTP_201_CREATED)
async def record_payment(
    offer_id: str,
    payment_data: PaymentCreate,
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
    hub: RealtimeHub = Depends(get_realtime_hub),
    notifier: NotificationSink = Depends(get_notification_sink),
):
    """Record the buyer's UPI payment for an accepted offer."""
    payment, offer = await AsyncOfferService.record_payment(
        db,
        offer_id,
        current_user_id,
        payment_data.amount,
        transaction_ref=payment_data.transaction_ref,
        screenshot_url=payment_data.screenshot_url,
        hub=hub,
        notifier=notifier,
    )
    return PaymentResult(
        payment=PaymentResponse.model_validate(payment),
        offer=OfferResponse.model_validate(offer),
    )


@router.get("/{offer_id}/upi-link", response_model=UpiLinkResponse)
async def get_upi_link(
    offer_id: str,
    db: AsyncSession = Depends(get_async_db),
    current_user_id: str = Depends(get_current_user_id),
):
    offer, amount, link = await AsyncOfferService.get_upi_link(db, offer_id, current_user_id)
    return UpiLinkResponse(offer_id=offer.id, amount=amount, upi_link=link)
