"""
Offer negotiation inside a conversation.

    pending -> accepted | rejected | expired
    accepted -> completed   (payment recorded, or manual settlement)

Guards run in a fixed order: the actor must be a party to the offer, the
offer must be in an allowed source state, and only then is the actor's role
checked. A settled offer therefore reports its state to either party.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Iterable, List, Optional, Tuple
from urllib.parse import quote, urlencode

from sqlalchemy import select, update, and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import InvalidStateTransition, NotFound, PermissionDenied, ValidationFailed
from app.db.base_class import utcnow
from app.models.message import Message
from app.models.offer import Offer, Payment
from app.services.async_conversation_store import AsyncConversationStore
from app.services.async_error_handler import handle_async_db_errors
from app.services.async_messaging import AsyncMessagingService
from app.services.notification import NotificationSink, notify_safely
from app.services.realtime import RealtimeHub
from app.utils.logger import offer_logger

logger = logging.getLogger(__name__)

PENDING = "pending"
ACCEPTED = "accepted"
REJECTED = "rejected"
EXPIRED = "expired"
COMPLETED = "completed"


def format_amount(value) -> str:
    """100 -> '100', 99.5 -> '99.50'."""
    amount = Decimal(str(value))
    if amount == amount.to_integral_value():
        return str(int(amount))
    return f"{amount:.2f}"


def build_upi_link(amount, note: str, upi_id: Optional[str] = None, payee_name: Optional[str] = None) -> str:
    """UPI deep link (`upi://pay?...`) for paying `amount` rupees."""
    try:
        amount = Decimal(str(amount))
    except InvalidOperation:
        raise ValidationFailed(f"Invalid amount: {amount}")
    if amount <= 0:
        raise ValidationFailed("Amount must be positive")

    params = {
        "pa": upi_id or settings.UPI_ID,
        "pn": payee_name or settings.APP_NAME,
        "am": f"{amount:.2f}",
        "cu": "INR",
        "tn": note,
    }
    return f"upi://pay?{urlencode(params, quote_via=quote)}"


def counterparty_of(offer: Offer, user_id: str) -> str:
    return offer.farmer_id if user_id == offer.buyer_id else offer.buyer_id


class AsyncOfferService:
    """Async service for offers and payments."""

    @staticmethod
    async def _load(db: AsyncSession, offer_id: str) -> Offer:
        result = await db.execute(
            select(Offer).where(Offer.id == offer_id).execution_options(populate_existing=True)
        )
        offer = result.scalar_one_or_none()
        if offer is None:
            raise NotFound("offer", offer_id)
        return offer

    @staticmethod
    def _check_party(offer: Offer, user_id: str) -> None:
        if user_id not in (offer.buyer_id, offer.farmer_id):
            offer_logger.warning("Non-party offer access", "POLICY", offer_id=offer.id, user_id=user_id)
            raise PermissionDenied("Not a party to this offer")

    @staticmethod
    def _check_state(offer: Offer, allowed_from: Iterable[str], action: str) -> None:
        if offer.status not in allowed_from:
            raise InvalidStateTransition(
                f"Cannot {action} an offer that is {offer.status}", current_state=offer.status
            )

    @staticmethod
    def _check_role(offer: Offer, user_id: str, allowed_actors: Iterable[str], action: str) -> None:
        if user_id not in allowed_actors:
            offer_logger.warning(f"Offer {action} denied", "POLICY", offer_id=offer.id, user_id=user_id)
            raise PermissionDenied(f"You are not allowed to {action} this offer")

    @staticmethod
    async def get_offer(db: AsyncSession, offer_id: str, user_id: str) -> Offer:
        offer = await AsyncOfferService._load(db, offer_id)
        AsyncOfferService._check_party(offer, user_id)
        return offer

    @staticmethod
    @handle_async_db_errors("create offer")
    async def create_offer(
        db: AsyncSession,
        listing_id: str,
        buyer_id: str,
        farmer_id: str,
        offer_price,
        quantity: int,
        message: Optional[str] = None,
        hub: Optional[RealtimeHub] = None,
        notifier: Optional[NotificationSink] = None,
    ) -> Offer:
        """
        Open a pending offer from the buyer and post it into the buyer/farmer
        conversation, creating the conversation if needed.
        """
        if buyer_id == farmer_id:
            raise ValidationFailed("Cannot make an offer on your own listing")
        try:
            price = Decimal(str(offer_price))
        except InvalidOperation:
            raise ValidationFailed(f"Invalid price: {offer_price}")
        if price <= 0:
            raise ValidationFailed("Offer price must be positive")
        if quantity is None or int(quantity) <= 0:
            raise ValidationFailed("Quantity must be positive")

        quantity = int(quantity)
        message = (message or "").strip() or f"Offer for quantity {quantity}"

        conversation = await AsyncConversationStore.find_or_create_conversation(db, buyer_id, farmer_id)
        conversation_id = conversation.id

        offer = Offer(
            listing_id=listing_id,
            buyer_id=buyer_id,
            farmer_id=farmer_id,
            conversation_id=conversation_id,
            offer_price=price,
            quantity=quantity,
            message=message,
            status=PENDING,
        )
        try:
            db.add(offer)
            await db.flush()
            offer_id = offer.id
            posted, touched = await AsyncMessagingService.stage_message(
                db, conversation_id, buyer_id,
                f"Offer: Rs {format_amount(price)} | Qty: {quantity}",
                message_type="offer", offer_id=offer_id,
            )
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            raise

        await AsyncMessagingService.after_commit(db, posted, touched, hub)
        offer_logger.success("Offer created", offer_id=offer_id, listing_id=listing_id,
                             conversation_id=conversation_id)

        await notify_safely(
            notifier, farmer_id, "New offer",
            f"Rs {format_amount(price)} x {quantity} for your listing",
            "offer", offer_id,
        )
        return await AsyncOfferService._load(db, offer_id)

    @staticmethod
    async def _transition(
        db: AsyncSession,
        offer: Offer,
        actor_id: str,
        to_status: str,
        system_text: str,
        hub: Optional[RealtimeHub],
        notifier: Optional[NotificationSink],
    ) -> Offer:
        """
        Move `offer` to `to_status` if it is still in the state it was read in.

        The status change and its system message commit together; publishing
        and the counterparty notification follow the commit.
        """
        offer_id = offer.id
        from_status = offer.status
        conversation_id = offer.conversation_id
        counterparty_id = counterparty_of(offer, actor_id)
        summary = f"Offer of Rs {format_amount(offer.offer_price)} x {offer.quantity}"

        message = None
        try:
            result = await db.execute(
                update(Offer)
                .where(and_(Offer.id == offer_id, Offer.status == from_status))
                .values(status=to_status, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await db.rollback()
                current = await AsyncOfferService._load(db, offer_id)
                raise InvalidStateTransition(
                    f"Offer changed to {current.status} concurrently", current_state=current.status
                )
            if conversation_id:
                message, touched = await AsyncMessagingService.stage_message(
                    db, conversation_id, actor_id, system_text, message_type="system", offer_id=offer_id
                )
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            raise

        if message is not None:
            await AsyncMessagingService.after_commit(db, message, touched, hub)

        offer_logger.info(f"Offer {from_status} -> {to_status}", offer_id=offer_id, actor_id=actor_id)
        await notify_safely(notifier, counterparty_id, system_text, summary, "offer", offer_id)
        return await AsyncOfferService._load(db, offer_id)

    @staticmethod
    @handle_async_db_errors("accept offer")
    async def accept_offer(db: AsyncSession, offer_id: str, actor_id: str,
                           hub: Optional[RealtimeHub] = None,
                           notifier: Optional[NotificationSink] = None) -> Offer:
        offer = await AsyncOfferService.get_offer(db, offer_id, actor_id)
        AsyncOfferService._check_state(offer, (PENDING,), "accept")
        AsyncOfferService._check_role(offer, actor_id, (offer.farmer_id,), "accept")
        return await AsyncOfferService._transition(db, offer, actor_id, ACCEPTED, "Offer accepted", hub, notifier)

    @staticmethod
    @handle_async_db_errors("reject offer")
    async def reject_offer(db: AsyncSession, offer_id: str, actor_id: str,
                           hub: Optional[RealtimeHub] = None,
                           notifier: Optional[NotificationSink] = None) -> Offer:
        offer = await AsyncOfferService.get_offer(db, offer_id, actor_id)
        AsyncOfferService._check_state(offer, (PENDING,), "reject")
        AsyncOfferService._check_role(offer, actor_id, (offer.farmer_id,), "reject")
        return await AsyncOfferService._transition(db, offer, actor_id, REJECTED, "Offer rejected", hub, notifier)

    @staticmethod
    @handle_async_db_errors("expire offer")
    async def expire_offer(db: AsyncSession, offer_id: str, actor_id: str,
                           hub: Optional[RealtimeHub] = None,
                           notifier: Optional[NotificationSink] = None) -> Offer:
        offer = await AsyncOfferService.get_offer(db, offer_id, actor_id)
        AsyncOfferService._check_state(offer, (PENDING,), "expire")
        return await AsyncOfferService._transition(db, offer, actor_id, EXPIRED, "Offer expired", hub, notifier)

    @staticmethod
    @handle_async_db_errors("complete offer")
    async def complete_offer(db: AsyncSession, offer_id: str, actor_id: str,
                             hub: Optional[RealtimeHub] = None,
                             notifier: Optional[NotificationSink] = None) -> Offer:
        offer = await AsyncOfferService.get_offer(db, offer_id, actor_id)
        AsyncOfferService._check_state(offer, (ACCEPTED,), "complete")
        AsyncOfferService._check_role(offer, actor_id, (offer.farmer_id,), "complete")
        return await AsyncOfferService._transition(db, offer, actor_id, COMPLETED, "Offer completed", hub, notifier)

    @staticmethod
    @handle_async_db_errors("record payment")
    async def record_payment(
        db: AsyncSession,
        offer_id: str,
        payer_id: str,
        amount,
        transaction_ref: Optional[str] = None,
        screenshot_url: Optional[str] = None,
        hub: Optional[RealtimeHub] = None,
        notifier: Optional[NotificationSink] = None,
    ) -> Tuple[Payment, Offer]:
        """
        Record the buyer's payment for an accepted offer.

        The payment is committed first. Completing the offer and posting the
        payment message follow together in a second transaction; if that
        fails the payment stays recorded and `reconcile_payments` finishes
        the job.
        """
        offer = await AsyncOfferService.get_offer(db, offer_id, payer_id)
        AsyncOfferService._check_state(offer, (ACCEPTED,), "pay for")
        AsyncOfferService._check_role(offer, payer_id, (offer.buyer_id,), "pay for")

        try:
            amount = Decimal(str(amount))
        except InvalidOperation:
            raise ValidationFailed(f"Invalid amount: {amount}")
        if amount <= 0:
            raise ValidationFailed("Payment amount must be positive")

        payment = Payment(
            offer_id=offer.id,
            payer_id=payer_id,
            amount=amount,
            transaction_ref=transaction_ref,
            screenshot_url=screenshot_url,
            status="submitted",
        )
        db.add(payment)
        await db.commit()
        await db.refresh(payment)
        offer_id, payment_id = offer.id, payment.id
        offer_logger.info("Payment recorded", offer_id=offer_id, payment_id=payment_id,
                          transaction_ref=transaction_ref)

        try:
            offer = await AsyncOfferService._complete_after_payment(db, offer, payment, hub, notifier)
        except SQLAlchemyError as e:
            await db.rollback()
            offer_logger.error("Offer completion after payment failed, left for reconcile",
                               offer_id=offer_id, payment_id=payment_id, error=str(e))
            await db.refresh(payment)
            offer = await AsyncOfferService._load(db, offer_id)
        return payment, offer

    @staticmethod
    async def _has_payment_message(db: AsyncSession, offer_id: str) -> bool:
        result = await db.execute(
            select(Message.id)
            .where(and_(Message.offer_id == offer_id, Message.message_type == "payment"))
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def _complete_after_payment(
        db: AsyncSession,
        offer: Offer,
        payment: Payment,
        hub: Optional[RealtimeHub],
        notifier: Optional[NotificationSink],
    ) -> Offer:
        """
        Complete a paid offer and post its payment message in one transaction.

        An offer already completed without a payment message (settled by hand
        while the payment was in flight) only gets the message.
        """
        offer_id = offer.id
        conversation_id = offer.conversation_id
        farmer_id = offer.farmer_id
        content = f"Payment submitted: Rs {format_amount(payment.amount)}"
        if payment.transaction_ref:
            content += f" | Ref: {payment.transaction_ref}"
        payer_id = payment.payer_id

        message = None
        try:
            result = await db.execute(
                update(Offer)
                .where(and_(Offer.id == offer_id, Offer.status == ACCEPTED))
                .values(status=COMPLETED, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = await AsyncOfferService._load(db, offer_id)
                if (current.status != COMPLETED or not conversation_id
                        or await AsyncOfferService._has_payment_message(db, offer_id)):
                    await db.rollback()
                    return await AsyncOfferService._load(db, offer_id)
            if conversation_id:
                message, touched = await AsyncMessagingService.stage_message(
                    db, conversation_id, payer_id, content, message_type="payment", offer_id=offer_id
                )
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            raise

        if message is not None:
            await AsyncMessagingService.after_commit(db, message, touched, hub)

        await notify_safely(notifier, farmer_id, "Payment received", content, "offer", offer_id)
        return await AsyncOfferService._load(db, offer_id)

    @staticmethod
    @handle_async_db_errors("reconcile payments")
    async def reconcile_payments(
        db: AsyncSession,
        hub: Optional[RealtimeHub] = None,
        notifier: Optional[NotificationSink] = None,
    ) -> List[Offer]:
        """
        Finish offers whose payment was recorded but whose completion step
        never committed: accepted offers with a submitted payment, and
        completed offers still missing their payment message.
        """
        has_payment_message = (
            select(Message.id)
            .where(and_(Message.offer_id == Offer.id, Message.message_type == "payment"))
            .exists()
        )
        result = await db.execute(
            select(Offer, Payment)
            .join(Payment, Payment.offer_id == Offer.id)
            .where(and_(
                Payment.status == "submitted",
                or_(
                    Offer.status == ACCEPTED,
                    and_(Offer.status == COMPLETED, Offer.conversation_id.isnot(None), ~has_payment_message),
                ),
            ))
            .order_by(Payment.created_at)
        )
        pending = {}
        for offer, payment in result.all():
            pending.setdefault(offer.id, payment.id)

        completed = []
        for offer_id, payment_id in pending.items():
            offer = await AsyncOfferService._load(db, offer_id)
            payment = await db.get(Payment, payment_id)
            try:
                offer = await AsyncOfferService._complete_after_payment(db, offer, payment, hub, notifier)
            except SQLAlchemyError as e:
                offer_logger.error("Reconcile failed, retrying on next run",
                                   offer_id=offer_id, payment_id=payment_id, error=str(e))
                continue
            if offer.status == COMPLETED:
                completed.append(offer)

        if completed:
            offer_logger.warning(f"Reconciled {len(completed)} paid offers")
        return completed

    @staticmethod
    async def get_upi_link(db: AsyncSession, offer_id: str, user_id: str) -> Tuple[Offer, Decimal, str]:
        offer = await AsyncOfferService.get_offer(db, offer_id, user_id)
        amount = Decimal(str(offer.offer_price)) * offer.quantity
        link = build_upi_link(amount, f"Offer {offer.id[:8]}")
        return offer, amount, link
