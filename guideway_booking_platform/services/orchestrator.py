"""
Booking/payment orchestration for operations that span both entities.

Cancellation is the one multi-step write: open intents are voided and any
captured payment is refunded at the gateway first, then the ledger and the
booking are updated in a single commit. If the gateway refuses or times out,
nothing local changes and the caller sees the ``PaymentServiceError``.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from ..cache import RedisCache
from ..config import Settings
from ..models.booking import Booking, BookingPaymentStatus, BookingStatus
from ..models.payment import PaymentStatus
from ..models.user import Actor
from ..utils.exceptions import InvalidStateError
from ..utils.logging_config import log_business_event
from ..utils.retry import retry_on_concurrency_error
from .booking_service import BookingService
from .payment_gateway import PaymentGateway
from .payment_service import PaymentService

logger = logging.getLogger(__name__)


class BookingOrchestrator:
    """Entry point for booking status changes coming from the API."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGateway,
        cache: Optional[RedisCache] = None,
        settings: Optional[Settings] = None
    ):
        self.session = session
        self.gateway = gateway
        self.bookings = BookingService(session, cache, settings)
        self.payments = PaymentService(session, gateway, cache, settings)

    async def change_status(
        self,
        booking_id: UUID,
        actor: Actor,
        target: BookingStatus,
        reason: Optional[str] = None
    ) -> Booking:
        """Route a requested status to the operation that owns it."""
        if target == BookingStatus.CANCELLED:
            return await self.cancel_booking(booking_id, actor, reason)
        if target == BookingStatus.COMPLETED:
            return await self.bookings.complete_booking(booking_id, actor)
        return await self.bookings.transition_status(booking_id, actor, target, reason)

    @retry_on_concurrency_error(base_delay=0.1, max_delay=1.0)
    async def cancel_booking(self, booking_id: UUID, actor: Actor, reason: Optional[str] = None) -> Booking:
        """
        Cancel a booking, refunding whatever was captured.

        Gateway calls carry idempotency keys derived from the booking and
        payment, so a retry after a lost optimistic-lock race does not refund
        twice.
        """
        refunded = Decimal("0.00")
        try:
            booking = await self.bookings.get_booking_for_update(booking_id)
            self.bookings.authorize_transition(booking, actor, BookingStatus.CANCELLED)
            self.bookings.check_transition(booking, BookingStatus.CANCELLED)

            processing = await self.payments.find_active_payment(booking_id)
            if processing is not None and processing.status == PaymentStatus.PROCESSING:
                # Outcome unknown until the gateway settles the intent
                raise InvalidStateError(
                    "A payment for this booking is still processing; cancel once it settles",
                    current_state=processing.status.value
                )

            pending = await self.payments.find_voidable_payments(booking_id)
            # A partial refund already flips the booking to refunded; the remainder is still owed
            refundable = await self.payments.find_refundable_payment(booking_id)
            if refundable is None and booking.payment_status == BookingPaymentStatus.PAID:
                logger.warning(f"Paid booking {booking_id} has no refundable payment row")

            # Gateway side first; any failure aborts before local writes
            for payment in pending:
                await self.payments.void_at_gateway(payment)

            gateway_refund = None
            if refundable is not None and refundable.refundable_amount > 0:
                refunded = refundable.refundable_amount
                gateway_refund = await self.gateway.refund(
                    refundable.payment_intent_id,
                    refunded,
                    idempotency_key=f"booking-cancel:{booking_id}:{refundable.id}",
                    metadata={"booking_id": str(booking_id), "payment_id": str(refundable.id)}
                )

            for payment in pending:
                await self.payments.apply_outcome(payment, PaymentStatus.CANCELLED)

            extra_values: Dict[str, Any] = {}
            if gateway_refund is not None:
                await self.payments.record_refund(
                    refundable,
                    refunded,
                    reason or "booking_cancelled",
                    gateway_refund_id=gateway_refund.id,
                    cascade=False
                )
            if booking.payment_status == BookingPaymentStatus.PAID:
                extra_values["payment_status"] = BookingPaymentStatus.REFUNDED

            details = f"Cancelled with refund of {refunded}" if refunded else None
            await self.bookings.apply_transition(
                booking,
                BookingStatus.CANCELLED,
                actor,
                reason=reason,
                extra_values=extra_values,
                details=details
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        await self.bookings.invalidator.guide_earnings(booking.guide_id)
        logger.info(f"Booking {booking_id} cancelled by {actor.id}; refunded {refunded}")
        log_business_event(
            "booking_cancelled",
            {
                "booking_id": str(booking_id),
                "reason": reason,
                "refund_amount": str(refunded),
                "voided_intents": len(pending),
            },
            user_id=str(actor.id)
        )
        return booking
