"""
Payment ledger service.

Ledger rows are created ``pending`` when an intent is requested and then move
only through ``reconcile_payment_outcome`` (payments) or ``record_refund``
(refunds). The synchronous confirmation path and gateway webhooks both call
these same methods, so replays and races converge on one state.

Money never moves locally before the gateway has answered: every gateway call
happens before the first write of the unit of work, and a
``PaymentServiceError`` leaves the ledger untouched.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..cache import CacheInvalidator, CacheKeyBuilder, CacheTTL, RedisCache
from ..config import Settings, get_settings
from ..models.base import utcnow
from ..models.booking import Booking, BookingPaymentStatus, BookingStatus
from ..models.booking_history import BookingAction
from ..models.payment import (
    ACTIVE_PAYMENT_STATUSES,
    REFUNDABLE_STATUSES,
    Payment,
    PaymentMethod,
    PaymentStatus,
    TransactionType,
)
from ..models.user import Actor, User, UserRole
from ..utils.exceptions import (
    AuthorizationError,
    ConflictError,
    InvalidInputError,
    InvalidStateError,
    OptimisticLockError,
    PaymentNotFoundError,
    PaymentServiceError,
    UserNotFoundError,
)
from ..utils.logging_config import log_business_event
from ..utils.retry import retry_on_concurrency_error
from .booking_rules import calculate_platform_fee, to_money
from .booking_service import BookingService
from .payment_gateway import GatewayIntent, PaymentGateway, from_minor_units

logger = logging.getLogger(__name__)

SURPLUS_CAPTURE_REASON = "captured_after_booking_closed"

# Reconciliation graph for payment rows. Anything not listed is a stale or
# replayed outcome and is ignored.
OUTCOME_TRANSITIONS = {
    PaymentStatus.PENDING: {
        PaymentStatus.PROCESSING,
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    },
    PaymentStatus.PROCESSING: {
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    },
    # A declined intent stays open at the gateway until it is voided
    PaymentStatus.FAILED: {PaymentStatus.COMPLETED, PaymentStatus.CANCELLED},
}

RECONCILABLE_OUTCOMES = frozenset({
    PaymentStatus.PROCESSING,
    PaymentStatus.COMPLETED,
    PaymentStatus.FAILED,
    PaymentStatus.CANCELLED,
})

GATEWAY_STATUS_OUTCOMES = {
    "succeeded": PaymentStatus.COMPLETED,
    "processing": PaymentStatus.PROCESSING,
    "canceled": PaymentStatus.CANCELLED,
}

WEBHOOK_OUTCOMES = {
    "payment_intent.succeeded": PaymentStatus.COMPLETED,
    "payment_intent.processing": PaymentStatus.PROCESSING,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "payment_intent.canceled": PaymentStatus.CANCELLED,
}


def outcome_from_intent(intent: GatewayIntent) -> Optional[PaymentStatus]:
    """Map a gateway intent status to a ledger outcome; None when still open."""
    if intent.status in GATEWAY_STATUS_OUTCOMES:
        return GATEWAY_STATUS_OUTCOMES[intent.status]
    if intent.status == "requires_payment_method" and intent.last_error:
        return PaymentStatus.FAILED
    return None


class PaymentService:
    """Service for payment intents, reconciliation and refunds."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGateway,
        cache: Optional[RedisCache] = None,
        settings: Optional[Settings] = None
    ):
        self.session = session
        self.gateway = gateway
        self.cache = cache
        self.settings = settings or get_settings()
        self.invalidator = CacheInvalidator(cache)
        self.bookings = BookingService(session, cache, self.settings)

    async def create_payment_intent(
        self,
        actor: Actor,
        booking_id: UUID,
        amount: Optional[Decimal] = None,
        payment_method: PaymentMethod = PaymentMethod.STRIPE
    ) -> Tuple[Payment, Optional[str]]:
        """
        Open a gateway payment intent for a confirmed booking.

        The pre-check gives a readable error in the common case; the partial
        unique index on active payment rows makes the check atomic when two
        requests race past it.

        Returns:
            The pending ledger row and the client secret for the gateway SDK
        """
        try:
            booking = await self.bookings.get_booking_for_update(booking_id)
            if booking.tourist_id != actor.id:
                raise AuthorizationError("Only the booking's tourist can pay for it")
            if booking.status != BookingStatus.CONFIRMED:
                raise InvalidStateError(
                    "Payment can only be made for confirmed bookings",
                    current_state=booking.status.value
                )
            if booking.payment_status == BookingPaymentStatus.PAID:
                raise ConflictError("Booking is already paid")

            active = await self.find_active_payment(booking_id)
            if active is not None:
                raise ConflictError(
                    "A payment is already in progress for this booking",
                    details={"payment_id": str(active.id), "status": active.status.value}
                )

            charge = to_money(amount) if amount is not None else booking.total_price
            if charge <= 0 or charge > booking.total_price:
                raise InvalidInputError(
                    f"Amount must be greater than 0 and at most {booking.total_price}",
                    field="amount"
                )

            # A declined intent can still be paid later; close it before opening another
            declined = await self.find_voidable_payments(booking_id)
            for stale in declined:
                await self.void_at_gateway(stale)

            tourist = await self.session.get(User, actor.id)
            if tourist is None:
                raise UserNotFoundError(str(actor.id))
            customer_id = await self._customer_for(tourist)

            attempt = (await self.session.execute(
                select(func.count(Payment.id)).where(
                    Payment.booking_id == booking_id,
                    Payment.transaction_type == TransactionType.PAYMENT
                )
            )).scalar_one()

            intent = await self.gateway.create_intent(
                amount=charge,
                currency=self.settings.payment_currency,
                metadata={
                    "booking_id": str(booking.id),
                    "tourist_id": str(booking.tourist_id),
                    "guide_id": str(booking.guide_id),
                },
                idempotency_key=f"payment-intent:{booking.id}:{attempt}",
                customer_id=customer_id
            )
        except Exception:
            await self.session.rollback()
            raise

        payment = Payment(
            booking_id=booking.id,
            tourist_id=booking.tourist_id,
            guide_id=booking.guide_id,
            amount=charge,
            currency=self.settings.payment_currency,
            payment_method=payment_method,
            status=PaymentStatus.PENDING,
            transaction_type=TransactionType.PAYMENT,
            payment_intent_id=intent.id,
            stripe_customer_id=customer_id,
            details={"listing_id": str(booking.listing_id), "attempt": attempt}
        )

        try:
            self.session.add(payment)
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            await self._release_orphan_intent(intent.id)
            raise ConflictError("A payment is already in progress for this booking") from e

        try:
            for stale in declined:
                await self.apply_outcome(stale, PaymentStatus.CANCELLED)
            booking_values: Dict[str, Any] = {
                "payment_intent_id": intent.id,
                "version": Booking.version + 1,
            }
            if booking.payment_status == BookingPaymentStatus.FAILED:
                booking_values["payment_status"] = BookingPaymentStatus.PENDING
            await self.session.execute(
                update(Booking)
                .where(Booking.id == booking.id)
                .values(**booking_values)
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"Payment intent {intent.id} created for booking {booking_id}: {charge}")
        log_business_event(
            "payment_intent_created",
            {"booking_id": str(booking_id), "payment_id": str(payment.id), "amount": str(charge)},
            user_id=str(actor.id)
        )
        return payment, intent.client_secret

    async def _customer_for(self, tourist: User) -> str:
        """Reuse the tourist's gateway customer, creating it on the first payment."""
        existing = (await self.session.execute(
            select(Payment.stripe_customer_id)
            .where(Payment.tourist_id == tourist.id, Payment.stripe_customer_id.is_not(None))
            .order_by(Payment.created_at.desc())
            .limit(1)
        )).scalar_one_or_none()
        if existing:
            return existing

        return await self.gateway.create_customer(
            email=tourist.email,
            name=tourist.full_name,
            metadata={"user_id": str(tourist.id)}
        )

    async def _release_orphan_intent(self, intent_id: str) -> None:
        """Void an intent that lost the race for the booking's payment slot."""
        owned = (await self.session.execute(
            select(Payment.id).where(Payment.payment_intent_id == intent_id)
        )).scalar_one_or_none()
        if owned is not None:
            return
        try:
            await self.gateway.cancel_intent(intent_id, idempotency_key=f"cancel-intent:{intent_id}")
        except PaymentServiceError as e:
            logger.error(f"Could not void orphaned payment intent {intent_id}: {e.message}")

    @retry_on_concurrency_error(base_delay=0.05, max_delay=0.5)
    async def reconcile_payment_outcome(
        self,
        payment_intent_id: str,
        outcome: PaymentStatus,
        failure_reason: Optional[str] = None
    ) -> Payment:
        """
        Apply a gateway outcome to the ledger row for ``payment_intent_id``.

        Idempotent: repeating an outcome, or delivering one the row has moved
        past, leaves the row unchanged.
        """
        if outcome not in RECONCILABLE_OUTCOMES:
            raise InvalidInputError(f"Unsupported payment outcome {outcome.value}", field="outcome")

        try:
            payment = await self.get_payment_by_intent(payment_intent_id)
            if outcome == PaymentStatus.COMPLETED and await self._is_surplus_capture(payment):
                changed = await self._refund_surplus_capture(payment)
            else:
                changed = await self.apply_outcome(payment, outcome, failure_reason)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        if changed:
            await self.invalidator.guide_earnings(payment.guide_id)
            log_business_event(
                "payment_reconciled",
                {
                    "payment_id": str(payment.id),
                    "payment_intent_id": payment_intent_id,
                    "status": payment.status.value,
                }
            )
        return payment

    async def _is_surplus_capture(self, payment: Payment) -> bool:
        """True when money captured on this intent has no booking left to pay for."""
        if PaymentStatus.COMPLETED not in OUTCOME_TRANSITIONS.get(payment.status, ()):
            return False
        booking = await self.bookings.get_booking_for_update(payment.booking_id)
        if booking.status in (BookingStatus.CANCELLED, BookingStatus.REJECTED):
            return True
        other = (await self.session.execute(
            select(Payment.id).where(
                Payment.booking_id == payment.booking_id,
                Payment.transaction_type == TransactionType.PAYMENT,
                Payment.status.in_(ACTIVE_PAYMENT_STATUSES),
                Payment.id != payment.id
            )
        )).scalars().first()
        return other is not None

    async def _refund_surplus_capture(self, payment: Payment) -> bool:
        """
        Refund a capture in full and book it as refunded. Does not commit.

        The row goes straight to ``refunded`` so it never occupies the
        booking's payment slot. A gateway failure propagates before anything
        is written and the gateway redelivers the outcome.
        """
        current = payment.status
        gateway_refund = await self.gateway.refund(
            payment.payment_intent_id,
            payment.amount,
            idempotency_key=f"surplus-capture:{payment.id}",
            metadata={"payment_id": str(payment.id), "booking_id": str(payment.booking_id)}
        )

        now = utcnow()
        values: Dict[str, Any] = {
            "status": PaymentStatus.REFUNDED,
            "refund_amount": payment.amount,
            "refunded_at": now,
            "refund_reason": SURPLUS_CAPTURE_REASON,
        }
        if payment.processed_at is None:
            values["processed_at"] = now
        result = await self.session.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise OptimisticLockError("Payment", str(payment.id))

        self.session.add(self._refund_row(payment, payment.amount, SURPLUS_CAPTURE_REASON, gateway_refund.id, now))
        await self.session.flush()
        await self.session.refresh(payment)

        booking = await self.bookings.get_booking_for_update(payment.booking_id)
        if (
            booking.status in (BookingStatus.CANCELLED, BookingStatus.REJECTED)
            and booking.payment_status != BookingPaymentStatus.REFUNDED
        ):
            await self._update_booking_payment(booking, payment_status=BookingPaymentStatus.REFUNDED)
            self.bookings.record_payment_event(
                booking.id,
                BookingAction.REFUNDED,
                booking.status,
                f"Payment {payment.payment_intent_id} captured after {booking.status.value}; refunded {payment.amount}"
            )

        logger.warning(
            f"Payment {payment.id} captured {payment.amount} with no booking to pay for; refunded as {gateway_refund.id}"
        )
        return True

    async def apply_outcome(
        self,
        payment: Payment,
        outcome: PaymentStatus,
        failure_reason: Optional[str] = None
    ) -> bool:
        """Move a payment row and cascade to its booking. Does not commit."""
        current = payment.status
        if current == outcome:
            logger.debug(f"Payment {payment.id} already {outcome.value}")
            return False
        if outcome not in OUTCOME_TRANSITIONS.get(current, ()):
            logger.info(f"Ignoring stale outcome {outcome.value} for payment {payment.id} in {current.value}")
            return False

        now = utcnow()
        values: Dict[str, Any] = {"status": outcome}
        if outcome in (PaymentStatus.COMPLETED, PaymentStatus.FAILED) and payment.processed_at is None:
            values["processed_at"] = now
        if outcome == PaymentStatus.FAILED:
            values["failure_reason"] = failure_reason or "Payment failed"

        result = await self.session.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise OptimisticLockError("Payment", str(payment.id))
        await self.session.refresh(payment)

        if outcome == PaymentStatus.COMPLETED:
            await self._mark_booking_paid(payment)
        elif outcome == PaymentStatus.FAILED:
            await self._mark_booking_failed(payment)

        logger.info(f"Payment {payment.id}: {current.value} -> {outcome.value}")
        return True

    async def _mark_booking_paid(self, payment: Payment) -> None:
        booking = await self.bookings.get_booking_for_update(payment.booking_id)
        if booking.payment_status == BookingPaymentStatus.PAID or booking.status != BookingStatus.CONFIRMED:
            return

        await self._update_booking_payment(
            booking,
            payment_status=BookingPaymentStatus.PAID,
            payment_intent_id=payment.payment_intent_id
        )
        self.bookings.record_payment_event(
            booking.id,
            BookingAction.PAYMENT_RECEIVED,
            booking.status,
            f"Payment {payment.payment_intent_id} received: {payment.amount}"
        )

    async def _mark_booking_failed(self, payment: Payment) -> None:
        booking = await self.bookings.get_booking_for_update(payment.booking_id)
        if booking.payment_status != BookingPaymentStatus.PENDING or booking.is_terminal:
            return
        await self._update_booking_payment(booking, payment_status=BookingPaymentStatus.FAILED)

    async def _update_booking_payment(self, booking: Booking, **values) -> None:
        result = await self.session.execute(
            update(Booking)
            .where(Booking.id == booking.id, Booking.version == booking.version)
            .values(version=Booking.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise OptimisticLockError("Booking", str(booking.id))

    async def confirm_payment(self, payment_intent_id: str, actor: Actor) -> Payment:
        """Client-driven confirmation: ask the gateway, then reconcile like a webhook would."""
        payment = await self.get_payment_by_intent(payment_intent_id)
        if not (actor.is_admin or actor.id == payment.tourist_id):
            raise AuthorizationError("Not authorized to confirm this payment")

        intent = await self.gateway.retrieve_intent(payment_intent_id)
        outcome = outcome_from_intent(intent)
        if outcome is None:
            logger.info(f"Payment intent {payment_intent_id} still open at gateway ({intent.status})")
            return payment

        return await self.reconcile_payment_outcome(payment_intent_id, outcome, intent.last_error)

    async def cancel_payment_intent(self, payment_id: UUID, actor: Optional[Actor]) -> Payment:
        """Void a pending intent at the gateway and release the booking's payment slot."""
        payment = await self.get_payment(payment_id, actor) if actor else await self._get_payment(payment_id)
        if actor is not None and not (actor.is_admin or actor.id == payment.tourist_id):
            raise AuthorizationError("Only the paying tourist can cancel this payment")
        if payment.transaction_type != TransactionType.PAYMENT or payment.status != PaymentStatus.PENDING:
            raise InvalidStateError(
                "Only pending payments can be cancelled",
                current_state=payment.status.value
            )

        await self.void_at_gateway(payment)
        return await self.reconcile_payment_outcome(payment.payment_intent_id, PaymentStatus.CANCELLED)

    async def void_at_gateway(self, payment: Payment) -> None:
        await self.gateway.cancel_intent(
            payment.payment_intent_id,
            idempotency_key=f"cancel-intent:{payment.payment_intent_id}"
        )

    async def refund_payment(
        self,
        payment_id: UUID,
        amount: Optional[Decimal] = None,
        reason: str = "requested_by_customer",
        actor: Optional[Actor] = None
    ) -> Tuple[Payment, Payment]:
        """
        Refund part or all of a captured payment.

        Raises:
            PaymentNotFoundError: no such payment
            InvalidStateError: payment not captured, or already fully refunded
            InvalidInputError: amount not positive or above the refundable remainder
            PaymentServiceError: gateway failed; nothing was written
        """
        try:
            payment = await self._get_payment(payment_id)
            if payment.transaction_type != TransactionType.PAYMENT:
                raise InvalidStateError("Only payments can be refunded", current_state=payment.transaction_type.value)
            if payment.status not in REFUNDABLE_STATUSES:
                raise InvalidStateError(
                    f"Payment in status {payment.status.value} cannot be refunded",
                    current_state=payment.status.value
                )

            remaining = payment.refundable_amount
            if remaining <= 0:
                raise InvalidStateError("Payment is already fully refunded", current_state=payment.status.value)

            refund_amount = to_money(amount) if amount is not None else remaining
            if refund_amount <= 0:
                raise InvalidInputError("Refund amount must be greater than 0", field="amount")
            if refund_amount > remaining:
                raise InvalidInputError(
                    f"Refund amount {refund_amount} exceeds refundable amount {remaining}",
                    field="amount"
                )

            gateway_refund = await self.gateway.refund(
                payment.payment_intent_id,
                refund_amount,
                idempotency_key=f"refund:{payment.id}:{payment.refund_amount}:{refund_amount}",
                metadata={"payment_id": str(payment.id), "booking_id": str(payment.booking_id)}
            )

            refund_row = await self.record_refund(
                payment,
                refund_amount,
                reason,
                gateway_refund_id=gateway_refund.id
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        await self.invalidator.guide_earnings(payment.guide_id)
        log_business_event(
            "payment_refunded",
            {
                "payment_id": str(payment.id),
                "refund_id": str(refund_row.id),
                "amount": str(refund_amount),
                "status": payment.status.value,
            },
            user_id=str(actor.id) if actor else None
        )
        return payment, refund_row

    async def record_refund(
        self,
        payment: Payment,
        amount: Decimal,
        reason: Optional[str],
        gateway_refund_id: Optional[str] = None,
        cascade: bool = True
    ) -> Payment:
        """
        Book a refund the gateway has accepted. Does not commit.

        Updates the original row's cumulative ``refund_amount`` and status and
        appends a ``refund`` ledger row. A refund id that is already recorded
        is returned unchanged, so webhook replays are harmless.
        """
        if gateway_refund_id:
            existing = (await self.session.execute(
                select(Payment).where(Payment.gateway_refund_id == gateway_refund_id)
            )).scalar_one_or_none()
            if existing is not None:
                return existing

        if payment.status not in REFUNDABLE_STATUSES:
            raise InvalidStateError(
                f"Payment in status {payment.status.value} cannot be refunded",
                current_state=payment.status.value
            )

        previous_total = payment.refund_amount
        new_total = to_money(previous_total + amount)
        if new_total > payment.amount:
            raise ConflictError(
                f"Refunds would exceed the captured amount of payment {payment.id}",
                details={"refunded": str(previous_total), "requested": str(amount)}
            )

        now = utcnow()
        status = PaymentStatus.REFUNDED if new_total == payment.amount else PaymentStatus.PARTIALLY_REFUNDED
        result = await self.session.execute(
            update(Payment)
            .where(
                Payment.id == payment.id,
                Payment.status == payment.status,
                Payment.refund_amount == previous_total
            )
            .values(
                refund_amount=new_total,
                status=status,
                refunded_at=now,
                refund_reason=reason
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise OptimisticLockError("Payment", str(payment.id))

        refund_row = self._refund_row(payment, amount, reason, gateway_refund_id, now)
        self.session.add(refund_row)
        await self.session.flush()
        await self.session.refresh(payment)

        if cascade:
            await self._mark_booking_refunded(payment)

        logger.info(f"Recorded refund of {amount} on payment {payment.id} ({status.value})")
        return refund_row

    @staticmethod
    def _refund_row(
        payment: Payment,
        amount: Decimal,
        reason: Optional[str],
        gateway_refund_id: Optional[str],
        now: datetime
    ) -> Payment:
        return Payment(
            booking_id=payment.booking_id,
            tourist_id=payment.tourist_id,
            guide_id=payment.guide_id,
            original_payment_id=payment.id,
            amount=to_money(amount),
            currency=payment.currency,
            payment_method=payment.payment_method,
            status=PaymentStatus.COMPLETED,
            transaction_type=TransactionType.REFUND,
            gateway_refund_id=gateway_refund_id,
            refund_reason=reason,
            processed_at=now,
            details={
                "originalPaymentId": str(payment.id),
                "paymentIntentId": payment.payment_intent_id,
            }
        )

    async def _mark_booking_refunded(self, payment: Payment) -> None:
        booking = await self.bookings.get_booking_for_update(payment.booking_id)
        if booking.payment_status != BookingPaymentStatus.PAID:
            return
        await self._update_booking_payment(booking, payment_status=BookingPaymentStatus.REFUNDED)
        self.bookings.record_payment_event(
            booking.id,
            BookingAction.REFUNDED,
            booking.status,
            f"Payment {payment.id} refunded ({payment.refund_amount})"
        )

    async def handle_webhook(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify and apply a gateway webhook.

        Signature verification happens before anything is read or written.
        Unknown intents and event types are acknowledged and ignored.
        """
        event = self.gateway.construct_webhook_event(payload, signature)
        event_id = event.get("id")
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}

        marker = CacheKeyBuilder.webhook_event(event_id) if event_id else None
        if marker and self.cache is not None and await self.cache.exists(marker):
            logger.info(f"Webhook event {event_id} already processed")
            return {"event_id": event_id, "type": event_type, "status": "duplicate"}

        status = "processed"
        try:
            if event_type in WEBHOOK_OUTCOMES:
                failure = (obj.get("last_payment_error") or {}).get("message")
                await self.reconcile_payment_outcome(obj["id"], WEBHOOK_OUTCOMES[event_type], failure)
            elif event_type == "charge.refunded":
                await self._apply_charge_refunded(obj)
            else:
                logger.info(f"Ignoring webhook event type {event_type}")
                status = "ignored"
        except PaymentNotFoundError:
            logger.warning(f"Webhook {event_type} references an unknown payment intent")
            status = "ignored"

        if marker and self.cache is not None:
            await self.cache.set(marker, True, CacheTTL.WEBHOOK_EVENT)
        return {"event_id": event_id, "type": event_type, "status": status}

    async def _apply_charge_refunded(self, charge: Dict[str, Any]) -> None:
        """Record refunds made at the gateway that the ledger has not seen yet."""
        intent_id = charge.get("payment_intent")
        if not intent_id:
            raise PaymentNotFoundError("<charge without payment intent>")

        try:
            payment = await self.get_payment_by_intent(intent_id)
            refunds = (charge.get("refunds") or {}).get("data") or []
            refunded_before = payment.refund_amount
            if refunds:
                for refund in refunds:
                    if refund.get("status") in ("failed", "canceled"):
                        continue
                    await self.record_refund(
                        payment,
                        from_minor_units(refund["amount"]),
                        refund.get("reason") or "gateway_refund",
                        gateway_refund_id=refund["id"]
                    )
            else:
                # Older payloads carry only the cumulative refunded amount
                delta = from_minor_units(charge.get("amount_refunded", 0)) - payment.refund_amount
                if delta > 0:
                    await self.record_refund(payment, delta, "gateway_refund")
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        if payment.refund_amount != refunded_before:
            await self.invalidator.guide_earnings(payment.guide_id)
            log_business_event(
                "payment_refunded",
                {"payment_id": str(payment.id), "refund_amount": str(payment.refund_amount), "source": "webhook"}
            )

    async def void_stale_intents(self, older_than_hours: Optional[int] = None) -> Dict[str, int]:
        """Cancel pending intents nobody completed; one failure does not stop the sweep."""
        hours = older_than_hours or self.settings.stale_payment_intent_hours
        cutoff = utcnow() - timedelta(hours=hours)
        stale = (await self.session.execute(
            select(Payment).where(
                Payment.transaction_type == TransactionType.PAYMENT,
                Payment.status == PaymentStatus.PENDING,
                Payment.created_at < cutoff
            )
        )).scalars().all()

        voided = failed = 0
        for payment in stale:
            try:
                await self.cancel_payment_intent(payment.id, None)
                voided += 1
            except PaymentServiceError as e:
                failed += 1
                logger.error(f"Failed to void stale intent {payment.payment_intent_id}: {e.message}")

        logger.info(f"Stale intent sweep: {voided} voided, {failed} failed")
        return {"voided": voided, "failed": failed}

    async def find_active_payment(self, booking_id: UUID) -> Optional[Payment]:
        return (await self.session.execute(
            select(Payment).where(
                Payment.booking_id == booking_id,
                Payment.transaction_type == TransactionType.PAYMENT,
                Payment.status.in_(ACTIVE_PAYMENT_STATUSES)
            )
        )).scalars().first()

    async def find_voidable_payments(self, booking_id: UUID) -> List[Payment]:
        """Intents that are still open at the gateway: pending, or declined and retryable."""
        result = await self.session.execute(
            select(Payment).where(
                Payment.booking_id == booking_id,
                Payment.transaction_type == TransactionType.PAYMENT,
                Payment.status.in_((PaymentStatus.PENDING, PaymentStatus.FAILED))
            )
        )
        return list(result.scalars().all())

    async def find_refundable_payment(self, booking_id: UUID) -> Optional[Payment]:
        return (await self.session.execute(
            select(Payment)
            .where(
                Payment.booking_id == booking_id,
                Payment.transaction_type == TransactionType.PAYMENT,
                Payment.status.in_(REFUNDABLE_STATUSES)
            )
            .execution_options(populate_existing=True)
        )).scalars().first()

    async def get_payment_by_intent(self, payment_intent_id: str) -> Payment:
        payment = (await self.session.execute(
            select(Payment)
            .where(Payment.payment_intent_id == payment_intent_id)
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if payment is None:
            raise PaymentNotFoundError(payment_intent_id)
        return payment

    async def _get_payment(self, payment_id: UUID) -> Payment:
        payment = (await self.session.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if payment is None:
            raise PaymentNotFoundError(str(payment_id))
        return payment

    async def get_payment(self, payment_id: UUID, actor: Actor) -> Payment:
        payment = await self._get_payment(payment_id)
        if not (actor.is_admin or actor.id in (payment.tourist_id, payment.guide_id)):
            raise AuthorizationError("Not authorized to view this payment")
        return payment

    async def list_user_payments(
        self,
        actor: Actor,
        page: int = 1,
        page_size: int = 20
    ) -> Tuple[List[Payment], int]:
        conditions = []
        if actor.role == UserRole.TOURIST:
            conditions.append(Payment.tourist_id == actor.id)
        elif actor.role == UserRole.GUIDE:
            conditions.append(Payment.guide_id == actor.id)

        total = (await self.session.execute(
            select(func.count(Payment.id)).where(*conditions)
        )).scalar_one()
        result = await self.session.execute(
            select(Payment)
            .where(*conditions)
            .order_by(Payment.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total

    async def get_booking_payments(self, booking_id: UUID, actor: Actor) -> List[Payment]:
        await self.bookings.get_booking(booking_id, actor)
        result = await self.session.execute(
            select(Payment)
            .where(Payment.booking_id == booking_id)
            .order_by(Payment.created_at)
        )
        return list(result.scalars().all())

    def _period(self, start: Optional[datetime], end: Optional[datetime]) -> list:
        conditions = []
        if start is not None:
            conditions.append(Payment.created_at >= start)
        if end is not None:
            conditions.append(Payment.created_at <= end)
        return conditions

    async def payment_stats(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Counts and sums grouped by transaction type and status."""
        rows = (await self.session.execute(
            select(
                Payment.transaction_type,
                Payment.status,
                func.count(Payment.id),
                func.coalesce(func.sum(Payment.amount), 0)
            )
            .where(*self._period(start, end))
            .group_by(Payment.transaction_type, Payment.status)
        )).all()

        stats: Dict[str, Dict[str, Any]] = {}
        for transaction_type, status, count, total in rows:
            bucket = stats.setdefault(transaction_type.value, {})
            bucket[status.value] = {"count": count, "amount": to_money(total)}

        return {"by_type": stats, "revenue": await self.platform_revenue(start, end)}

    async def platform_revenue(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> Dict[str, Decimal]:
        """Gross captured money, refunds, and the platform/guide split of the net."""
        period = self._period(start, end)
        gross = (await self.session.execute(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(
                and_(
                    Payment.transaction_type == TransactionType.PAYMENT,
                    Payment.status.in_(REFUNDABLE_STATUSES + (PaymentStatus.REFUNDED,)),
                    *period
                )
            )
        )).scalar_one()
        refunds = (await self.session.execute(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(
                and_(Payment.transaction_type == TransactionType.REFUND, *period)
            )
        )).scalar_one()

        gross = to_money(gross)
        refunds = to_money(refunds)
        net = gross - refunds
        fee = calculate_platform_fee(net, self.settings.platform_fee_percentage)
        return {
            "gross": gross,
            "refunds": refunds,
            "net": net,
            "platform_fee": fee,
            "guide_payouts": to_money(net - fee),
        }
