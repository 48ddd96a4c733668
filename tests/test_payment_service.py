from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from guideway_booking_platform.models.base import utcnow
from guideway_booking_platform.models.booking import Booking, BookingPaymentStatus, BookingStatus
from guideway_booking_platform.models.booking_history import BookingAction, BookingHistory
from guideway_booking_platform.models.payment import Payment, PaymentStatus, TransactionType
from guideway_booking_platform.models.user import Actor, UserRole
from guideway_booking_platform.services.payment_service import PaymentService
from guideway_booking_platform.utils.exceptions import (
    AuthorizationError,
    ConflictError,
    InvalidInputError,
    InvalidStateError,
    PaymentServiceError,
)

from .conftest import create_user


async def count_payments(session, booking_id, transaction_type=TransactionType.PAYMENT):
    return (await session.execute(
        select(func.count(Payment.id)).where(
            Payment.booking_id == booking_id,
            Payment.transaction_type == transaction_type
        )
    )).scalar_one()


async def test_intent_opens_pending_payment_for_confirmed_booking(market):
    booking = await market.confirmed_booking(people=3)
    booking_id = booking.id

    payment, client_secret = await market.payments.create_payment_intent(market.tourist, booking_id)

    assert payment.status == PaymentStatus.PENDING
    assert payment.amount == Decimal("150.00")
    assert payment.transaction_type == TransactionType.PAYMENT
    assert client_secret == f"{payment.payment_intent_id}_secret"

    call = market.gateway.calls_to("create_intent")[0]
    assert call["amount"] == Decimal("150.00")
    assert call["idempotency_key"] == f"payment-intent:{booking_id}:0"
    assert call["metadata"]["booking_id"] == str(booking_id)

    booking = await market.reload(Booking, booking_id)
    assert booking.payment_intent_id == payment.payment_intent_id
    assert booking.payment_status == BookingPaymentStatus.PENDING


async def test_intent_requires_confirmed_booking_owned_by_caller(market, session):
    stranger = Actor.from_user(await create_user(session, UserRole.TOURIST))
    booking = await market.pending_booking()
    booking_id = booking.id

    with pytest.raises(InvalidStateError):
        await market.intent_for(booking_id)

    await market.bookings.transition_status(booking_id, market.guide, BookingStatus.CONFIRMED)
    with pytest.raises(AuthorizationError):
        await market.payments.create_payment_intent(stranger, booking_id)

    assert market.gateway.calls_to("create_intent") == []


async def test_amount_cannot_exceed_booking_total(market):
    booking = await market.confirmed_booking()
    booking_id = booking.id

    with pytest.raises(InvalidInputError):
        await market.payments.create_payment_intent(market.tourist, booking_id, amount=Decimal("100.01"))

    payment, _ = await market.payments.create_payment_intent(market.tourist, booking_id, amount=Decimal("40"))
    assert payment.amount == Decimal("40.00")


async def test_second_intent_while_one_is_open_conflicts(market):
    booking = await market.confirmed_booking()
    booking_id = booking.id
    await market.intent_for(booking_id)

    with pytest.raises(ConflictError, match="already in progress"):
        await market.intent_for(booking_id)

    assert len(market.gateway.calls_to("create_intent")) == 1
    assert await count_payments(market.session, booking_id) == 1


async def test_paid_booking_rejects_new_intent(market):
    booking, _ = await market.paid_booking()
    booking_id = booking.id

    with pytest.raises(ConflictError, match="already paid"):
        await market.intent_for(booking_id)


async def test_concurrent_intents_leave_exactly_one_payment(market, db):
    booking = await market.confirmed_booking()
    booking_id = booking.id
    winners = []

    async def racing_request():
        async with db.session_factory() as other:
            service = PaymentService(other, market.gateway, settings=market.settings)
            payment, _ = await service.create_payment_intent(market.tourist, booking_id)
            winners.append(payment.payment_intent_id)

    market.gateway.hooks["create_intent"] = racing_request

    with pytest.raises(ConflictError):
        await market.intent_for(booking_id)

    assert len(winners) == 1
    assert await count_payments(market.session, booking_id) == 1
    # Both requests shared the idempotency key; the surviving row owns the intent
    assert market.gateway.calls_to("cancel_intent") == []
    assert market.gateway.intents[winners[0]].status == "requires_payment_method"


async def test_gateway_failure_writes_nothing(market):
    booking = await market.confirmed_booking()
    booking_id = booking.id
    market.gateway.fail.add("create_intent")

    with pytest.raises(PaymentServiceError):
        await market.intent_for(booking_id)

    assert await count_payments(market.session, booking_id) == 0
    assert (await market.reload(Booking, booking_id)).payment_intent_id is None


async def test_gateway_customer_is_reused(market):
    booking = await market.confirmed_booking()
    payment = await market.intent_for(booking.id)
    await market.payments.cancel_payment_intent(payment.id, market.tourist)

    second = await market.intent_for(booking.id)

    assert len(market.gateway.calls_to("create_customer")) == 1
    assert second.stripe_customer_id == payment.stripe_customer_id
    assert market.gateway.calls_to("create_intent")[1]["idempotency_key"].endswith(":1")


async def test_reconcile_is_idempotent(market, session):
    booking = await market.confirmed_booking()
    booking_id = booking.id
    payment = await market.intent_for(booking_id)
    intent_id = payment.payment_intent_id

    first = await market.payments.reconcile_payment_outcome(intent_id, PaymentStatus.COMPLETED)
    processed_at = first.processed_at
    booking_version = (await market.reload(Booking, booking_id)).version

    again = await market.payments.reconcile_payment_outcome(intent_id, PaymentStatus.COMPLETED)

    assert again.status == PaymentStatus.COMPLETED
    assert again.processed_at == processed_at
    assert (await market.reload(Booking, booking_id)).version == booking_version

    received = (await session.execute(
        select(func.count(BookingHistory.id)).where(
            BookingHistory.booking_id == booking_id,
            BookingHistory.action == BookingAction.PAYMENT_RECEIVED
        )
    )).scalar_one()
    assert received == 1


async def test_late_failure_does_not_undo_success(market):
    booking = await market.confirmed_booking()
    booking_id = booking.id
    payment = await market.intent_for(booking_id)
    intent_id = payment.payment_intent_id

    await market.payments.reconcile_payment_outcome(intent_id, PaymentStatus.COMPLETED)
    payment = await market.payments.reconcile_payment_outcome(intent_id, PaymentStatus.FAILED, "card_declined")
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.failure_reason is None

    payment = await market.payments.reconcile_payment_outcome(intent_id, PaymentStatus.PROCESSING)
    assert payment.status == PaymentStatus.COMPLETED
    assert (await market.reload(Booking, booking_id)).payment_status == BookingPaymentStatus.PAID


async def test_failed_payment_can_still_succeed(market):
    booking = await market.confirmed_booking()
    booking_id = booking.id
    payment = await market.intent_for(booking_id)
    intent_id = payment.payment_intent_id

    failed = await market.payments.reconcile_payment_outcome(intent_id, PaymentStatus.FAILED, "card_declined")
    assert failed.failure_reason == "card_declined"
    processed_at = failed.processed_at
    assert (await market.reload(Booking, booking_id)).payment_status == BookingPaymentStatus.FAILED

    completed = await market.payments.reconcile_payment_outcome(intent_id, PaymentStatus.COMPLETED)
    assert completed.status == PaymentStatus.COMPLETED
    assert completed.processed_at == processed_at
    assert (await market.reload(Booking, booking_id)).payment_status == BookingPaymentStatus.PAID


async def test_failed_payment_frees_the_slot(market):
    booking = await market.confirmed_booking()
    booking_id = booking.id
    payment = await market.intent_for(booking_id)
    declined_id, declined_intent = payment.id, payment.payment_intent_id
    await market.payments.reconcile_payment_outcome(declined_intent, PaymentStatus.FAILED)

    retry = await market.intent_for(booking_id)
    retry_id = retry.id

    assert retry.payment_intent_id != declined_intent
    assert (await market.reload(Booking, booking_id)).payment_status == BookingPaymentStatus.PENDING
    assert [call["intent_id"] for call in market.gateway.calls_to("cancel_intent")] == [declined_intent]
    assert (await market.reload(Payment, declined_id)).status == PaymentStatus.CANCELLED

    # The voided intent can no longer claim the booking
    late = await market.payments.reconcile_payment_outcome(declined_intent, PaymentStatus.COMPLETED)
    assert late.status == PaymentStatus.CANCELLED
    assert (await market.reload(Payment, retry_id)).status == PaymentStatus.PENDING
    assert market.gateway.calls_to("refund") == []


async def test_retry_aborts_when_declined_intent_cannot_be_voided(market):
    booking = await market.confirmed_booking()
    booking_id = booking.id
    payment = await market.intent_for(booking_id)
    declined_id = payment.id
    await market.payments.reconcile_payment_outcome(payment.payment_intent_id, PaymentStatus.FAILED)
    market.gateway.fail.add("cancel_intent")

    with pytest.raises(PaymentServiceError):
        await market.payments.create_payment_intent(market.tourist, booking_id)

    assert len(market.gateway.calls_to("create_intent")) == 1
    assert (await market.reload(Payment, declined_id)).status == PaymentStatus.FAILED
    assert await count_payments(market.session, booking_id) == 1


async def test_late_capture_of_declined_intent_is_refunded_when_slot_is_taken(market):
    booking = await market.confirmed_booking()
    booking_id = booking.id
    first = await market.intent_for(booking_id)
    first_id, first_intent = first.id, first.payment_intent_id
    await market.payments.reconcile_payment_outcome(first_intent, PaymentStatus.FAILED, "card_declined")
    second = await market.intent_for(booking_id)
    second_id = second.id
    # Declined row left open, as if it was written before intents were voided on retry
    await market.session.execute(
        update(Payment).where(Payment.id == first_id).values(status=PaymentStatus.FAILED)
    )
    await market.session.commit()

    late = await market.payments.reconcile_payment_outcome(first_intent, PaymentStatus.COMPLETED)

    assert late.status == PaymentStatus.REFUNDED
    assert late.refund_amount == late.amount
    refund = market.gateway.calls_to("refund")[0]
    assert refund["intent_id"] == first_intent
    assert refund["idempotency_key"] == f"surplus-capture:{first_id}"
    assert await count_payments(market.session, booking_id, TransactionType.REFUND) == 1
    assert (await market.reload(Payment, second_id)).status == PaymentStatus.PENDING
    assert (await market.reload(Booking, booking_id)).payment_status == BookingPaymentStatus.PENDING

    await market.payments.reconcile_payment_outcome(first_intent, PaymentStatus.COMPLETED)
    assert len(market.gateway.calls_to("refund")) == 1


async def test_unsupported_outcome_rejected(market):
    with pytest.raises(InvalidInputError):
        await market.payments.reconcile_payment_outcome("pi_missing", PaymentStatus.REFUNDED)


async def test_capture_after_booking_closed_is_refunded(market):
    booking = await market.confirmed_booking()
    booking_id = booking.id
    payment = await market.intent_for(booking_id)
    intent_id = payment.payment_intent_id

    # Force the booking out from under the open intent
    await market.session.execute(
        update(Booking).where(Booking.id == booking_id).values(status=BookingStatus.CANCELLED)
    )
    await market.session.commit()

    payment = await market.payments.reconcile_payment_outcome(intent_id, PaymentStatus.COMPLETED)

    assert payment.status == PaymentStatus.REFUNDED
    assert payment.processed_at is not None
    assert market.gateway.calls_to("refund")[0]["amount"] == payment.amount
    booking = await market.reload(Booking, booking_id)
    assert booking.status == BookingStatus.CANCELLED
    assert booking.payment_status == BookingPaymentStatus.REFUNDED
    assert await count_payments(market.session, booking_id, TransactionType.REFUND) == 1


async def test_capture_refund_failure_leaves_payment_open(market):
    booking = await market.confirmed_booking()
    booking_id = booking.id
    payment = await market.intent_for(booking_id)
    payment_id, intent_id = payment.id, payment.payment_intent_id
    await market.session.execute(
        update(Booking).where(Booking.id == booking_id).values(status=BookingStatus.CANCELLED)
    )
    await market.session.commit()
    market.gateway.timeout.add("refund")

    with pytest.raises(PaymentServiceError):
        await market.payments.reconcile_payment_outcome(intent_id, PaymentStatus.COMPLETED)

    assert (await market.reload(Payment, payment_id)).status == PaymentStatus.PENDING
    assert await count_payments(market.session, booking_id, TransactionType.REFUND) == 0


async def test_confirm_payment_follows_gateway_state(market):
    booking = await market.confirmed_booking()
    booking_id = booking.id
    payment = await market.intent_for(booking_id)
    intent_id = payment.payment_intent_id

    still_open = await market.payments.confirm_payment(intent_id, market.tourist)
    assert still_open.status == PaymentStatus.PENDING

    market.gateway.set_status(intent_id, "succeeded")
    confirmed = await market.payments.confirm_payment(intent_id, market.tourist)
    assert confirmed.status == PaymentStatus.COMPLETED
    assert (await market.reload(Booking, booking_id)).payment_status == BookingPaymentStatus.PAID


async def test_confirm_payment_records_decline(market):
    booking = await market.confirmed_booking()
    payment = await market.intent_for(booking.id)
    intent_id = payment.payment_intent_id
    market.gateway.set_status(intent_id, "requires_payment_method", last_error="Your card was declined.")

    declined = await market.payments.confirm_payment(intent_id, market.tourist)

    assert declined.status == PaymentStatus.FAILED
    assert declined.failure_reason == "Your card was declined."


async def test_only_payer_confirms(market):
    booking = await market.confirmed_booking()
    payment = await market.intent_for(booking.id)

    with pytest.raises(AuthorizationError):
        await market.payments.confirm_payment(payment.payment_intent_id, market.guide)


async def test_cancel_intent_voids_at_gateway(market):
    booking = await market.confirmed_booking()
    payment = await market.intent_for(booking.id)
    payment_id = payment.id

    with pytest.raises(AuthorizationError):
        await market.payments.cancel_payment_intent(payment_id, market.guide)

    cancelled = await market.payments.cancel_payment_intent(payment_id, market.tourist)

    assert cancelled.status == PaymentStatus.CANCELLED
    assert market.gateway.calls_to("cancel_intent")[0]["intent_id"] == payment.payment_intent_id

    with pytest.raises(InvalidStateError):
        await market.payments.cancel_payment_intent(payment_id, market.tourist)


async def test_partial_then_full_refund(market):
    booking, payment = await market.paid_booking()
    booking_id, payment_id = booking.id, payment.id

    payment, first = await market.payments.refund_payment(payment_id, Decimal("30.00"), actor=market.admin)
    assert payment.status == PaymentStatus.PARTIALLY_REFUNDED
    assert payment.refund_amount == Decimal("30.00")
    assert first.transaction_type == TransactionType.REFUND
    assert first.original_payment_id == payment_id
    assert first.amount == Decimal("30.00")
    assert first.gateway_refund_id is not None
    assert (await market.reload(Booking, booking_id)).payment_status == BookingPaymentStatus.REFUNDED

    payment, second = await market.payments.refund_payment(payment_id, actor=market.admin)
    assert payment.status == PaymentStatus.REFUNDED
    assert payment.refund_amount == Decimal("100.00")
    assert second.amount == Decimal("70.00")
    assert await count_payments(market.session, booking_id, TransactionType.REFUND) == 2

    with pytest.raises(InvalidStateError):
        await market.payments.refund_payment(payment_id, Decimal("1.00"))


async def test_refund_above_remaining_leaves_payment_untouched(market):
    _, payment = await market.paid_booking()
    payment_id = payment.id
    await market.payments.refund_payment(payment_id, Decimal("60.00"))

    with pytest.raises(InvalidInputError, match="exceeds refundable amount 40.00"):
        await market.payments.refund_payment(payment_id, Decimal("40.01"))

    payment = await market.reload(Payment, payment_id)
    assert payment.refund_amount == Decimal("60.00")
    assert payment.status == PaymentStatus.PARTIALLY_REFUNDED
    assert len(market.gateway.calls_to("refund")) == 1


async def test_refund_gateway_failure_changes_nothing(market):
    booking, payment = await market.paid_booking()
    booking_id, payment_id = booking.id, payment.id
    market.gateway.timeout.add("refund")

    with pytest.raises(PaymentServiceError):
        await market.payments.refund_payment(payment_id, Decimal("10.00"))

    payment = await market.reload(Payment, payment_id)
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.refund_amount == Decimal("0.00")
    assert await count_payments(market.session, booking_id, TransactionType.REFUND) == 0
    assert (await market.reload(Booking, booking_id)).payment_status == BookingPaymentStatus.PAID


async def test_refund_of_completed_booking_marks_it_refunded(market):
    booking, payment = await market.completed_booking()
    booking_id = booking.id

    await market.payments.refund_payment(payment.id, Decimal("20.00"))

    booking = await market.reload(Booking, booking_id)
    assert booking.status == BookingStatus.COMPLETED
    assert booking.payment_status == BookingPaymentStatus.REFUNDED


async def test_pending_payment_cannot_be_refunded(market):
    booking = await market.confirmed_booking()
    payment = await market.intent_for(booking.id)

    with pytest.raises(InvalidStateError):
        await market.payments.refund_payment(payment.id)


async def test_stale_intents_are_voided(market):
    booking = await market.confirmed_booking()
    booking_id = booking.id
    payment = await market.intent_for(booking_id)
    fresh_booking = await market.confirmed_booking()
    await market.intent_for(fresh_booking.id)

    await market.session.execute(
        update(Payment)
        .where(Payment.id == payment.id)
        .values(created_at=utcnow() - timedelta(hours=30))
    )
    await market.session.commit()

    result = await market.payments.void_stale_intents(older_than_hours=24)

    assert result == {"voided": 1, "failed": 0}
    assert (await market.reload(Payment, payment.id)).status == PaymentStatus.CANCELLED
    assert len(market.gateway.calls_to("cancel_intent")) == 1


async def test_stale_sweep_counts_gateway_failures(market):
    booking = await market.confirmed_booking()
    payment = await market.intent_for(booking.id)
    await market.session.execute(
        update(Payment)
        .where(Payment.id == payment.id)
        .values(created_at=utcnow() - timedelta(hours=30))
    )
    await market.session.commit()
    market.gateway.fail.add("cancel_intent")

    result = await market.payments.void_stale_intents(older_than_hours=24)

    assert result == {"voided": 0, "failed": 1}
    assert (await market.reload(Payment, payment.id)).status == PaymentStatus.PENDING


async def test_payment_listings_are_scoped(market, session):
    stranger = Actor.from_user(await create_user(session, UserRole.TOURIST))
    booking, payment = await market.paid_booking()
    booking_id = booking.id
    await market.payments.refund_payment(payment.id, Decimal("10.00"))

    items, total = await market.payments.list_user_payments(market.tourist)
    assert total == 2
    assert {item.transaction_type for item in items} == {TransactionType.PAYMENT, TransactionType.REFUND}

    _, total = await market.payments.list_user_payments(stranger)
    assert total == 0

    rows = await market.payments.get_booking_payments(booking_id, market.guide)
    assert len(rows) == 2
    with pytest.raises(AuthorizationError):
        await market.payments.get_booking_payments(booking_id, stranger)


async def test_stats_and_platform_revenue(market):
    _, payment = await market.paid_booking()
    await market.payments.refund_payment(payment.id, Decimal("30.00"))

    stats = await market.payments.payment_stats()

    assert stats["by_type"]["payment"]["partially_refunded"] == {"count": 1, "amount": Decimal("100.00")}
    assert stats["by_type"]["refund"]["completed"] == {"count": 1, "amount": Decimal("30.00")}
    assert stats["revenue"] == {
        "gross": Decimal("100.00"),
        "refunds": Decimal("30.00"),
        "net": Decimal("70.00"),
        "platform_fee": Decimal("7.00"),
        "guide_payouts": Decimal("63.00"),
    }
