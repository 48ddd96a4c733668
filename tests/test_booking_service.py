from datetime import date, timedelta
from decimal import Decimal

import pytest

from guideway_booking_platform.models.booking import (
    Booking,
    BookingPaymentStatus,
    BookingStatus,
    CancelledBy,
)
from guideway_booking_platform.models.booking_history import BookingAction
from guideway_booking_platform.models.listing import Listing, ListingStatus
from guideway_booking_platform.models.payment import PaymentStatus
from guideway_booking_platform.models.user import Actor, UserRole
from guideway_booking_platform.services.booking_service import BookingService
from guideway_booking_platform.utils.exceptions import (
    AuthorizationError,
    InvalidInputError,
    InvalidStateError,
    InvalidTransitionError,
    ListingNotFoundError,
    OptimisticLockError,
)

from .conftest import create_listing, create_user


async def test_booking_lifecycle_from_request_to_completion(market):
    booking = await market.pending_booking(people=2)
    booking_id = booking.id

    assert booking.total_price == Decimal("100.00")
    assert booking.status == BookingStatus.PENDING
    assert booking.payment_status == BookingPaymentStatus.PENDING
    assert booking.end_time == "12:00"
    assert booking.version == 1

    booking = await market.bookings.transition_status(booking_id, market.guide, BookingStatus.CONFIRMED)
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.version == 2
    assert (await market.listing()).total_bookings == 1

    payment = await market.intent_for(booking_id)
    await market.payments.reconcile_payment_outcome(payment.payment_intent_id, PaymentStatus.COMPLETED)
    booking = await market.reload(Booking, booking_id)
    assert booking.payment_status == BookingPaymentStatus.PAID

    booking = await market.bookings.complete_booking(booking_id)
    assert booking.status == BookingStatus.COMPLETED
    assert booking.completed_at is not None

    history = await market.bookings.get_booking_history(booking_id, market.tourist)
    assert [entry.action for entry in history] == [
        BookingAction.CREATED,
        BookingAction.CONFIRMED,
        BookingAction.PAYMENT_RECEIVED,
        BookingAction.COMPLETED,
    ]
    assert history[-1].performed_by == "system"
    assert history[1].performed_by == str(market.guide.id)


async def test_rejected_booking_is_terminal(market):
    booking = await market.pending_booking()
    booking_id = booking.id

    booking = await market.bookings.transition_status(
        booking_id, market.guide, BookingStatus.REJECTED, reason="fully booked"
    )
    assert booking.status == BookingStatus.REJECTED
    assert booking.cancelled_by == CancelledBy.GUIDE
    assert booking.cancellation_reason == "fully booked"
    assert booking.cancelled_at is not None

    with pytest.raises(InvalidTransitionError):
        await market.bookings.transition_status(booking_id, market.tourist, BookingStatus.CANCELLED)

    # Rejection does not count toward the listing's bookings
    assert (await market.listing()).total_bookings == 0


async def test_confirming_twice_counts_the_booking_once(market):
    booking = await market.pending_booking()
    booking_id = booking.id
    await market.bookings.transition_status(booking_id, market.guide, BookingStatus.CONFIRMED)

    with pytest.raises(InvalidTransitionError):
        await market.bookings.transition_status(booking_id, market.guide, BookingStatus.CONFIRMED)

    assert (await market.listing()).total_bookings == 1


async def test_only_the_listing_guide_confirms(market, session):
    other_guide = Actor.from_user(await create_user(session, UserRole.GUIDE))
    booking = await market.pending_booking()
    booking_id = booking.id

    with pytest.raises(AuthorizationError):
        await market.bookings.transition_status(booking_id, market.tourist, BookingStatus.CONFIRMED)
    with pytest.raises(AuthorizationError):
        await market.bookings.transition_status(booking_id, other_guide, BookingStatus.CONFIRMED)

    booking = await market.bookings.transition_status(booking_id, market.admin, BookingStatus.CONFIRMED)
    assert booking.status == BookingStatus.CONFIRMED


async def test_stranger_cannot_cancel(market, session):
    stranger = Actor.from_user(await create_user(session, UserRole.TOURIST))
    booking = await market.pending_booking()
    booking_id = booking.id

    with pytest.raises(AuthorizationError):
        await market.bookings.transition_status(booking_id, stranger, BookingStatus.CANCELLED)

    booking = await market.bookings.transition_status(
        booking_id, market.tourist, BookingStatus.CANCELLED, reason="change of plans"
    )
    assert booking.cancelled_by == CancelledBy.TOURIST


async def test_admin_cancellation_is_attributed_to_admin(market):
    booking = await market.pending_booking()
    booking = await market.bookings.transition_status(booking.id, market.admin, BookingStatus.CANCELLED)
    assert booking.cancelled_by == CancelledBy.ADMIN


async def test_paid_booking_cannot_be_cancelled_without_refund(market):
    booking, _ = await market.paid_booking()
    booking_id = booking.id

    with pytest.raises(InvalidStateError, match="refund"):
        await market.bookings.transition_status(booking_id, market.tourist, BookingStatus.CANCELLED)

    booking = await market.reload(Booking, booking_id)
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.payment_status == BookingPaymentStatus.PAID


async def test_cannot_cancel_after_the_tour_date(market):
    past = date.today() - timedelta(days=2)
    booking = await market.bookings.create_booking(
        tourist_id=market.tourist.id,
        listing_id=market.listing_id,
        booking_date=past,
        start_time="10:00",
        number_of_people=1,
        today=past,
    )
    booking_id = booking.id

    with pytest.raises(InvalidStateError, match="date has passed"):
        await market.bookings.transition_status(booking_id, market.tourist, BookingStatus.CANCELLED)

    assert (await market.reload(Booking, booking_id)).status == BookingStatus.PENDING


async def test_complete_requires_confirmed_and_paid(market):
    booking = await market.confirmed_booking()
    booking_id = booking.id

    with pytest.raises(InvalidStateError):
        await market.bookings.complete_booking(booking_id, market.guide)

    pending = await market.pending_booking()
    pending_id = pending.id
    with pytest.raises(InvalidStateError, match="confirmed and paid"):
        await market.bookings.transition_status(pending_id, market.admin, BookingStatus.COMPLETED)


async def test_tourist_cannot_complete(market):
    booking, _ = await market.paid_booking()
    booking_id = booking.id

    with pytest.raises(AuthorizationError):
        await market.bookings.complete_booking(booking_id, market.tourist)


async def test_completion_through_transition_status_retries_once_per_attempt(market, monkeypatch):
    booking, _ = await market.paid_booking()
    booking_id = booking.id
    bookings = market.bookings
    attempts = []

    async def always_stale(stale, target, actor, reason=None, extra_values=None):
        attempts.append(target)
        raise OptimisticLockError("Booking", str(stale.id))

    monkeypatch.setattr(bookings, "apply_transition", always_stale)

    with pytest.raises(OptimisticLockError):
        await bookings.transition_status(booking_id, market.admin, BookingStatus.COMPLETED)

    assert attempts == [BookingStatus.COMPLETED] * 3
    assert (await market.reload(Booking, booking_id)).status == BookingStatus.CONFIRMED


async def test_stale_version_loses_the_race(market, db):
    booking = await market.pending_booking()
    booking_id = booking.id

    async with db.session_factory() as other:
        stale = await BookingService(other, settings=market.settings).get_booking_for_update(booking_id)

        await market.bookings.transition_status(booking_id, market.guide, BookingStatus.CONFIRMED)

        with pytest.raises(OptimisticLockError):
            await BookingService(other, settings=market.settings).apply_transition(
                stale, BookingStatus.REJECTED, market.guide, reason="too late"
            )
        await other.rollback()

    booking = await market.reload(Booking, booking_id)
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.version == 2


async def test_create_booking_validates_party_and_listing(market, session):
    with pytest.raises(InvalidInputError, match="maximum group size"):
        await market.pending_booking(people=11)

    with pytest.raises(AuthorizationError):
        await market.bookings.create_booking(
            tourist_id=market.guide.id,
            listing_id=market.listing_id,
            booking_date=date.today() + timedelta(days=3),
            start_time="09:00",
            number_of_people=1,
        )

    draft = await create_listing(session, market.guide.id, status=ListingStatus.DRAFT)
    with pytest.raises(InvalidStateError):
        await market.bookings.create_booking(
            tourist_id=market.tourist.id,
            listing_id=draft.id,
            booking_date=date.today() + timedelta(days=3),
            start_time="09:00",
            number_of_people=1,
        )

    with pytest.raises(ListingNotFoundError):
        await market.bookings.create_booking(
            tourist_id=market.tourist.id,
            listing_id=market.admin.id,
            booking_date=date.today() + timedelta(days=3),
            start_time="09:00",
            number_of_people=1,
        )


async def test_inactive_guide_blocks_new_bookings(market, session):
    guide = await create_user(session, UserRole.GUIDE, is_active=False)
    listing = await create_listing(session, guide.id)

    with pytest.raises(InvalidStateError, match="Guide"):
        await market.bookings.create_booking(
            tourist_id=market.tourist.id,
            listing_id=listing.id,
            booking_date=date.today() + timedelta(days=3),
            start_time="09:00",
            number_of_people=1,
        )


async def test_price_is_fixed_at_booking_time(market, session):
    booking = await market.pending_booking(people=3)
    booking_id = booking.id

    listing = await session.get(Listing, market.listing_id)
    listing.tour_fee = Decimal("80.00")
    await session.commit()

    booking = await market.bookings.transition_status(booking_id, market.guide, BookingStatus.CONFIRMED)
    assert booking.total_price == Decimal("150.00")


async def test_visibility_of_bookings(market, session):
    stranger = Actor.from_user(await create_user(session, UserRole.TOURIST))
    booking = await market.pending_booking()
    booking_id = booking.id

    assert (await market.bookings.get_booking(booking_id, market.guide)).id == booking_id
    assert (await market.bookings.get_booking(booking_id, market.admin)).id == booking_id
    with pytest.raises(AuthorizationError):
        await market.bookings.get_booking(booking_id, stranger)


async def test_lists_and_stats_are_scoped(market):
    first = await market.pending_booking()
    await market.bookings.transition_status(first.id, market.guide, BookingStatus.REJECTED, reason="no")
    await market.paid_booking(people=4)

    items, total = await market.bookings.list_tourist_bookings(market.tourist.id)
    assert total == 2
    assert len(items) == 2

    items, total = await market.bookings.list_guide_bookings(market.guide.id, status=BookingStatus.CONFIRMED)
    assert total == 1
    assert items[0].number_of_people == 4

    stats = await market.bookings.booking_stats(market.tourist)
    assert stats["total"] == 2
    assert stats["by_status"]["rejected"] == 1
    assert stats["by_status"]["confirmed"] == 1
    assert stats["paid_amount"] == Decimal("200.00")
