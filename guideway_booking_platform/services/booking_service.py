"""
Booking service: the booking state machine.

Status changes are compare-and-swap updates guarded by ``Booking.version``
and the status the caller validated against. A lost race raises
``OptimisticLockError``, which ``retry_on_concurrency_error`` retries after
re-reading the booking.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..cache import CacheInvalidator, RedisCache
from ..config import Settings, get_settings
from ..models.base import utcnow
from ..models.booking import Booking, BookingPaymentStatus, BookingStatus, CancelledBy
from ..models.booking_history import BookingAction, BookingHistory
from ..models.listing import Listing
from ..models.user import Actor, User, UserRole
from ..utils.exceptions import (
    AuthorizationError,
    BookingNotFoundError,
    InvalidStateError,
    InvalidTransitionError,
    ListingNotFoundError,
    OptimisticLockError,
    UserNotFoundError,
)
from ..utils.logging_config import log_business_event
from ..utils.retry import retry_on_concurrency_error
from .booking_rules import (
    can_transition,
    compute_end_time,
    compute_total_price,
    normalize_time,
    validate_booking_date,
    validate_party_size,
)
from .rating_service import RatingService

logger = logging.getLogger(__name__)

_ACTIONS = {
    BookingStatus.CONFIRMED: BookingAction.CONFIRMED,
    BookingStatus.REJECTED: BookingAction.REJECTED,
    BookingStatus.CANCELLED: BookingAction.CANCELLED,
    BookingStatus.COMPLETED: BookingAction.COMPLETED,
}


def cancelled_by_for(booking: Booking, actor: Actor) -> CancelledBy:
    if actor.is_admin:
        return CancelledBy.ADMIN
    if actor.id == booking.tourist_id:
        return CancelledBy.TOURIST
    return CancelledBy.GUIDE


class BookingService:
    """Service for the booking lifecycle."""

    def __init__(
        self,
        session: AsyncSession,
        cache: Optional[RedisCache] = None,
        settings: Optional[Settings] = None
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.invalidator = CacheInvalidator(cache)
        self.ratings = RatingService(session)

    async def create_booking(
        self,
        tourist_id: UUID,
        listing_id: UUID,
        booking_date: date,
        start_time: str,
        number_of_people: int,
        special_requests: Optional[str] = None,
        today: Optional[date] = None
    ) -> Booking:
        """
        Create a pending booking for a tourist.

        End time and total price are derived from the listing before the row
        is written; neither is recomputed afterwards.

        Raises:
            UserNotFoundError / ListingNotFoundError: missing tourist or listing
            AuthorizationError: caller is not an active tourist
            InvalidStateError: listing or its guide is not taking bookings
            InvalidInputError: party size, date or time out of range
        """
        logger.info(f"Creating booking for tourist {tourist_id}, listing {listing_id}")

        try:
            tourist = await self.session.get(User, tourist_id)
            if tourist is None:
                raise UserNotFoundError(str(tourist_id))
            if tourist.role != UserRole.TOURIST:
                raise AuthorizationError("Only tourists can create bookings", required_permission="tourist")
            if not tourist.is_active:
                raise AuthorizationError("Account is inactive")

            listing = await self.session.get(Listing, listing_id)
            if listing is None:
                raise ListingNotFoundError(str(listing_id))
            if not listing.is_bookable:
                raise InvalidStateError(
                    "Listing is not available for booking",
                    current_state=listing.status.value
                )

            guide = await self.session.get(User, listing.guide_id)
            if guide is None or not guide.is_active:
                raise InvalidStateError("Guide is not accepting bookings", current_state="guide_inactive")

            validate_party_size(number_of_people, listing.max_group_size, self.settings.max_group_size)
            validate_booking_date(booking_date, today)

            start = normalize_time(start_time)
            booking = Booking(
                tourist_id=tourist_id,
                guide_id=listing.guide_id,
                listing_id=listing_id,
                booking_date=booking_date,
                start_time=start,
                end_time=compute_end_time(start, listing.duration_hours),
                number_of_people=number_of_people,
                total_price=compute_total_price(listing.tour_fee, number_of_people),
                special_requests=special_requests,
                status=BookingStatus.PENDING,
                payment_status=BookingPaymentStatus.PENDING,
                version=1
            )
            self.session.add(booking)
            await self.session.flush()

            self._add_history(
                booking.id,
                BookingAction.CREATED,
                None,
                BookingStatus.PENDING,
                str(tourist_id),
                f"Booking created for {number_of_people} people"
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"Booking {booking.id} created with total {booking.total_price}")
        log_business_event(
            "booking_created",
            {
                "booking_id": str(booking.id),
                "listing_id": str(listing_id),
                "number_of_people": number_of_people,
                "total_price": str(booking.total_price),
            },
            user_id=str(tourist_id)
        )
        return booking

    @retry_on_concurrency_error(base_delay=0.1, max_delay=1.0)
    async def transition_status(
        self,
        booking_id: UUID,
        actor: Actor,
        target: BookingStatus,
        reason: Optional[str] = None
    ) -> Booking:
        """
        Move a booking along the transition table.

        A paid booking cannot be cancelled here because the refund must be
        issued in the same operation; ``BookingOrchestrator.cancel_booking``
        handles that case.
        """
        if target == BookingStatus.COMPLETED:
            return await self._complete_booking(booking_id, actor)

        try:
            booking = await self.get_booking_for_update(booking_id)
            self.authorize_transition(booking, actor, target)
            self.check_transition(booking, target)

            if target == BookingStatus.CANCELLED and booking.payment_status == BookingPaymentStatus.PAID:
                raise InvalidStateError(
                    "Paid bookings must be cancelled together with a refund",
                    current_state=booking.payment_status.value
                )

            previous = booking.status
            await self.apply_transition(booking, target, actor, reason=reason)
            if target == BookingStatus.CONFIRMED:
                await self.ratings.increment_booking_count(booking.listing_id)

            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        await self.invalidator.guide_earnings(booking.guide_id)
        logger.info(f"Booking {booking_id} moved {previous.value} -> {target.value} by {actor.id}")
        log_business_event(
            "booking_status_changed",
            {"booking_id": str(booking_id), "from": previous.value, "to": target.value, "reason": reason},
            user_id=str(actor.id)
        )
        return booking

    @retry_on_concurrency_error(base_delay=0.1, max_delay=1.0)
    async def complete_booking(self, booking_id: UUID, actor: Optional[Actor] = None) -> Booking:
        """Mark a confirmed and paid booking as completed.

        ``actor`` is None when the system completes the booking.
        """
        return await self._complete_booking(booking_id, actor)

    async def _complete_booking(self, booking_id: UUID, actor: Optional[Actor]) -> Booking:
        try:
            booking = await self.get_booking_for_update(booking_id)
            if actor is not None and not (actor.is_admin or actor.id == booking.guide_id):
                raise AuthorizationError("Only the guide or an admin can complete a booking")

            if booking.status != BookingStatus.CONFIRMED or booking.payment_status != BookingPaymentStatus.PAID:
                raise InvalidStateError(
                    "Booking can only be completed when it is confirmed and paid",
                    current_state=f"{booking.status.value}/{booking.payment_status.value}"
                )

            await self.apply_transition(booking, BookingStatus.COMPLETED, actor)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        await self.invalidator.guide_earnings(booking.guide_id)
        log_business_event(
            "booking_completed",
            {"booking_id": str(booking_id), "total_price": str(booking.total_price)},
            user_id=str(actor.id) if actor else None
        )
        return booking

    def authorize_transition(self, booking: Booking, actor: Actor, target: BookingStatus) -> None:
        """Confirm/reject belong to the listing's guide; cancel to either party. Admins may do all."""
        if actor.is_admin:
            return
        if target in (BookingStatus.CONFIRMED, BookingStatus.REJECTED):
            if actor.id != booking.guide_id:
                raise AuthorizationError(
                    f"Only the listing's guide can {'confirm' if target == BookingStatus.CONFIRMED else 'reject'} a booking"
                )
        elif target == BookingStatus.CANCELLED:
            if actor.id not in (booking.tourist_id, booking.guide_id):
                raise AuthorizationError("Not authorized to cancel this booking")
        else:
            raise AuthorizationError(f"Not authorized to move a booking to {target.value}")

    def check_transition(self, booking: Booking, target: BookingStatus, today: Optional[date] = None) -> None:
        if not can_transition(booking.status, target):
            raise InvalidTransitionError(str(booking.id), booking.status.value, target.value)

        if target == BookingStatus.CANCELLED and booking.booking_date < (today or date.today()):
            raise InvalidStateError(
                "Cannot cancel a booking whose date has passed",
                current_state=booking.status.value
            )

    async def apply_transition(
        self,
        booking: Booking,
        target: BookingStatus,
        actor: Optional[Actor],
        reason: Optional[str] = None,
        extra_values: Optional[Dict[str, Any]] = None,
        details: Optional[str] = None
    ) -> Booking:
        """
        Compare-and-swap the booking into ``target`` and record the history row.

        Does not commit. Raises ``OptimisticLockError`` if the booking changed
        since it was read.
        """
        now = utcnow()
        values: Dict[str, Any] = {"status": target, "version": Booking.version + 1}
        if target in (BookingStatus.CANCELLED, BookingStatus.REJECTED):
            values.update(
                cancellation_reason=reason,
                cancelled_by=cancelled_by_for(booking, actor) if actor else CancelledBy.ADMIN,
                cancelled_at=now
            )
        elif target == BookingStatus.COMPLETED:
            values["completed_at"] = now
        values.update(extra_values or {})

        result = await self.session.execute(
            update(Booking)
            .where(
                Booking.id == booking.id,
                Booking.version == booking.version,
                Booking.status == booking.status
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise OptimisticLockError("Booking", str(booking.id))

        previous = booking.status
        self._add_history(
            booking.id,
            _ACTIONS[target],
            previous,
            target,
            str(actor.id) if actor else "system",
            details or reason
        )
        await self.session.flush()
        await self.session.refresh(booking)
        return booking

    def _add_history(
        self,
        booking_id: UUID,
        action: BookingAction,
        from_status: Optional[BookingStatus],
        to_status: Optional[BookingStatus],
        performed_by: Optional[str],
        details: Optional[str] = None
    ) -> None:
        self.session.add(BookingHistory(
            booking_id=booking_id,
            action=action,
            from_status=from_status.value if from_status else None,
            to_status=to_status.value if to_status else None,
            details=details,
            performed_by=performed_by
        ))

    def record_payment_event(
        self,
        booking_id: UUID,
        action: BookingAction,
        status: BookingStatus,
        details: str
    ) -> None:
        """Audit a payment-driven change that leaves the booking status as it is."""
        self._add_history(booking_id, action, status, status, "system", details)

    async def get_booking_for_update(self, booking_id: UUID) -> Booking:
        """Load a booking, overwriting any stale copy held by the session."""
        booking = (await self.session.execute(
            select(Booking)
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if booking is None:
            raise BookingNotFoundError(str(booking_id))
        return booking

    async def get_booking(self, booking_id: UUID, actor: Actor) -> Booking:
        """A booking is visible to its tourist, its guide and admins."""
        booking = await self.get_booking_for_update(booking_id)
        if not (actor.is_admin or actor.id in (booking.tourist_id, booking.guide_id)):
            raise AuthorizationError("Not authorized to view this booking")
        return booking

    async def list_tourist_bookings(
        self,
        tourist_id: UUID,
        status: Optional[BookingStatus] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Tuple[List[Booking], int]:
        return await self._list_bookings(Booking.tourist_id == tourist_id, status, page, page_size)

    async def list_guide_bookings(
        self,
        guide_id: UUID,
        status: Optional[BookingStatus] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Tuple[List[Booking], int]:
        return await self._list_bookings(Booking.guide_id == guide_id, status, page, page_size)

    async def _list_bookings(self, owner_clause, status, page: int, page_size: int) -> Tuple[List[Booking], int]:
        conditions = [owner_clause]
        if status is not None:
            conditions.append(Booking.status == status)

        total = (await self.session.execute(
            select(func.count(Booking.id)).where(*conditions)
        )).scalar_one()

        result = await self.session.execute(
            select(Booking)
            .where(*conditions)
            .order_by(Booking.booking_date.desc(), Booking.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total

    async def get_booking_history(self, booking_id: UUID, actor: Actor) -> List[BookingHistory]:
        await self.get_booking(booking_id, actor)
        result = await self.session.execute(
            select(BookingHistory)
            .where(BookingHistory.booking_id == booking_id)
            .order_by(BookingHistory.created_at)
        )
        return list(result.scalars().all())

    async def booking_stats(self, actor: Actor) -> Dict[str, Any]:
        """Counts per status and paid totals, scoped to the actor's side of the market."""
        conditions = []
        if actor.role == UserRole.TOURIST:
            conditions.append(Booking.tourist_id == actor.id)
        elif actor.role == UserRole.GUIDE:
            conditions.append(Booking.guide_id == actor.id)

        rows = (await self.session.execute(
            select(Booking.status, func.count(Booking.id))
            .where(*conditions)
            .group_by(Booking.status)
        )).all()
        by_status = {status.value: 0 for status in BookingStatus}
        for status, count in rows:
            by_status[status.value] = count

        paid_total = (await self.session.execute(
            select(func.coalesce(func.sum(Booking.total_price), 0))
            .where(
                *conditions,
                Booking.payment_status == BookingPaymentStatus.PAID,
                Booking.status.in_([BookingStatus.CONFIRMED, BookingStatus.COMPLETED])
            )
        )).scalar_one()

        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "paid_amount": Decimal(str(paid_total)).quantize(Decimal("0.01")),
        }
