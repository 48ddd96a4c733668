"""
Review lifecycle: creation, edits, moderation and guide responses.

Every change that affects which ratings count toward a listing goes through
``RatingService`` in the same transaction as the review write.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..cache import CacheInvalidator, CacheKeyBuilder, CacheTTL, RedisCache
from ..config import Settings, get_settings
from ..models.base import ensure_utc, utcnow
from ..models.booking import Booking, BookingStatus
from ..models.review import Review
from ..models.user import Actor
from ..utils.exceptions import (
    AuthorizationError,
    BookingNotFoundError,
    ConflictError,
    InvalidInputError,
    InvalidStateError,
    OptimisticLockError,
    ReviewNotFoundError,
)
from ..utils.logging_config import log_business_event
from ..utils.retry import retry_on_concurrency_error
from .rating_service import RatingService, average_from, validate_rating

logger = logging.getLogger(__name__)


class ReviewService:
    """Service for tourist reviews of completed bookings."""

    def __init__(
        self,
        session: AsyncSession,
        cache: Optional[RedisCache] = None,
        settings: Optional[Settings] = None
    ):
        self.session = session
        self.cache = cache
        self.settings = settings or get_settings()
        self.ratings = RatingService(session)
        self.invalidator = CacheInvalidator(cache)

    async def create_review(
        self,
        actor: Actor,
        booking_id: UUID,
        listing_id: UUID,
        rating: int,
        comment: Optional[str] = None
    ) -> Review:
        """
        Review a completed booking. One review per booking.

        Raises:
            BookingNotFoundError: unknown booking
            AuthorizationError: caller is not the booking's tourist
            InvalidStateError: booking not completed
            InvalidInputError: rating out of range or listing mismatch
            ConflictError: the booking already has a review
        """
        validate_rating(rating)
        try:
            booking = await self.session.get(Booking, booking_id)
            if booking is None:
                raise BookingNotFoundError(str(booking_id))
            if booking.tourist_id != actor.id:
                raise AuthorizationError("Only the booking's tourist can review it")
            if booking.status != BookingStatus.COMPLETED:
                raise InvalidStateError(
                    "Only completed bookings can be reviewed",
                    current_state=booking.status.value
                )
            if booking.listing_id != listing_id:
                raise InvalidInputError("Listing does not match the booking", field="listing_id")

            existing = (await self.session.execute(
                select(Review.id).where(Review.booking_id == booking_id)
            )).scalar_one_or_none()
            if existing is not None:
                raise ConflictError("This booking has already been reviewed")

            review = Review(
                booking_id=booking_id,
                tourist_id=actor.id,
                guide_id=booking.guide_id,
                listing_id=listing_id,
                rating=rating,
                comment=comment
            )
            self.session.add(review)
            try:
                await self.session.flush()
            except IntegrityError as e:
                raise ConflictError("This booking has already been reviewed") from e

            await self.ratings.record_review(listing_id, rating)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        await self.invalidator.guide_reviews(review.guide_id)
        log_business_event(
            "review_created",
            {"review_id": str(review.id), "booking_id": str(booking_id), "rating": rating},
            user_id=str(actor.id)
        )
        return review

    @retry_on_concurrency_error(base_delay=0.05, max_delay=0.5)
    async def update_review(
        self,
        review_id: UUID,
        actor: Actor,
        rating: Optional[int] = None,
        comment: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Review:
        """Edit a review inside the edit window; a rating change replaces its old contribution."""
        if rating is not None:
            validate_rating(rating)

        try:
            review = await self._get_review(review_id)
            if review.tourist_id != actor.id:
                raise AuthorizationError("Only the author can edit this review")

            now = now or utcnow()
            deadline = ensure_utc(review.created_at) + timedelta(days=self.settings.review_edit_window_days)
            if now > deadline:
                raise InvalidStateError(
                    f"Reviews can only be edited within {self.settings.review_edit_window_days} days",
                    current_state="edit_window_closed"
                )

            old_rating = review.rating
            values: Dict[str, Any] = {"is_edited": True, "edited_at": now}
            if rating is not None:
                values["rating"] = rating
            if comment is not None:
                values["comment"] = comment

            result = await self.session.execute(
                update(Review)
                .where(Review.id == review_id, Review.rating == old_rating)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise OptimisticLockError("Review", str(review_id))

            if rating is not None and rating != old_rating and not review.is_hidden:
                await self.ratings.revise_review(review.listing_id, old_rating, rating)

            await self.session.commit()
            await self.session.refresh(review)
        except Exception:
            await self.session.rollback()
            raise

        await self.invalidator.guide_reviews(review.guide_id)
        log_business_event(
            "review_updated",
            {"review_id": str(review_id), "old_rating": old_rating, "rating": review.rating},
            user_id=str(actor.id)
        )
        return review

    async def report_review(self, review_id: UUID, actor: Actor) -> Review:
        """Count a report; the threshold hides the review and drops it from the aggregate once."""
        try:
            review = await self._get_review(review_id)
            if review.tourist_id == actor.id:
                raise InvalidInputError("You cannot report your own review")

            await self.session.execute(
                update(Review)
                .where(Review.id == review_id)
                .values(report_count=Review.report_count + 1)
                .execution_options(synchronize_session=False)
            )
            review = await self._get_review(review_id)

            hidden_now = False
            if review.report_count >= self.settings.review_auto_hide_threshold and not review.is_hidden:
                hidden_now = await self._flip_visibility(review, hidden=True)

            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        if hidden_now:
            logger.warning(f"Review {review_id} auto-hidden after {review.report_count} reports")
            await self.invalidator.guide_reviews(review.guide_id)
        return review

    async def set_visibility(self, review_id: UUID, actor: Actor, hidden: bool) -> Review:
        """Admin moderation; hiding removes the rating from the aggregate, unhiding restores it."""
        if not actor.is_admin:
            raise AuthorizationError("Only admins can moderate reviews", required_permission="admin")

        try:
            review = await self._get_review(review_id)
            changed = await self._flip_visibility(review, hidden=hidden)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        if changed:
            await self.invalidator.guide_reviews(review.guide_id)
            log_business_event(
                "review_visibility_changed",
                {"review_id": str(review_id), "hidden": hidden},
                user_id=str(actor.id)
            )
        return review

    async def _flip_visibility(self, review: Review, hidden: bool) -> bool:
        result = await self.session.execute(
            update(Review)
            .where(Review.id == review.id, Review.is_hidden.is_(not hidden))
            .values(is_hidden=hidden)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False

        if hidden:
            await self.ratings.remove_review(review.listing_id, review.rating)
        else:
            await self.ratings.record_review(review.listing_id, review.rating)
        await self.session.refresh(review)
        return True

    async def delete_review(self, review_id: UUID, actor: Actor) -> None:
        try:
            review = await self._get_review(review_id)
            if not (actor.is_admin or actor.id == review.tourist_id):
                raise AuthorizationError("Not authorized to delete this review")

            result = await self.session.execute(delete(Review).where(Review.id == review_id))
            if result.rowcount and not review.is_hidden:
                await self.ratings.remove_review(review.listing_id, review.rating)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        await self.invalidator.guide_reviews(review.guide_id)
        log_business_event("review_deleted", {"review_id": str(review_id)}, user_id=str(actor.id))

    async def respond_to_review(self, review_id: UUID, actor: Actor, response: str) -> Review:
        """The reviewed guide may answer once."""
        try:
            review = await self._get_review(review_id)
            if actor.id != review.guide_id:
                raise AuthorizationError("Only the reviewed guide can respond")

            result = await self.session.execute(
                update(Review)
                .where(Review.id == review_id, Review.guide_response.is_(None))
                .values(guide_response=response, guide_responded_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise ConflictError("This review already has a response")

            await self.session.commit()
            await self.session.refresh(review)
        except Exception:
            await self.session.rollback()
            raise
        return review

    async def list_listing_reviews(
        self,
        listing_id: UUID,
        page: int = 1,
        page_size: int = 20
    ) -> Tuple[List[Review], int]:
        conditions = [Review.listing_id == listing_id, Review.is_hidden.is_(False)]
        total = (await self.session.execute(
            select(func.count(Review.id)).where(*conditions)
        )).scalar_one()
        result = await self.session.execute(
            select(Review)
            .where(*conditions)
            .order_by(Review.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total

    async def guide_review_summary(self, guide_id: UUID) -> Dict[str, Any]:
        """Average, count and 1..5 distribution over a guide's visible reviews."""
        cache_key = CacheKeyBuilder.guide_review_summary(str(guide_id))
        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return cached

        rows = (await self.session.execute(
            select(Review.rating, func.count(Review.id))
            .where(Review.guide_id == guide_id, Review.is_hidden.is_(False))
            .group_by(Review.rating)
        )).all()

        distribution = {str(star): 0 for star in range(1, 6)}
        rating_total = 0
        for rating, count in rows:
            distribution[str(rating)] = count
            rating_total += rating * count
        total_reviews = sum(distribution.values())

        summary = {
            "guide_id": str(guide_id),
            "average_rating": float(average_from(rating_total, total_reviews)),
            "total_reviews": total_reviews,
            "distribution": distribution,
        }
        if self.cache is not None:
            await self.cache.set(cache_key, summary, CacheTTL.REVIEW_SUMMARY)
        return summary

    async def _get_review(self, review_id: UUID) -> Review:
        review = (await self.session.execute(
            select(Review)
            .where(Review.id == review_id)
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if review is None:
            raise ReviewNotFoundError(str(review_id))
        return review
