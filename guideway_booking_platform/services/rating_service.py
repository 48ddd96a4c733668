"""
Rating aggregator: the only writer of a listing's booking and review counters.

The listing stores an integer ``rating_total`` next to ``total_reviews`` so the
running mean never accumulates rounding error; ``average_rating`` is always
``round(rating_total / total_reviews, 1)``. Counter updates are single atomic
UPDATE statements, and the average is recomputed from the row the same
transaction just wrote. None of these methods commit: they run inside the
caller's unit of work.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.listing import Listing
from ..models.review import Review
from ..utils.exceptions import InvalidInputError, InvalidStateError, ListingNotFoundError

logger = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 5


def validate_rating(rating: int) -> None:
    if not isinstance(rating, int) or isinstance(rating, bool) or not MIN_RATING <= rating <= MAX_RATING:
        raise InvalidInputError(
            f"Rating must be an integer between {MIN_RATING} and {MAX_RATING}", field="rating"
        )


def average_from(rating_total: int, total_reviews: int) -> Decimal:
    """Mean rating rounded half-up to one decimal; 0.0 with no reviews."""
    if total_reviews <= 0:
        return Decimal("0.0")
    return (Decimal(rating_total) / Decimal(total_reviews)).quantize(
        Decimal("0.1"), rounding=ROUND_HALF_UP
    )


class RatingService:
    """Incremental maintenance of listing aggregates."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record_review(self, listing_id: UUID, rating: int) -> Listing:
        """Add one review's rating to the listing aggregate."""
        validate_rating(rating)
        listing = await self._apply_delta(listing_id, count_delta=1, total_delta=rating)
        logger.info(
            f"Listing {listing_id} rating recorded: {rating} -> avg {listing.average_rating} "
            f"over {listing.total_reviews} reviews"
        )
        return listing

    async def revise_review(self, listing_id: UUID, old_rating: int, new_rating: int) -> Listing:
        """Replace an edited review's contribution: remove the old rating, add the new one."""
        validate_rating(old_rating)
        validate_rating(new_rating)

        listing = await self._get_listing(listing_id)
        if listing.total_reviews < 1:
            raise InvalidStateError(
                f"Listing {listing_id} has no reviews to revise",
                current_state="no_reviews"
            )
        if old_rating == new_rating:
            return listing

        return await self._apply_delta(listing_id, count_delta=0, total_delta=new_rating - old_rating)

    async def remove_review(self, listing_id: UUID, rating: int) -> Listing:
        """Inverse of ``record_review``; used when a review is hidden or deleted."""
        validate_rating(rating)

        listing = await self._get_listing(listing_id)
        if listing.total_reviews < 1:
            raise InvalidStateError(
                f"Listing {listing_id} has no reviews to remove",
                current_state="no_reviews"
            )

        return await self._apply_delta(listing_id, count_delta=-1, total_delta=-rating)

    async def increment_booking_count(self, listing_id: UUID) -> None:
        """Count one more confirmed booking on the listing."""
        result = await self.session.execute(
            update(Listing)
            .where(Listing.id == listing_id)
            .values(total_bookings=Listing.total_bookings + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ListingNotFoundError(str(listing_id))

    async def recompute_listing_rating(self, listing_id: UUID) -> Listing:
        """Repair path: rebuild the aggregate from every visible review."""
        await self._get_listing(listing_id)

        row = (await self.session.execute(
            select(func.count(Review.id), func.coalesce(func.sum(Review.rating), 0))
            .where(Review.listing_id == listing_id, Review.is_hidden.is_(False))
        )).one()
        count, total = int(row[0]), int(row[1])

        await self.session.execute(
            update(Listing)
            .where(Listing.id == listing_id)
            .values(
                total_reviews=count,
                rating_total=total,
                average_rating=average_from(total, count),
            )
            .execution_options(synchronize_session=False)
        )
        listing = await self._get_listing(listing_id)
        logger.info(f"Recomputed rating for listing {listing_id}: {listing.average_rating} ({count} reviews)")
        return listing

    async def _apply_delta(self, listing_id: UUID, count_delta: int, total_delta: int) -> Listing:
        result = await self.session.execute(
            update(Listing)
            .where(Listing.id == listing_id)
            .values(
                total_reviews=Listing.total_reviews + count_delta,
                rating_total=Listing.rating_total + total_delta,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ListingNotFoundError(str(listing_id))

        # The row is locked by the update above until the caller commits
        listing = await self._get_listing(listing_id)
        average = average_from(listing.rating_total, listing.total_reviews)
        await self.session.execute(
            update(Listing)
            .where(Listing.id == listing_id)
            .values(average_rating=average)
            .execution_options(synchronize_session=False)
        )
        listing.average_rating = average
        return listing

    async def _get_listing(self, listing_id: UUID) -> Listing:
        listing = (await self.session.execute(
            select(Listing)
            .where(Listing.id == listing_id)
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if listing is None:
            raise ListingNotFoundError(str(listing_id))
        return listing
