from decimal import Decimal

import pytest

from guideway_booking_platform.models.listing import Listing
from guideway_booking_platform.models.review import Review
from guideway_booking_platform.services.rating_service import RatingService, average_from, validate_rating
from guideway_booking_platform.utils.exceptions import InvalidInputError, InvalidStateError, ListingNotFoundError


@pytest.mark.parametrize(
    "total, count, expected",
    [
        (0, 0, Decimal("0.0")),
        (5, 1, Decimal("5.0")),
        (5, 3, Decimal("1.7")),
        (89, 20, Decimal("4.5")),
        (7, 2, Decimal("3.5")),
    ],
)
def test_average_rounds_half_up_to_one_decimal(total, count, expected):
    assert average_from(total, count) == expected


@pytest.mark.parametrize("rating", [0, 6, -1, 4.5, "5", True])
def test_rating_must_be_integer_one_to_five(rating):
    with pytest.raises(InvalidInputError):
        validate_rating(rating)


async def test_record_revise_remove_keep_aggregate_exact(market):
    ratings = RatingService(market.session)

    listing = await ratings.record_review(market.listing_id, 5)
    assert (listing.total_reviews, listing.average_rating) == (1, Decimal("5.0"))

    listing = await ratings.record_review(market.listing_id, 4)
    assert (listing.total_reviews, listing.rating_total, listing.average_rating) == (2, 9, Decimal("4.5"))

    listing = await ratings.revise_review(market.listing_id, 4, 2)
    assert (listing.total_reviews, listing.average_rating) == (2, Decimal("3.5"))

    listing = await ratings.remove_review(market.listing_id, 5)
    assert (listing.total_reviews, listing.average_rating) == (1, Decimal("2.0"))

    listing = await ratings.remove_review(market.listing_id, 2)
    assert (listing.total_reviews, listing.rating_total, listing.average_rating) == (0, 0, Decimal("0.0"))
    await market.session.commit()

    stored = await market.listing()
    assert stored.average_rating == Decimal("0.0")
    assert stored.total_reviews == 0


async def test_many_reviews_do_not_drift(market):
    ratings = RatingService(market.session)
    for rating in [1, 2, 2, 5, 4, 3, 3, 5, 1, 4, 2]:
        await ratings.record_review(market.listing_id, rating)
    for rating in [2, 5, 1]:
        await ratings.remove_review(market.listing_id, rating)
    await market.session.commit()

    listing = await market.listing()
    assert listing.total_reviews == 8
    assert listing.rating_total == 24
    assert listing.average_rating == Decimal("3.0")


async def test_cannot_remove_or_revise_without_reviews(market):
    ratings = RatingService(market.session)

    with pytest.raises(InvalidStateError):
        await ratings.remove_review(market.listing_id, 3)
    with pytest.raises(InvalidStateError):
        await ratings.revise_review(market.listing_id, 3, 4)


async def test_unknown_listing(market):
    ratings = RatingService(market.session)

    with pytest.raises(ListingNotFoundError):
        await ratings.record_review(market.guide.id, 4)
    with pytest.raises(ListingNotFoundError):
        await ratings.increment_booking_count(market.guide.id)


async def test_recompute_rebuilds_from_visible_reviews(market):
    first, _ = await market.completed_booking()
    second, _ = await market.completed_booking()
    third, _ = await market.completed_booking()
    for booking, rating, hidden in [(first, 5, False), (second, 2, False), (third, 1, True)]:
        market.session.add(Review(
            booking_id=booking.id,
            tourist_id=market.tourist.id,
            guide_id=market.guide.id,
            listing_id=market.listing_id,
            rating=rating,
            is_hidden=hidden,
        ))
    listing = await market.session.get(Listing, market.listing_id)
    listing.total_reviews = 7
    listing.rating_total = 11
    await market.session.commit()

    listing = await RatingService(market.session).recompute_listing_rating(market.listing_id)
    await market.session.commit()

    assert listing.total_reviews == 2
    assert listing.rating_total == 7
    assert listing.average_rating == Decimal("3.5")
    # Completed bookings are counted separately from reviews
    assert listing.total_bookings == 3
