from datetime import timedelta
from decimal import Decimal

import pytest

from guideway_booking_platform.models.base import utcnow
from guideway_booking_platform.models.review import Review
from guideway_booking_platform.models.user import Actor, UserRole
from guideway_booking_platform.services.review_service import ReviewService
from guideway_booking_platform.utils.exceptions import (
    AuthorizationError,
    ConflictError,
    InvalidInputError,
    InvalidStateError,
)

from .conftest import create_user


@pytest.fixture
def reviews(market):
    return ReviewService(market.session, settings=market.settings)


async def reviewed_booking(market, reviews, rating=4):
    booking, _ = await market.completed_booking()
    review = await reviews.create_review(market.tourist, booking.id, market.listing_id, rating, "Great guide")
    return booking, review


async def test_review_updates_listing_aggregate(market, reviews):
    await reviewed_booking(market, reviews, rating=5)
    _, review = await reviewed_booking(market, reviews, rating=4)

    assert review.guide_id == market.guide.id
    listing = await market.listing()
    assert listing.total_reviews == 2
    assert listing.average_rating == Decimal("4.5")


async def test_only_completed_bookings_owned_by_author_are_reviewable(market, reviews, session):
    stranger = Actor.from_user(await create_user(session, UserRole.TOURIST))
    confirmed = await market.confirmed_booking()
    confirmed_id = confirmed.id
    completed, _ = await market.completed_booking()
    completed_id = completed.id

    with pytest.raises(InvalidStateError):
        await reviews.create_review(market.tourist, confirmed_id, market.listing_id, 5)
    with pytest.raises(AuthorizationError):
        await reviews.create_review(stranger, completed_id, market.listing_id, 5)
    with pytest.raises(InvalidInputError, match="Listing"):
        await reviews.create_review(market.tourist, completed_id, market.guide.id, 5)
    with pytest.raises(InvalidInputError):
        await reviews.create_review(market.tourist, completed_id, market.listing_id, 6)

    assert (await market.listing()).total_reviews == 0


async def test_one_review_per_booking(market, reviews):
    booking, _ = await reviewed_booking(market, reviews)
    booking_id = booking.id

    with pytest.raises(ConflictError):
        await reviews.create_review(market.tourist, booking_id, market.listing_id, 1)

    listing = await market.listing()
    assert listing.total_reviews == 1
    assert listing.average_rating == Decimal("4.0")


async def test_edit_inside_window_revises_rating(market, reviews):
    await reviewed_booking(market, reviews, rating=5)
    _, review = await reviewed_booking(market, reviews, rating=3)

    updated = await reviews.update_review(review.id, market.tourist, rating=1, comment="Changed my mind")

    assert updated.rating == 1
    assert updated.is_edited
    assert updated.comment == "Changed my mind"
    listing = await market.listing()
    assert listing.total_reviews == 2
    assert listing.average_rating == Decimal("3.0")


async def test_edit_after_window_is_refused(market, reviews):
    _, review = await reviewed_booking(market, reviews, rating=3)
    review_id = review.id

    with pytest.raises(InvalidStateError, match="7 days"):
        await reviews.update_review(review_id, market.tourist, rating=5, now=utcnow() + timedelta(days=8))
    with pytest.raises(AuthorizationError):
        await reviews.update_review(review_id, market.guide, comment="not mine")

    assert (await market.reload(Review, review_id)).rating == 3


async def test_reports_hide_review_once_at_threshold(market):
    settings = market.settings.model_copy(update={"review_auto_hide_threshold": 2})
    reviews = ReviewService(market.session, settings=settings)
    await reviewed_booking(market, reviews, rating=5)
    _, review = await reviewed_booking(market, reviews, rating=1)
    review_id = review.id

    with pytest.raises(InvalidInputError):
        await reviews.report_review(review_id, market.tourist)

    first = await reviews.report_review(review_id, market.guide)
    assert (first.report_count, first.is_hidden) == (1, False)

    second = await reviews.report_review(review_id, market.admin)
    assert (second.report_count, second.is_hidden) == (2, True)
    listing = await market.listing()
    assert (listing.total_reviews, listing.average_rating) == (1, Decimal("5.0"))

    third = await reviews.report_review(review_id, market.guide)
    assert third.report_count == 3
    listing = await market.listing()
    assert listing.total_reviews == 1


async def test_admin_visibility_toggles_aggregate(market, reviews):
    await reviewed_booking(market, reviews, rating=5)
    _, review = await reviewed_booking(market, reviews, rating=2)
    review_id = review.id

    with pytest.raises(AuthorizationError):
        await reviews.set_visibility(review_id, market.guide, hidden=True)

    await reviews.set_visibility(review_id, market.admin, hidden=True)
    await reviews.set_visibility(review_id, market.admin, hidden=True)
    listing = await market.listing()
    assert (listing.total_reviews, listing.average_rating) == (1, Decimal("5.0"))

    items, total = await reviews.list_listing_reviews(market.listing_id)
    assert total == 1
    assert items[0].rating == 5

    await reviews.set_visibility(review_id, market.admin, hidden=False)
    listing = await market.listing()
    assert (listing.total_reviews, listing.average_rating) == (2, Decimal("3.5"))


async def test_rating_edit_of_hidden_review_leaves_aggregate(market, reviews):
    await reviewed_booking(market, reviews, rating=5)
    _, review = await reviewed_booking(market, reviews, rating=2)
    review_id = review.id
    await reviews.set_visibility(review_id, market.admin, hidden=True)

    await reviews.update_review(review_id, market.tourist, rating=4)

    listing = await market.listing()
    assert (listing.total_reviews, listing.average_rating) == (1, Decimal("5.0"))


async def test_delete_removes_contribution_once(market, reviews):
    await reviewed_booking(market, reviews, rating=4)
    _, visible = await reviewed_booking(market, reviews, rating=2)
    _, hidden = await reviewed_booking(market, reviews, rating=1)
    visible_id, hidden_id = visible.id, hidden.id
    await reviews.set_visibility(hidden_id, market.admin, hidden=True)

    with pytest.raises(AuthorizationError):
        await reviews.delete_review(visible_id, market.guide)

    await reviews.delete_review(visible_id, market.tourist)
    await reviews.delete_review(hidden_id, market.admin)

    listing = await market.listing()
    assert (listing.total_reviews, listing.average_rating) == (1, Decimal("4.0"))
    assert await market.reload(Review, visible_id) is None


async def test_guide_responds_once(market, reviews):
    _, review = await reviewed_booking(market, reviews)
    review_id = review.id

    with pytest.raises(AuthorizationError):
        await reviews.respond_to_review(review_id, market.tourist, "Thanks!")

    answered = await reviews.respond_to_review(review_id, market.guide, "Thank you for joining us")
    assert answered.guide_response == "Thank you for joining us"
    assert answered.guide_responded_at is not None

    with pytest.raises(ConflictError):
        await reviews.respond_to_review(review_id, market.guide, "Edited answer")
    assert (await market.reload(Review, review_id)).guide_response == "Thank you for joining us"


async def test_guide_summary_is_cached_and_invalidated(market, cache):
    reviews = ReviewService(market.session, cache=cache, settings=market.settings)
    await reviewed_booking(market, reviews, rating=5)
    await reviewed_booking(market, reviews, rating=3)

    summary = await reviews.guide_review_summary(market.guide.id)
    assert summary == {
        "guide_id": str(market.guide.id),
        "average_rating": 4.0,
        "total_reviews": 2,
        "distribution": {"1": 0, "2": 0, "3": 1, "4": 0, "5": 1},
    }
    assert f"reviews:summary:guide:{market.guide.id}" in cache.store

    await reviewed_booking(market, reviews, rating=1)
    assert f"reviews:summary:guide:{market.guide.id}" not in cache.store

    summary = await reviews.guide_review_summary(market.guide.id)
    assert summary["total_reviews"] == 3
    assert summary["distribution"]["1"] == 1
