"""
FastAPI routes for reviews, moderation and guide responses.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..cache import RedisCache
from ..database import get_db
from ..models.user import Actor, UserRole
from ..schemas.common import ApiResponse, ok, paginated
from ..schemas.review import (
    GuideResponseRequest,
    GuideReviewSummary,
    ReviewCreateRequest,
    ReviewResponse,
    ReviewUpdateRequest,
    ReviewVisibilityRequest,
)
from ..services.review_service import ReviewService
from ..utils.dependencies import get_cache, get_current_actor, require_admin, require_roles

router = APIRouter(prefix="/reviews", tags=["reviews"])


@router.post("", response_model=ApiResponse[ReviewResponse], status_code=status.HTTP_201_CREATED)
async def create_review(
    request: ReviewCreateRequest,
    actor: Actor = Depends(require_roles(UserRole.TOURIST)),
    db: AsyncSession = Depends(get_db),
    cache: Optional[RedisCache] = Depends(get_cache)
):
    """Review a completed booking. One review per booking."""
    review = await ReviewService(db, cache).create_review(
        actor, request.booking_id, request.listing_id, request.rating, request.comment
    )
    return ok(ReviewResponse.model_validate(review), "Review created")


@router.get("/listing/{listing_id}", response_model=ApiResponse[List[ReviewResponse]])
async def list_listing_reviews(
    listing_id: UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db)
):
    reviews, total = await ReviewService(db).list_listing_reviews(listing_id, page, page_size)
    return paginated([ReviewResponse.model_validate(r) for r in reviews], total, page, page_size)


@router.get("/guide/{guide_id}/summary", response_model=ApiResponse[GuideReviewSummary])
async def guide_review_summary(
    guide_id: UUID,
    db: AsyncSession = Depends(get_db),
    cache: Optional[RedisCache] = Depends(get_cache)
):
    summary = await ReviewService(db, cache).guide_review_summary(guide_id)
    return ok(GuideReviewSummary(**summary))


@router.patch("/{review_id}", response_model=ApiResponse[ReviewResponse])
async def update_review(
    review_id: UUID,
    request: ReviewUpdateRequest,
    actor: Actor = Depends(require_roles(UserRole.TOURIST)),
    db: AsyncSession = Depends(get_db),
    cache: Optional[RedisCache] = Depends(get_cache)
):
    review = await ReviewService(db, cache).update_review(
        review_id, actor, rating=request.rating, comment=request.comment
    )
    return ok(ReviewResponse.model_validate(review), "Review updated")


@router.delete("/{review_id}", response_model=ApiResponse[None])
async def delete_review(
    review_id: UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    cache: Optional[RedisCache] = Depends(get_cache)
):
    await ReviewService(db, cache).delete_review(review_id, actor)
    return ok(None, "Review deleted")


@router.post("/{review_id}/report", response_model=ApiResponse[ReviewResponse])
async def report_review(
    review_id: UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    cache: Optional[RedisCache] = Depends(get_cache)
):
    """Report a review; enough reports hide it automatically."""
    review = await ReviewService(db, cache).report_review(review_id, actor)
    return ok(ReviewResponse.model_validate(review), "Review reported")


@router.patch("/{review_id}/visibility", response_model=ApiResponse[ReviewResponse])
async def set_review_visibility(
    review_id: UUID,
    request: ReviewVisibilityRequest,
    actor: Actor = Depends(require_admin()),
    db: AsyncSession = Depends(get_db),
    cache: Optional[RedisCache] = Depends(get_cache)
):
    review = await ReviewService(db, cache).set_visibility(review_id, actor, request.is_hidden)
    return ok(ReviewResponse.model_validate(review), "Review hidden" if review.is_hidden else "Review visible")


@router.post("/{review_id}/response", response_model=ApiResponse[ReviewResponse])
async def respond_to_review(
    review_id: UUID,
    request: GuideResponseRequest,
    actor: Actor = Depends(require_roles(UserRole.GUIDE)),
    db: AsyncSession = Depends(get_db)
):
    review = await ReviewService(db).respond_to_review(review_id, actor, request.response)
    return ok(ReviewResponse.model_validate(review), "Response added")
