"""
Administrative endpoints: bulk user/listing actions and rating repair.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models.user import Actor
from ..schemas.admin import BulkActionResult, ListingBulkRequest, UserBulkRequest
from ..schemas.common import ApiResponse, ok
from ..schemas.review import ListingRatingResponse
from ..services.admin_service import AdminService
from ..services.rating_service import RatingService
from ..utils.dependencies import require_admin
from ..utils.logging_config import log_business_event

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/users/bulk", response_model=ApiResponse[BulkActionResult])
async def bulk_users(
    request: UserBulkRequest,
    actor: Actor = Depends(require_admin()),
    db: AsyncSession = Depends(get_db)
):
    """Apply one action to many users. Admin accounts are never deactivated or deleted."""
    result = await AdminService(db).bulk_users(actor, request.user_ids, request.action)
    return ok(result, f"{result.modified} of {result.matched} users updated")


@router.post("/listings/bulk", response_model=ApiResponse[BulkActionResult])
async def bulk_listings(
    request: ListingBulkRequest,
    actor: Actor = Depends(require_admin()),
    db: AsyncSession = Depends(get_db)
):
    result = await AdminService(db).bulk_listings(actor, request.listing_ids, request.action)
    return ok(result, f"{result.modified} of {result.matched} listings updated")


@router.post("/listings/{listing_id}/recompute-rating", response_model=ApiResponse[ListingRatingResponse])
async def recompute_listing_rating(
    listing_id: UUID,
    actor: Actor = Depends(require_admin()),
    db: AsyncSession = Depends(get_db)
):
    """Rebuild a listing's rating aggregate from its visible reviews."""
    try:
        listing = await RatingService(db).recompute_listing_rating(listing_id)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    log_business_event("listing_rating_recomputed", {"listing_id": str(listing_id)}, user_id=str(actor.id))
    return ok(
        ListingRatingResponse(
            listing_id=listing.id,
            average_rating=float(listing.average_rating),
            total_reviews=listing.total_reviews,
            total_bookings=listing.total_bookings
        ),
        "Rating recomputed"
    )
