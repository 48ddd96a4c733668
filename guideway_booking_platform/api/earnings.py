"""
Guide earnings report endpoint.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..cache import RedisCache
from ..database import get_db
from ..models.user import Actor, UserRole
from ..schemas.common import ApiResponse, ok
from ..schemas.earnings import GuideEarnings
from ..services.earnings_service import EarningsService
from ..utils.dependencies import get_cache, require_roles
from ..utils.exceptions import InvalidInputError

router = APIRouter(prefix="/earnings", tags=["earnings"])


@router.get("/guide", response_model=ApiResponse[GuideEarnings])
async def guide_earnings(
    guide_id: Optional[UUID] = Query(None, description="Admins only; guides always see their own"),
    months: Optional[int] = Query(None, ge=1, le=24),
    actor: Actor = Depends(require_roles(UserRole.GUIDE, UserRole.ADMIN)),
    db: AsyncSession = Depends(get_db),
    cache: Optional[RedisCache] = Depends(get_cache)
):
    """
    Earnings of completed, paid bookings with monthly buckets.

    The platform fee is applied here only; stored booking prices are gross.
    """
    if actor.is_admin:
        if guide_id is None:
            raise InvalidInputError("guide_id is required", field="guide_id")
        target = guide_id
    else:
        target = actor.id

    report = await EarningsService(db, cache).guide_earnings(target, months)
    return ok(report)
