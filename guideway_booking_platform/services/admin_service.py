"""
Admin bulk actions over users and listings.

These are plain bulk writes. Deactivation never touches bookings, so a guide
deactivated with confirmed bookings keeps them; deletion is refused while any
booking references the row.
"""

import logging
from typing import List
from uuid import UUID

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.booking import Booking
from ..models.listing import Listing, ListingStatus
from ..models.user import Actor, User, UserRole
from ..schemas.admin import BulkActionResult, ListingBulkAction, UserBulkAction
from ..utils.exceptions import AuthorizationError, ConflictError
from ..utils.logging_config import log_business_event

logger = logging.getLogger(__name__)

_USER_VALUES = {
    UserBulkAction.ACTIVATE: ("is_active", True),
    UserBulkAction.DEACTIVATE: ("is_active", False),
    UserBulkAction.VERIFY: ("is_verified", True),
    UserBulkAction.UNVERIFY: ("is_verified", False),
}


class AdminService:
    """Service for admin-only bulk operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _require_admin(actor: Actor) -> None:
        if not actor.is_admin:
            raise AuthorizationError("Admin privileges required", required_permission="admin")

    async def bulk_users(self, actor: Actor, user_ids: List[UUID], action: UserBulkAction) -> BulkActionResult:
        self._require_admin(actor)
        ids = list(set(user_ids))

        conditions = [User.id.in_(ids)]
        if action in (UserBulkAction.DEACTIVATE, UserBulkAction.DELETE):
            # Admin accounts are out of reach of bulk removal
            conditions.append(User.role != UserRole.ADMIN)

        try:
            matched = (await self.session.execute(
                select(func.count(User.id)).where(*conditions)
            )).scalar_one()

            if action == UserBulkAction.DELETE:
                referenced = (await self.session.execute(
                    select(func.count(Booking.id)).where(
                        or_(Booking.tourist_id.in_(ids), Booking.guide_id.in_(ids))
                    )
                )).scalar_one()
                owns_listings = (await self.session.execute(
                    select(func.count(Listing.id)).where(Listing.guide_id.in_(ids))
                )).scalar_one()
                if referenced or owns_listings:
                    raise ConflictError(
                        "Users with bookings or listings cannot be deleted; deactivate them instead",
                        details={"bookings": referenced, "listings": owns_listings}
                    )
                result = await self.session.execute(
                    delete(User).where(*conditions).execution_options(synchronize_session=False)
                )
            else:
                column, value = _USER_VALUES[action]
                result = await self.session.execute(
                    update(User)
                    .where(*conditions, getattr(User, column) != value)
                    .values({column: value})
                    .execution_options(synchronize_session=False)
                )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        log_business_event(
            "admin_bulk_users",
            {"action": action.value, "requested": len(ids), "modified": result.rowcount},
            user_id=str(actor.id)
        )
        return BulkActionResult(action=action.value, matched=matched, modified=result.rowcount)

    async def bulk_listings(
        self,
        actor: Actor,
        listing_ids: List[UUID],
        action: ListingBulkAction
    ) -> BulkActionResult:
        self._require_admin(actor)
        ids = list(set(listing_ids))

        try:
            matched = (await self.session.execute(
                select(func.count(Listing.id)).where(Listing.id.in_(ids))
            )).scalar_one()

            if action == ListingBulkAction.DELETE:
                referenced = (await self.session.execute(
                    select(func.count(Booking.id)).where(Booking.listing_id.in_(ids))
                )).scalar_one()
                if referenced:
                    raise ConflictError(
                        "Listings with bookings cannot be deleted; deactivate them instead",
                        details={"bookings": referenced}
                    )
                result = await self.session.execute(
                    delete(Listing).where(Listing.id.in_(ids)).execution_options(synchronize_session=False)
                )
            else:
                active = action == ListingBulkAction.ACTIVATE
                result = await self.session.execute(
                    update(Listing)
                    .where(Listing.id.in_(ids), Listing.is_active.is_(not active))
                    .values(
                        is_active=active,
                        status=ListingStatus.ACTIVE if active else ListingStatus.INACTIVE
                    )
                    .execution_options(synchronize_session=False)
                )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"Admin {actor.id} applied {action.value} to {result.rowcount}/{matched} listings")
        return BulkActionResult(action=action.value, matched=matched, modified=result.rowcount)
