"""
Celery tasks for payment housekeeping and rating repair.

Tasks run outside the web process, so each one builds its own
``DatabaseManager`` and runs the async service code on a fresh event loop.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar
from uuid import UUID

from sqlalchemy import select

from .celery_app import celery_app
from ..database import DatabaseManager
from ..models.listing import Listing
from ..services.payment_gateway import PaymentGateway, StripeGateway
from ..services.payment_service import PaymentService
from ..services.rating_service import RatingService
from ..utils.exceptions import NotFoundError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_async(coro_factory: Callable[[], Awaitable[T]]) -> T:
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro_factory())
    finally:
        loop.close()


async def void_stale_payment_intents(
    db: DatabaseManager,
    gateway: PaymentGateway,
    older_than_hours: Optional[int] = None
) -> Dict[str, int]:
    """Void pending intents older than the configured age."""
    async with db.get_session() as session:
        return await PaymentService(session, gateway).void_stale_intents(older_than_hours)


async def recompute_listing_ratings(db: DatabaseManager, listing_ids: Optional[List[UUID]] = None) -> Dict[str, Any]:
    """
    Rebuild rating aggregates from visible reviews.

    Each listing is repaired in its own transaction; with no ids every
    listing is repaired.
    """
    if listing_ids is None:
        async with db.get_session() as session:
            listing_ids = list((await session.execute(select(Listing.id))).scalars().all())

    repaired: List[str] = []
    missing: List[str] = []
    for listing_id in listing_ids:
        async with db.get_session() as session:
            try:
                await RatingService(session).recompute_listing_rating(listing_id)
            except NotFoundError:
                missing.append(str(listing_id))
                continue
        repaired.append(str(listing_id))

    logger.info(f"Recomputed ratings for {len(repaired)} listings, {len(missing)} missing")
    return {"repaired": repaired, "missing": missing}


@celery_app.task(bind=True, name="void_stale_payment_intents_task")
def void_stale_payment_intents_task(self, older_than_hours: Optional[int] = None):
    """
    Periodic task cancelling payment intents nobody completed, which frees the
    bookings for a new intent.
    """
    async def _run():
        db = DatabaseManager()
        await db.initialize(create_tables=False)
        try:
            return await void_stale_payment_intents(db, StripeGateway(), older_than_hours)
        finally:
            await db.close()

    logger.info("Starting stale payment intent sweep")
    return run_async(_run)


@celery_app.task(bind=True, name="recompute_listing_ratings_task")
def recompute_listing_ratings_task(self, listing_ids: Optional[List[str]] = None):
    """On-demand repair of listing rating aggregates."""
    async def _run():
        db = DatabaseManager()
        await db.initialize(create_tables=False)
        try:
            ids = [UUID(i) for i in listing_ids] if listing_ids is not None else None
            return await recompute_listing_ratings(db, ids)
        finally:
            await db.close()

    return run_async(_run)
