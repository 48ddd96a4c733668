"""
FastAPI routes for the booking lifecycle.

Errors raised by the services propagate to ``ErrorHandlerMiddleware``, which
renders them in the standard envelope.
"""

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..cache import RedisCache
from ..database import get_db
from ..models.booking import BookingStatus
from ..models.user import Actor, UserRole
from ..schemas.booking import (
    BookingCancelRequest,
    BookingCreateRequest,
    BookingHistoryResponse,
    BookingResponse,
    BookingStatsResponse,
    BookingStatusUpdateRequest,
)
from ..schemas.common import ApiResponse, ok, paginated
from ..services.booking_service import BookingService
from ..services.orchestrator import BookingOrchestrator
from ..services.payment_gateway import PaymentGateway
from ..utils.dependencies import get_cache, get_current_actor, get_gateway, require_roles

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("", response_model=ApiResponse[BookingResponse], status_code=status.HTTP_201_CREATED)
async def create_booking(
    request: BookingCreateRequest,
    actor: Actor = Depends(require_roles(UserRole.TOURIST)),
    db: AsyncSession = Depends(get_db),
    cache: Optional[RedisCache] = Depends(get_cache)
):
    """Create a pending booking for a listing. Price and end time are derived from the listing."""
    booking = await BookingService(db, cache).create_booking(
        tourist_id=actor.id,
        listing_id=request.listing_id,
        booking_date=request.booking_date,
        start_time=request.start_time,
        number_of_people=request.number_of_people,
        special_requests=request.special_requests
    )
    return ok(BookingResponse.model_validate(booking), "Booking created successfully")


@router.get("/my", response_model=ApiResponse[List[BookingResponse]])
async def list_my_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(require_roles(UserRole.TOURIST)),
    db: AsyncSession = Depends(get_db)
):
    bookings, total = await BookingService(db).list_tourist_bookings(actor.id, status_filter, page, page_size)
    return paginated([BookingResponse.model_validate(b) for b in bookings], total, page, page_size)


@router.get("/guide", response_model=ApiResponse[List[BookingResponse]])
async def list_guide_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(require_roles(UserRole.GUIDE)),
    db: AsyncSession = Depends(get_db)
):
    """Bookings made on the calling guide's listings."""
    bookings, total = await BookingService(db).list_guide_bookings(actor.id, status_filter, page, page_size)
    return paginated([BookingResponse.model_validate(b) for b in bookings], total, page, page_size)


@router.get("/stats", response_model=ApiResponse[BookingStatsResponse])
async def booking_stats(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    stats = await BookingService(db).booking_stats(actor)
    return ok(BookingStatsResponse(**stats))


@router.get("/{booking_id}", response_model=ApiResponse[BookingResponse])
async def get_booking(
    booking_id: UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    booking = await BookingService(db).get_booking(booking_id, actor)
    return ok(BookingResponse.model_validate(booking))


@router.get("/{booking_id}/history", response_model=ApiResponse[List[BookingHistoryResponse]])
async def get_booking_history(
    booking_id: UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    """Audit trail of a booking, oldest first."""
    history = await BookingService(db).get_booking_history(booking_id, actor)
    return ok([BookingHistoryResponse.model_validate(h) for h in history])


@router.patch("/{booking_id}/status", response_model=ApiResponse[BookingResponse])
async def update_booking_status(
    booking_id: UUID,
    request: BookingStatusUpdateRequest,
    actor: Actor = Depends(require_roles(UserRole.GUIDE, UserRole.ADMIN)),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    cache: Optional[RedisCache] = Depends(get_cache)
):
    """Confirm or reject a pending booking; other targets are routed to their own operation."""
    booking = await BookingOrchestrator(db, gateway, cache).change_status(
        booking_id, actor, request.status, request.reason
    )
    return ok(BookingResponse.model_validate(booking), f"Booking {booking.status.value}")


@router.patch("/{booking_id}/cancel", response_model=ApiResponse[BookingResponse])
async def cancel_booking(
    booking_id: UUID,
    request: BookingCancelRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    cache: Optional[RedisCache] = Depends(get_cache)
):
    """
    Cancel a booking. A paid booking is refunded at the gateway first; if the
    refund fails the booking is left unchanged and a 502 is returned.
    """
    booking = await BookingOrchestrator(db, gateway, cache).cancel_booking(booking_id, actor, request.reason)
    return ok(BookingResponse.model_validate(booking), "Booking cancelled successfully")


@router.patch("/{booking_id}/complete", response_model=ApiResponse[BookingResponse])
async def complete_booking(
    booking_id: UUID,
    actor: Actor = Depends(require_roles(UserRole.GUIDE, UserRole.ADMIN)),
    db: AsyncSession = Depends(get_db),
    cache: Optional[RedisCache] = Depends(get_cache)
):
    booking = await BookingService(db, cache).complete_booking(booking_id, actor)
    return ok(BookingResponse.model_validate(booking), "Booking completed")
