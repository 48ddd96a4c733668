"""
Pydantic schemas for booking-related API requests and responses.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from ..models.booking import BookingPaymentStatus, BookingStatus, CancelledBy
from ..models.booking_history import BookingAction


class BookingCreateRequest(BaseModel):
    """Schema for creating a new booking."""

    listing_id: UUID = Field(..., description="ID of the listing to book")
    booking_date: date = Field(..., description="Tour date, today or later")
    start_time: str = Field(..., pattern=r"^([01]?\d|2[0-3]):[0-5]\d$", description="Start time as HH:MM")
    number_of_people: int = Field(..., ge=1, le=50, description="Party size")
    special_requests: Optional[str] = Field(None, max_length=1000)


class BookingStatusUpdateRequest(BaseModel):
    """Schema for a guide or admin moving a booking along its lifecycle."""

    status: BookingStatus
    reason: Optional[str] = Field(None, max_length=500, description="Reason, recorded on rejection")

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: BookingStatus) -> BookingStatus:
        if v == BookingStatus.PENDING:
            raise ValueError("Bookings cannot be moved back to pending")
        return v


class BookingCancelRequest(BaseModel):
    """Schema for cancelling a booking."""

    reason: str = Field(..., min_length=10, max_length=500, description="Cancellation reason")


class BookingResponse(BaseModel):
    """Schema for booking responses."""

    id: UUID
    tourist_id: UUID
    guide_id: UUID
    listing_id: UUID
    booking_date: date
    start_time: str
    end_time: str
    number_of_people: int
    total_price: Decimal
    special_requests: Optional[str] = None
    status: BookingStatus
    payment_status: BookingPaymentStatus
    payment_intent_id: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[CancelledBy] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class BookingHistoryResponse(BaseModel):
    """Schema for booking history entries."""

    id: UUID
    booking_id: UUID
    action: BookingAction
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    details: Optional[str] = None
    performed_by: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class BookingStatsResponse(BaseModel):
    """Booking counts per status and the paid total on the caller's side."""

    total: int
    by_status: Dict[str, int]
    paid_amount: Decimal
