"""
Earnings report schemas.
"""

from decimal import Decimal
from typing import List
from uuid import UUID

from pydantic import BaseModel, Field


class MonthlyEarnings(BaseModel):
    """Earnings of completed bookings in one calendar month."""
    month: str = Field(..., description="Month as YYYY-MM")
    earnings: Decimal
    bookings: int


class GuideEarnings(BaseModel):
    """Guide earnings report; the platform fee is applied only here."""
    guide_id: UUID
    total_earnings: Decimal = Field(..., description="Completed and paid bookings")
    pending_earnings: Decimal = Field(..., description="Confirmed and paid, tour not completed yet")
    completed_bookings: int
    average_earning_per_booking: Decimal
    platform_fee_percentage: int
    platform_fee: Decimal
    net_payout: Decimal
    monthly: List[MonthlyEarnings]
