"""
Pydantic schemas for payment intents, refunds and ledger reads.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from ..models.payment import PaymentMethod, PaymentStatus, TransactionType


class PaymentIntentCreateRequest(BaseModel):
    """Open a payment intent for a confirmed booking."""

    booking_id: UUID
    amount: Optional[Decimal] = Field(
        None, gt=0, max_digits=10, decimal_places=2,
        description="Defaults to the booking total"
    )
    payment_method: PaymentMethod = PaymentMethod.STRIPE


class PaymentConfirmRequest(BaseModel):
    payment_intent_id: str = Field(..., min_length=1, max_length=255)


class RefundRequest(BaseModel):
    """Refund part or all of a captured payment."""

    amount: Optional[Decimal] = Field(
        None, gt=0, max_digits=10, decimal_places=2,
        description="Defaults to the full refundable remainder"
    )
    reason: str = Field("requested_by_customer", min_length=1, max_length=500)


class PaymentResponse(BaseModel):
    """Ledger row."""

    id: UUID
    booking_id: UUID
    tourist_id: UUID
    guide_id: UUID
    original_payment_id: Optional[UUID] = None
    amount: Decimal
    currency: str
    payment_method: PaymentMethod
    status: PaymentStatus
    transaction_type: TransactionType
    payment_intent_id: Optional[str] = None
    gateway_refund_id: Optional[str] = None
    refund_amount: Decimal
    refund_reason: Optional[str] = None
    refunded_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class PaymentIntentResponse(BaseModel):
    payment: PaymentResponse
    client_secret: Optional[str] = None


class RefundResponse(BaseModel):
    payment: PaymentResponse
    refund: PaymentResponse


class WebhookResult(BaseModel):
    event_id: Optional[str] = None
    type: str
    status: str


class PlatformRevenue(BaseModel):
    gross: Decimal
    refunds: Decimal
    net: Decimal
    platform_fee: Decimal
    guide_payouts: Decimal


class PaymentStatsResponse(BaseModel):
    """Counts and sums by transaction type and status, plus revenue."""

    by_type: Dict[str, Dict[str, Dict[str, Any]]]
    revenue: PlatformRevenue
