"""
Payment ledger model.

One row per payment attempt plus one row per refund. Rows are never deleted;
payment rows move through ``PaymentStatus`` and refund rows are written once.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    JSON,
    Numeric,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, enum_values


class PaymentStatus(enum.Enum):
    """Ledger row status."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    CANCELLED = "cancelled"


class TransactionType(enum.Enum):
    """Kind of money movement a row records."""
    PAYMENT = "payment"
    REFUND = "refund"
    PAYOUT = "payout"


class PaymentMethod(enum.Enum):
    """How the tourist pays."""
    STRIPE = "stripe"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    WALLET = "wallet"


# Statuses that hold the single payment slot of a booking
ACTIVE_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.COMPLETED)

# Captured money that can still be refunded
REFUNDABLE_STATUSES = (PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED)

_ACTIVE_PAYMENT_WHERE = text(
    "transaction_type = 'payment' AND status IN ('pending', 'processing', 'completed')"
)


class Payment(Base):
    """Ledger entry for a payment, refund or payout."""

    __tablename__ = "payments"

    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("bookings.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    tourist_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    guide_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    original_payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("payments.id", ondelete="RESTRICT"),
        nullable=True,
        index=True
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="usd", nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(
        Enum(PaymentMethod, name="payment_method", values_callable=enum_values),
        default=PaymentMethod.STRIPE,
        nullable=False
    )
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, name="payment_status", values_callable=enum_values),
        default=PaymentStatus.PENDING,
        nullable=False,
        index=True
    )
    transaction_type: Mapped[TransactionType] = mapped_column(
        Enum(TransactionType, name="transaction_type", values_callable=enum_values),
        default=TransactionType.PAYMENT,
        nullable=False,
        index=True
    )

    # Gateway references
    payment_intent_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    gateway_refund_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Refund bookkeeping on the original payment row
    refund_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"), nullable=False)
    refund_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    details: Mapped[Optional[Dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        CheckConstraint("refund_amount >= 0", name="ck_payments_refund_non_negative"),
        CheckConstraint("refund_amount <= amount", name="ck_payments_refund_within_amount"),
        Index(
            "uq_payments_one_active_per_booking",
            "booking_id",
            unique=True,
            sqlite_where=_ACTIVE_PAYMENT_WHERE,
            postgresql_where=_ACTIVE_PAYMENT_WHERE,
        ),
    )

    @property
    def refundable_amount(self) -> Decimal:
        """Captured amount not yet refunded."""
        return self.amount - self.refund_amount

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, booking_id={self.booking_id}, type={self.transaction_type.value}, "
            f"status={self.status.value}, amount={self.amount})>"
        )
