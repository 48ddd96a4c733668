"""
Booking model for tour reservations.
"""

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional, TYPE_CHECKING

from sqlalchemy import CheckConstraint, Date, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, enum_values

if TYPE_CHECKING:
    from .listing import Listing
    from .booking_history import BookingHistory


class BookingStatus(enum.Enum):
    """Enumeration for booking status."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    REJECTED = "rejected"


class BookingPaymentStatus(enum.Enum):
    """Payment state of a booking as seen by the booking itself."""
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    FAILED = "failed"


class CancelledBy(enum.Enum):
    """Party that cancelled or rejected a booking."""
    TOURIST = "tourist"
    GUIDE = "guide"
    ADMIN = "admin"


class Booking(Base):
    """Booking model for tour reservations.

    ``version`` is bumped by every write so concurrent status transitions can
    be applied as compare-and-swap updates.
    """

    __tablename__ = "bookings"

    # Foreign key relationships
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

    listing_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("listings.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    # Booking details
    booking_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)
    number_of_people: Mapped[int] = mapped_column(Integer, nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    special_requests: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Booking status and payment state
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, name="booking_status", values_callable=enum_values),
        default=BookingStatus.PENDING,
        nullable=False,
        index=True
    )
    payment_status: Mapped[BookingPaymentStatus] = mapped_column(
        Enum(BookingPaymentStatus, name="booking_payment_status", values_callable=enum_values),
        default=BookingPaymentStatus.PENDING,
        nullable=False,
        index=True
    )
    payment_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Cancellation / rejection
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[Optional[CancelledBy]] = mapped_column(
        Enum(CancelledBy, name="cancelled_by", values_callable=enum_values),
        nullable=True
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Optimistic locking
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Relationships
    listing: Mapped["Listing"] = relationship("Listing", lazy="noload")

    booking_history: Mapped[List["BookingHistory"]] = relationship(
        "BookingHistory",
        back_populates="booking",
        lazy="noload",
        order_by="BookingHistory.created_at"
    )

    # Constraints
    __table_args__ = (
        CheckConstraint("number_of_people > 0", name="ck_bookings_party_positive"),
        CheckConstraint("total_price >= 0", name="ck_bookings_total_price_non_negative"),
    )

    @property
    def is_terminal(self) -> bool:
        """Completed, cancelled and rejected bookings never change again."""
        return self.status in (BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.REJECTED)

    def __repr__(self) -> str:
        """String representation of the booking."""
        return (
            f"<Booking(id={self.id}, tourist_id={self.tourist_id}, listing_id={self.listing_id}, "
            f"status={self.status.value}, payment_status={self.payment_status.value})>"
        )
