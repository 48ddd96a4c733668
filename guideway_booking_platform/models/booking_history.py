"""
BookingHistory model for tracking booking audit trail.
"""

import enum
import uuid
from typing import Optional, TYPE_CHECKING

from sqlalchemy import Enum, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, enum_values

if TYPE_CHECKING:
    from .booking import Booking


class BookingAction(enum.Enum):
    """Enumeration for booking actions."""
    CREATED = "created"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    PAYMENT_RECEIVED = "payment_received"
    REFUNDED = "refunded"


class BookingHistory(Base):
    """BookingHistory model for tracking booking audit trail."""

    __tablename__ = "booking_history"

    # Foreign key relationships
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    # Action details
    action: Mapped[BookingAction] = mapped_column(
        Enum(BookingAction, name="booking_action", values_callable=enum_values),
        nullable=False,
        index=True
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    to_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Actor id, or "system" for gateway-driven changes
    performed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Relationships
    booking: Mapped["Booking"] = relationship("Booking", back_populates="booking_history", lazy="noload")

    def __repr__(self) -> str:
        """String representation of the booking history entry."""
        return (
            f"<BookingHistory(id={self.id}, booking_id={self.booking_id}, "
            f"action={self.action.value}, created_at={self.created_at})>"
        )
