"""
Listing model for tours offered by guides.
"""

import enum
import uuid
from decimal import Decimal
from typing import Optional, TYPE_CHECKING

from sqlalchemy import Boolean, CheckConstraint, Enum, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, enum_values

if TYPE_CHECKING:
    from .user import User


class ListingStatus(enum.Enum):
    """Publication status of a listing."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    DRAFT = "draft"


class Listing(Base):
    """A guide's tour offering with price, duration and capacity.

    ``total_bookings``, ``total_reviews``, ``rating_total`` and
    ``average_rating`` form the listing aggregate. They are written only by
    ``RatingService``.
    """

    __tablename__ = "listings"

    guide_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    country: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    tour_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    duration_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    max_group_size: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[ListingStatus] = mapped_column(
        Enum(ListingStatus, name="listing_status", values_callable=enum_values),
        default=ListingStatus.ACTIVE,
        nullable=False,
        index=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Aggregate
    total_bookings: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_reviews: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rating_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    average_rating: Mapped[Decimal] = mapped_column(
        Numeric(3, 1),
        default=Decimal("0.0"),
        nullable=False
    )

    guide: Mapped["User"] = relationship("User", back_populates="listings", lazy="noload")

    __table_args__ = (
        CheckConstraint("tour_fee >= 0", name="ck_listings_tour_fee_non_negative"),
        CheckConstraint("duration_hours BETWEEN 1 AND 240", name="ck_listings_duration_range"),
        CheckConstraint("max_group_size BETWEEN 1 AND 50", name="ck_listings_group_size_range"),
        CheckConstraint("total_reviews >= 0", name="ck_listings_total_reviews_non_negative"),
        CheckConstraint("average_rating BETWEEN 0 AND 5", name="ck_listings_average_rating_range"),
    )

    @property
    def is_bookable(self) -> bool:
        """Active flag set and published."""
        return self.is_active and self.status == ListingStatus.ACTIVE

    def __repr__(self) -> str:
        return f"<Listing(id={self.id}, title='{self.title}', guide_id={self.guide_id})>"
