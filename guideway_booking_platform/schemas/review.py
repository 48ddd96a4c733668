"""
Review schemas.
"""

from datetime import datetime
from typing import Dict, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class ReviewCreateRequest(BaseModel):
    booking_id: UUID
    listing_id: UUID
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)


class ReviewUpdateRequest(BaseModel):
    """Edit within the edit window. At least one field is required."""

    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)

    @model_validator(mode="after")
    def require_change(self) -> "ReviewUpdateRequest":
        if self.rating is None and self.comment is None:
            raise ValueError("Provide a rating or a comment")
        return self


class ReviewVisibilityRequest(BaseModel):
    is_hidden: bool


class GuideResponseRequest(BaseModel):
    response: str = Field(..., min_length=1, max_length=1000)


class ReviewResponse(BaseModel):
    id: UUID
    booking_id: UUID
    tourist_id: UUID
    guide_id: UUID
    listing_id: UUID
    rating: int
    comment: Optional[str] = None
    is_edited: bool
    edited_at: Optional[datetime] = None
    report_count: int
    is_hidden: bool
    guide_response: Optional[str] = None
    guide_responded_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class GuideReviewSummary(BaseModel):
    guide_id: UUID
    average_rating: float
    total_reviews: int
    distribution: Dict[str, int] = Field(..., description="Visible reviews per star, keys '1'..'5'")


class ListingRatingResponse(BaseModel):
    """Listing aggregate after a repair."""

    listing_id: UUID
    average_rating: float
    total_reviews: int
    total_bookings: int
