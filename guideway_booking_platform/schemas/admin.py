"""
Admin bulk action schemas.
"""

from enum import Enum
from typing import List
from uuid import UUID

from pydantic import BaseModel, Field


class UserBulkAction(str, Enum):
    ACTIVATE = "activate"
    DEACTIVATE = "deactivate"
    VERIFY = "verify"
    UNVERIFY = "unverify"
    DELETE = "delete"


class ListingBulkAction(str, Enum):
    ACTIVATE = "activate"
    DEACTIVATE = "deactivate"
    DELETE = "delete"


class UserBulkRequest(BaseModel):
    """Apply one action to many users."""
    user_ids: List[UUID] = Field(..., min_length=1, max_length=500)
    action: UserBulkAction


class ListingBulkRequest(BaseModel):
    """Apply one action to many listings."""
    listing_ids: List[UUID] = Field(..., min_length=1, max_length=500)
    action: ListingBulkAction


class BulkActionResult(BaseModel):
    action: str
    matched: int = Field(..., description="Rows the action applies to")
    modified: int = Field(..., description="Rows actually changed")
