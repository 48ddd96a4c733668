"""
Common schemas for the API response envelope and error handling.
"""

import math
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class PaginationMeta(BaseModel):
    """Schema for pagination information."""

    total: int = Field(..., description="Total number of items")
    page: int = Field(..., description="Current page number")
    page_size: int = Field(..., description="Number of items per page")
    pages: int = Field(..., description="Total number of pages")
    has_next: bool = Field(..., description="Whether there is a next page")
    has_prev: bool = Field(..., description="Whether there is a previous page")

    @classmethod
    def build(cls, total: int, page: int, page_size: int) -> "PaginationMeta":
        pages = math.ceil(total / page_size) if page_size else 0
        return cls(
            total=total,
            page=page,
            page_size=page_size,
            pages=pages,
            has_next=page < pages,
            has_prev=page > 1
        )


class ApiResponse(BaseModel, Generic[T]):
    """Envelope wrapping every successful response."""

    success: bool = True
    message: str = "OK"
    data: Optional[T] = None
    meta: Optional[Dict[str, Any]] = None


class ErrorItem(BaseModel):
    field: Optional[str] = None
    message: str


class ErrorResponse(BaseModel):
    """Envelope for API error responses."""

    success: bool = False
    message: str
    errors: List[ErrorItem] = []
    error_code: str
    error_id: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "success": False,
                    "message": "Booking 123e4567-e89b-12d3-a456-426614174000 cannot move from rejected to cancelled",
                    "errors": [],
                    "error_code": "INVALID_TRANSITION",
                    "error_id": None
                },
                {
                    "success": False,
                    "message": "Request validation failed",
                    "errors": [
                        {"field": "reason", "message": "String should have at least 10 characters"}
                    ],
                    "error_code": "VALIDATION_ERROR",
                    "error_id": None
                }
            ]
        }
    }


def ok(data: Any = None, message: str = "OK", meta: Optional[Dict[str, Any]] = None) -> ApiResponse:
    """Wrap ``data`` in the success envelope."""
    return ApiResponse(success=True, message=message, data=data, meta=meta)


def paginated(items: list, total: int, page: int, page_size: int, message: str = "OK") -> ApiResponse:
    return ApiResponse(
        success=True,
        message=message,
        data=items,
        meta={"pagination": PaginationMeta.build(total, page, page_size).model_dump()}
    )


class HealthStatus(BaseModel):
    """Schema for health check responses."""

    status: str = Field(..., description="Overall health status")
    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")
    timestamp: str = Field(..., description="Health check timestamp")
    dependencies: Dict[str, str] = Field(default_factory=dict, description="Status of service dependencies")
