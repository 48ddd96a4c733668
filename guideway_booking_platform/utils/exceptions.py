"""
Custom exceptions for the Guideway Booking Platform.
"""

from typing import Any, Dict, Optional, List
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for the platform."""

    # General errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"

    # Business logic errors
    INVALID_STATE = "INVALID_STATE"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    CONFLICT = "CONFLICT"

    # Concurrency errors
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"
    OPTIMISTIC_LOCK_FAILURE = "OPTIMISTIC_LOCK_FAILURE"

    # External service errors
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    PAYMENT_SERVICE_ERROR = "PAYMENT_SERVICE_ERROR"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"


class GuidewayError(Exception):
    """Base exception class for the Guideway platform."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
        suggestions: Optional[List[str]] = None,
        retry_after: Optional[int] = None
    ):
        """Initialize the exception with comprehensive error information."""
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.suggestions = suggestions or []
        self.retry_after = retry_after
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        result = {
            "error_code": self.error_code.value,
            "message": self.message,
        }

        if self.details:
            result["details"] = self.details

        if self.suggestions:
            result["suggestions"] = self.suggestions

        if self.retry_after:
            result["retry_after"] = self.retry_after

        return result


class ValidationError(GuidewayError):
    """Exception raised for request schema validation errors."""

    def __init__(self, message: str, field_errors: Optional[Dict[str, List[str]]] = None, **kwargs):
        kwargs.setdefault("details", {"field_errors": field_errors} if field_errors else None)
        super().__init__(message, error_code=ErrorCode.VALIDATION_ERROR, **kwargs)
        self.field_errors = field_errors or {}


class InvalidInputError(GuidewayError):
    """Exception raised when a value passes schema validation but breaks a business rule."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        kwargs.setdefault("details", {"field": field} if field else None)
        super().__init__(message, error_code=ErrorCode.INVALID_INPUT, **kwargs)
        self.field = field


class NotFoundError(GuidewayError):
    """Base exception for resource not found errors."""

    def __init__(self, message: str, resource_type: Optional[str] = None, resource_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": resource_id} if resource_type else None,
            **kwargs
        )


class UserNotFoundError(NotFoundError):
    """Exception raised when a user is not found."""

    def __init__(self, user_id: str, **kwargs):
        super().__init__(
            f"User {user_id} not found",
            resource_type="user",
            resource_id=str(user_id),
            **kwargs
        )


class ListingNotFoundError(NotFoundError):
    """Exception raised when a listing is not found."""

    def __init__(self, listing_id: str, **kwargs):
        super().__init__(
            f"Listing {listing_id} not found",
            resource_type="listing",
            resource_id=str(listing_id),
            suggestions=["Check the listing ID", "Browse available tours"],
            **kwargs
        )


class BookingNotFoundError(NotFoundError):
    """Exception raised when a booking is not found."""

    def __init__(self, booking_id: str, **kwargs):
        super().__init__(
            f"Booking {booking_id} not found",
            resource_type="booking",
            resource_id=str(booking_id),
            suggestions=["Check the booking ID", "View your bookings"],
            **kwargs
        )


class PaymentNotFoundError(NotFoundError):
    """Exception raised when a ledger row is not found."""

    def __init__(self, reference: str, **kwargs):
        super().__init__(
            f"Payment {reference} not found",
            resource_type="payment",
            resource_id=str(reference),
            **kwargs
        )


class ReviewNotFoundError(NotFoundError):
    """Exception raised when a review is not found."""

    def __init__(self, review_id: str, **kwargs):
        super().__init__(
            f"Review {review_id} not found",
            resource_type="review",
            resource_id=str(review_id),
            **kwargs
        )


class AuthenticationError(GuidewayError):
    """Exception raised for authentication failures."""

    def __init__(self, message: str = "Authentication failed", **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.UNAUTHORIZED,
            suggestions=["Check your credentials", "Login again"],
            **kwargs
        )


class AuthorizationError(GuidewayError):
    """Exception raised for role or ownership violations."""

    def __init__(self, message: str = "Access denied", required_permission: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.FORBIDDEN,
            details={"required_permission": required_permission} if required_permission else None,
            **kwargs
        )


class BusinessLogicError(GuidewayError):
    """Base exception for business logic violations."""
    pass


class InvalidStateError(BusinessLogicError):
    """Exception raised when an entity is in the wrong state for an operation."""

    def __init__(self, message: str, current_state: Optional[str] = None, **kwargs):
        kwargs.setdefault("error_code", ErrorCode.INVALID_STATE)
        kwargs.setdefault("details", {"current_state": current_state} if current_state else None)
        super().__init__(message, **kwargs)


class InvalidTransitionError(InvalidStateError):
    """Exception raised when a booking status change is not in the transition table."""

    def __init__(self, booking_id: str, current_state: str, target_state: str, **kwargs):
        super().__init__(
            f"Booking {booking_id} cannot move from {current_state} to {target_state}",
            error_code=ErrorCode.INVALID_TRANSITION,
            details={"booking_id": str(booking_id), "current_state": current_state, "target_state": target_state},
            **kwargs
        )


class ConflictError(BusinessLogicError):
    """Exception raised for duplicates: payment intents, reviews, references."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code=ErrorCode.CONFLICT, **kwargs)


class ConcurrencyError(GuidewayError):
    """Exception raised for concurrency-related issues."""

    def __init__(self, message: str, retry_after: int = 1, **kwargs):
        kwargs.setdefault("error_code", ErrorCode.CONCURRENCY_CONFLICT)
        kwargs.setdefault("suggestions", ["Please try again", "Wait a moment and retry"])
        super().__init__(message, retry_after=retry_after, **kwargs)


class OptimisticLockError(ConcurrencyError):
    """Exception raised when optimistic locking fails."""

    def __init__(self, resource_type: str, resource_id: str, **kwargs):
        super().__init__(
            f"{resource_type} {resource_id} was modified by another transaction",
            details={"resource_type": resource_type, "resource_id": str(resource_id)},
            error_code=ErrorCode.OPTIMISTIC_LOCK_FAILURE,
            **kwargs
        )


class ExternalServiceError(GuidewayError):
    """Exception raised for external service failures."""

    def __init__(self, service_name: str, message: str, status_code: Optional[int] = None, **kwargs):
        details = {"service_name": service_name, "status_code": status_code}
        details.update(kwargs.pop("details", None) or {})
        kwargs.setdefault("error_code", ErrorCode.EXTERNAL_SERVICE_ERROR)
        kwargs.setdefault("suggestions", ["Try again later", "Contact support if problem persists"])
        super().__init__(
            f"{service_name} service error: {message}",
            details=details,
            **kwargs
        )
        self.service_name = service_name


class PaymentServiceError(ExternalServiceError):
    """Exception raised when the payment gateway fails or times out.

    The outcome of the gateway call is unknown, so callers must not advance
    local state.
    """

    def __init__(self, message: str, **kwargs):
        super().__init__(
            "payment",
            message,
            error_code=ErrorCode.PAYMENT_SERVICE_ERROR,
            **kwargs
        )


class WebhookSignatureError(GuidewayError):
    """Exception raised when a gateway webhook fails signature verification."""

    def __init__(self, message: str = "Invalid webhook signature", **kwargs):
        super().__init__(message, error_code=ErrorCode.INVALID_SIGNATURE, **kwargs)
