"""Business logic services for the Guideway Booking Platform."""

from .user_service import UserService
from .booking_service import BookingService
from .payment_gateway import PaymentGateway, StripeGateway
from .payment_service import PaymentService
from .rating_service import RatingService
from .review_service import ReviewService
from .orchestrator import BookingOrchestrator
from .earnings_service import EarningsService
from .admin_service import AdminService

__all__ = [
    "UserService",
    "BookingService",
    "PaymentGateway",
    "StripeGateway",
    "PaymentService",
    "RatingService",
    "ReviewService",
    "BookingOrchestrator",
    "EarningsService",
    "AdminService",
]
