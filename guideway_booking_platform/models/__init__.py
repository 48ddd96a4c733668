"""
Database models for the Guideway booking platform.
"""

from .base import Base
from .user import Actor, User, UserRole
from .listing import Listing, ListingStatus
from .booking import Booking, BookingStatus, BookingPaymentStatus, CancelledBy
from .booking_history import BookingHistory, BookingAction
from .payment import Payment, PaymentStatus, PaymentMethod, TransactionType
from .review import Review

__all__ = [
    "Base",
    "Actor",
    "User",
    "UserRole",
    "Listing",
    "ListingStatus",
    "Booking",
    "BookingStatus",
    "BookingPaymentStatus",
    "CancelledBy",
    "BookingHistory",
    "BookingAction",
    "Payment",
    "PaymentStatus",
    "PaymentMethod",
    "TransactionType",
    "Review",
]
