"""
Pure booking rules: the status transition table and the derived values
computed before a booking is persisted.

Nothing in this module touches the database, so every rule can be tested in
isolation.
"""

import re
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, FrozenSet, Optional

from ..models.booking import BookingStatus
from ..utils.exceptions import InvalidInputError

CENTS = Decimal("0.01")

# Legal booking status graph. Terminal states map to an empty set.
BOOKING_TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({
        BookingStatus.CONFIRMED,
        BookingStatus.REJECTED,
        BookingStatus.CANCELLED,
    }),
    BookingStatus.CONFIRMED: frozenset({
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
    }),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.REJECTED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in BOOKING_TRANSITIONS.items() if not targets
)

_TIME_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    """True when ``target`` is reachable from ``current`` in one step."""
    return target in BOOKING_TRANSITIONS[current]


def is_terminal(status: BookingStatus) -> bool:
    return status in TERMINAL_STATUSES


def parse_time(value: str) -> tuple[int, int]:
    """Parse an ``H:MM``/``HH:MM`` 24-hour clock time."""
    match = _TIME_PATTERN.match(value or "")
    if not match:
        raise InvalidInputError("Invalid time format (HH:MM)", field="start_time")
    return int(match.group(1)), int(match.group(2))


def compute_end_time(start_time: str, duration_hours: int) -> str:
    """End time of a tour, wrapping past midnight, as ``HH:MM``."""
    hours, minutes = parse_time(start_time)
    end_hours = (hours + duration_hours) % 24
    return f"{end_hours:02d}:{minutes:02d}"


def normalize_time(value: str) -> str:
    hours, minutes = parse_time(value)
    return f"{hours:02d}:{minutes:02d}"


def to_money(value) -> Decimal:
    """Quantize a numeric value to cents."""
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def compute_total_price(tour_fee: Decimal, number_of_people: int) -> Decimal:
    """Listing fee times party size, in cents."""
    return to_money(Decimal(tour_fee) * number_of_people)


def validate_party_size(number_of_people: int, listing_max: int, absolute_max: int) -> None:
    if number_of_people < 1:
        raise InvalidInputError("Number of people must be at least 1", field="number_of_people")
    if number_of_people > absolute_max:
        raise InvalidInputError(
            f"Number of people cannot exceed {absolute_max}", field="number_of_people"
        )
    if number_of_people > listing_max:
        raise InvalidInputError(
            f"Number of people exceeds maximum group size of {listing_max}",
            field="number_of_people",
        )


def validate_booking_date(booking_date: date, today: Optional[date] = None) -> None:
    today = today or date.today()
    if booking_date < today:
        raise InvalidInputError("Booking date must not be in the past", field="booking_date")


def calculate_platform_fee(amount: Decimal, percentage: int) -> Decimal:
    """Platform share of an amount, rounded to cents."""
    return to_money(Decimal(amount) * Decimal(percentage) / Decimal(100))


def calculate_guide_payout(amount: Decimal, percentage: int) -> Decimal:
    """What the guide receives once the platform fee is taken."""
    return to_money(Decimal(amount) - calculate_platform_fee(amount, percentage))
