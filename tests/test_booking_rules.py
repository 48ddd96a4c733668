from datetime import date
from decimal import Decimal

import pytest

from guideway_booking_platform.models.booking import BookingStatus
from guideway_booking_platform.services.booking_rules import (
    BOOKING_TRANSITIONS,
    calculate_guide_payout,
    calculate_platform_fee,
    can_transition,
    compute_end_time,
    compute_total_price,
    is_terminal,
    normalize_time,
    validate_booking_date,
    validate_party_size,
)
from guideway_booking_platform.utils.exceptions import InvalidInputError


def test_transition_table_matches_lifecycle():
    assert BOOKING_TRANSITIONS[BookingStatus.PENDING] == {
        BookingStatus.CONFIRMED,
        BookingStatus.REJECTED,
        BookingStatus.CANCELLED,
    }
    assert BOOKING_TRANSITIONS[BookingStatus.CONFIRMED] == {
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
    }


@pytest.mark.parametrize(
    "status",
    [BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.REJECTED],
)
def test_terminal_statuses_allow_nothing(status):
    assert is_terminal(status)
    for target in BookingStatus:
        assert not can_transition(status, target)


def test_pending_cannot_jump_to_completed():
    assert not can_transition(BookingStatus.PENDING, BookingStatus.COMPLETED)
    assert not can_transition(BookingStatus.CONFIRMED, BookingStatus.REJECTED)
    assert can_transition(BookingStatus.PENDING, BookingStatus.CONFIRMED)


@pytest.mark.parametrize(
    "start, hours, expected",
    [
        ("09:00", 3, "12:00"),
        ("22:30", 3, "01:30"),
        ("23:59", 1, "00:59"),
        ("00:15", 24, "00:15"),
        ("7:05", 2, "09:05"),
    ],
)
def test_end_time_wraps_past_midnight(start, hours, expected):
    assert compute_end_time(start, hours) == expected


@pytest.mark.parametrize("value", ["24:00", "12:60", "noon", "", "9"])
def test_invalid_start_time_rejected(value):
    with pytest.raises(InvalidInputError) as exc:
        normalize_time(value)
    assert exc.value.field == "start_time"


def test_normalize_time_pads_hours():
    assert normalize_time("7:05") == "07:05"


def test_total_price_is_fee_times_party_in_cents():
    assert compute_total_price(Decimal("50.00"), 3) == Decimal("150.00")
    assert compute_total_price(Decimal("19.995"), 1) == Decimal("20.00")
    assert compute_total_price(Decimal("0"), 4) == Decimal("0.00")


def test_party_size_limits():
    validate_party_size(10, listing_max=10, absolute_max=50)

    with pytest.raises(InvalidInputError, match="at least 1"):
        validate_party_size(0, listing_max=10, absolute_max=50)
    with pytest.raises(InvalidInputError, match="maximum group size of 10"):
        validate_party_size(11, listing_max=10, absolute_max=50)
    with pytest.raises(InvalidInputError, match="cannot exceed 50"):
        validate_party_size(51, listing_max=60, absolute_max=50)


def test_booking_date_today_is_allowed_but_past_is_not():
    today = date(2026, 5, 10)
    validate_booking_date(today, today=today)

    with pytest.raises(InvalidInputError) as exc:
        validate_booking_date(date(2026, 5, 9), today=today)
    assert exc.value.field == "booking_date"


def test_platform_fee_and_payout_split():
    assert calculate_platform_fee(Decimal("150.00"), 10) == Decimal("15.00")
    assert calculate_guide_payout(Decimal("150.00"), 10) == Decimal("135.00")
    # Rounding happens on the fee; the payout is whatever is left
    assert calculate_platform_fee(Decimal("33.33"), 15) == Decimal("5.00")
    assert calculate_guide_payout(Decimal("33.33"), 15) == Decimal("28.33")
