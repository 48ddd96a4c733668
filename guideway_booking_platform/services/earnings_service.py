"""
Guide earnings read model, derived from bookings on every request and cached
briefly in Redis.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..cache import CacheKeyBuilder, CacheTTL, RedisCache
from ..config import Settings, get_settings
from ..models.base import ensure_utc
from ..models.booking import Booking, BookingPaymentStatus, BookingStatus
from ..models.payment import Payment, PaymentStatus, TransactionType
from ..schemas.earnings import GuideEarnings, MonthlyEarnings
from .booking_rules import calculate_guide_payout, calculate_platform_fee, to_money

logger = logging.getLogger(__name__)


def month_keys(months: int, today: Optional[date] = None) -> List[str]:
    """The last ``months`` calendar months, oldest first, as YYYY-MM."""
    today = today or date.today()
    year, month = today.year, today.month
    keys = []
    for _ in range(months):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(keys))


class EarningsService:
    """Service for guide earnings reports."""

    def __init__(
        self,
        session: AsyncSession,
        cache: Optional[RedisCache] = None,
        settings: Optional[Settings] = None
    ):
        self.session = session
        self.cache = cache
        self.settings = settings or get_settings()

    async def guide_earnings(
        self,
        guide_id: UUID,
        months: Optional[int] = None,
        today: Optional[date] = None
    ) -> GuideEarnings:
        """Totals, pending earnings and monthly buckets for one guide."""
        months = months or self.settings.earnings_history_months
        cache_key = CacheKeyBuilder.guide_earnings(str(guide_id), months)
        if self.cache is not None and today is None:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return GuideEarnings.model_validate(cached)

        paid = Booking.payment_status == BookingPaymentStatus.PAID
        pending_total = (await self.session.execute(
            select(func.coalesce(func.sum(Booking.total_price), 0))
            .where(Booking.guide_id == guide_id, Booking.status == BookingStatus.CONFIRMED, paid)
        )).scalar_one()

        # Completed tours count net of any refund issued afterwards
        refunds = (
            select(Payment.booking_id, func.sum(Payment.amount).label("refunded"))
            .where(
                Payment.guide_id == guide_id,
                Payment.transaction_type == TransactionType.REFUND,
                Payment.status == PaymentStatus.COMPLETED
            )
            .group_by(Payment.booking_id)
            .subquery()
        )
        rows = (await self.session.execute(
            select(Booking.completed_at, Booking.total_price, func.coalesce(refunds.c.refunded, 0))
            .outerjoin(refunds, refunds.c.booking_id == Booking.id)
            .where(
                Booking.guide_id == guide_id,
                Booking.status == BookingStatus.COMPLETED,
                Booking.payment_status.in_((BookingPaymentStatus.PAID, BookingPaymentStatus.REFUNDED))
            )
        )).all()

        keys = month_keys(months, today)
        buckets = {key: [Decimal("0.00"), 0] for key in keys}
        total = Decimal("0.00")
        completed_count = 0
        for completed_at, price, refunded in rows:
            net = to_money(price) - to_money(refunded)
            if net <= 0:
                continue
            total += net
            completed_count += 1
            key = ensure_utc(completed_at).strftime("%Y-%m")
            if key in buckets:
                buckets[key][0] += net
                buckets[key][1] += 1

        pct = self.settings.platform_fee_percentage
        report = GuideEarnings(
            guide_id=guide_id,
            total_earnings=total,
            pending_earnings=to_money(pending_total),
            completed_bookings=completed_count,
            average_earning_per_booking=to_money(total / completed_count) if completed_count else Decimal("0.00"),
            platform_fee_percentage=pct,
            platform_fee=calculate_platform_fee(total, pct),
            net_payout=calculate_guide_payout(total, pct),
            monthly=[
                MonthlyEarnings(month=key, earnings=to_money(amount), bookings=count)
                for key, (amount, count) in buckets.items()
            ]
        )

        if self.cache is not None and today is None:
            await self.cache.set(cache_key, report.model_dump(mode="json"), CacheTTL.GUIDE_EARNINGS)
        logger.debug(f"Computed earnings for guide {guide_id}: {total}")
        return report
