"""Service for billing period arithmetic driven by price recurrences."""

import calendar as cal
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal

from chargeflow.models.product import RECURRENCE_MONTHS, Recurrence


def _add_months(dt: datetime, months: int) -> datetime:
    """Add months to a datetime, clamping to last day of month."""
    month = dt.month - 1 + months
    year = dt.year + month // 12
    month = month % 12 + 1
    max_day = cal.monthrange(year, month)[1]
    day = min(dt.day, max_day)
    return dt.replace(year=year, month=month, day=day)


def _recurrence_months(recurrence: str) -> int:
    try:
        return RECURRENCE_MONTHS[Recurrence(recurrence)]
    except ValueError:
        raise ValueError(f"Unknown recurrence: {recurrence}") from None


def add_period(dt: datetime, recurrence: str, periods: int = 1) -> datetime:
    """Add ``periods`` billing periods of ``recurrence`` to ``dt``."""
    return _add_months(dt, _recurrence_months(recurrence) * periods)


class SubscriptionDatesService:
    """Period boundaries and proration for recurring subscriptions."""

    def first_boundary_on_or_after(
        self,
        boundary: datetime,
        recurrence: str,
        target: date,
    ) -> datetime:
        """Walk forward from a charge boundary until it falls on or after ``target``.

        Args:
            boundary: A known charge boundary (the end of the current period).
            recurrence: The recurrence the subscription renews on.
            target: The earliest acceptable calendar date.

        Returns:
            The first boundary whose date is not before ``target``.
        """
        periods = 0
        candidate = boundary
        while candidate.date() < target:
            periods += 1
            candidate = add_period(boundary, recurrence, periods)
        return candidate

    def prorate_remaining(
        self,
        amount_cents: int,
        period_start: datetime,
        period_end: datetime,
        now: datetime,
    ) -> int:
        """Return the unused share of ``amount_cents`` for the rest of the period.

        Rounded half-up to whole cents; zero once the period is over.
        """
        total_seconds = (period_end - period_start).total_seconds()
        if total_seconds <= 0:
            return 0

        remaining_seconds = (period_end - now).total_seconds()
        if remaining_seconds <= 0:
            return 0
        remaining_seconds = min(remaining_seconds, total_seconds)

        ratio = Decimal(str(remaining_seconds)) / Decimal(str(total_seconds))
        prorated = Decimal(amount_cents) * ratio
        return int(prorated.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
