"""Tests for recurrence period arithmetic and proration."""

from datetime import UTC, date, datetime, timedelta

import pytest

from chargeflow.services.subscription_dates import (
    SubscriptionDatesService,
    _add_months,
    add_period,
)


@pytest.fixture
def service():
    return SubscriptionDatesService()


class TestAddMonths:
    def test_clamps_to_end_of_february(self):
        assert _add_months(datetime(2026, 1, 30, tzinfo=UTC), 1) == datetime(2026, 2, 28, tzinfo=UTC)

    def test_clamps_to_leap_day(self):
        assert _add_months(datetime(2028, 1, 31, tzinfo=UTC), 1) == datetime(2028, 2, 29, tzinfo=UTC)

    def test_crosses_year_boundary(self):
        assert _add_months(datetime(2026, 11, 15, tzinfo=UTC), 3) == datetime(2027, 2, 15, tzinfo=UTC)

    def test_keeps_time_of_day(self):
        result = _add_months(datetime(2026, 3, 10, 8, 45, tzinfo=UTC), 1)
        assert result == datetime(2026, 4, 10, 8, 45, tzinfo=UTC)


class TestAddPeriod:
    @pytest.mark.parametrize(
        ("recurrence", "expected"),
        [
            ("monthly", datetime(2026, 2, 15, tzinfo=UTC)),
            ("quarterly", datetime(2026, 4, 15, tzinfo=UTC)),
            ("biannually", datetime(2026, 7, 15, tzinfo=UTC)),
            ("yearly", datetime(2027, 1, 15, tzinfo=UTC)),
            ("every_two_years", datetime(2028, 1, 15, tzinfo=UTC)),
        ],
    )
    def test_recurrences(self, recurrence, expected):
        assert add_period(datetime(2026, 1, 15, tzinfo=UTC), recurrence) == expected

    def test_multiple_periods_anchor_on_start(self):
        start = datetime(2026, 1, 31, tzinfo=UTC)
        assert add_period(start, "monthly", 2) == datetime(2026, 3, 31, tzinfo=UTC)

    def test_unknown_recurrence(self):
        with pytest.raises(ValueError, match="Unknown recurrence"):
            add_period(datetime(2026, 1, 15, tzinfo=UTC), "weekly")


class TestFirstBoundaryOnOrAfter:
    def test_boundary_already_after_target(self, service):
        boundary = datetime(2026, 11, 19, 12, tzinfo=UTC)
        assert service.first_boundary_on_or_after(boundary, "monthly", date(2026, 10, 26)) == boundary

    def test_boundary_on_target_date(self, service):
        boundary = datetime(2026, 11, 19, 12, tzinfo=UTC)
        assert service.first_boundary_on_or_after(boundary, "monthly", date(2026, 11, 19)) == boundary

    def test_walks_forward_whole_periods(self, service):
        boundary = datetime(2026, 11, 19, 12, tzinfo=UTC)
        result = service.first_boundary_on_or_after(boundary, "monthly", date(2027, 1, 1))
        assert result == datetime(2027, 1, 19, 12, tzinfo=UTC)

    def test_yearly_recurrence(self, service):
        boundary = datetime(2026, 11, 19, tzinfo=UTC)
        result = service.first_boundary_on_or_after(boundary, "yearly", date(2027, 1, 1))
        assert result == datetime(2027, 11, 19, tzinfo=UTC)


class TestProrateRemaining:
    def test_half_period_left(self, service):
        start = datetime(2026, 9, 1, tzinfo=UTC)
        end = start + timedelta(days=30)
        assert service.prorate_remaining(1000, start, end, start + timedelta(days=15)) == 500

    def test_rounds_half_up(self, service):
        start = datetime(2026, 9, 1, tzinfo=UTC)
        end = start + timedelta(days=2)
        assert service.prorate_remaining(1, start, end, start + timedelta(days=1)) == 1

    def test_period_over(self, service):
        start = datetime(2026, 9, 1, tzinfo=UTC)
        end = start + timedelta(days=30)
        assert service.prorate_remaining(1000, start, end, end + timedelta(seconds=1)) == 0

    def test_before_period_start_is_full_amount(self, service):
        start = datetime(2026, 9, 1, tzinfo=UTC)
        end = start + timedelta(days=30)
        assert service.prorate_remaining(1000, start, end, start - timedelta(days=1)) == 1000

    def test_empty_period(self, service):
        start = datetime(2026, 9, 1, tzinfo=UTC)
        assert service.prorate_remaining(1000, start, start, start) == 0
