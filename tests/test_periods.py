"""Tests for billing interval arithmetic and day counting."""

from datetime import datetime, timedelta, timezone

import pytest

from billing_engine.errors import ValidationError
from billing_engine.services.period_service import (
    add_interval,
    as_utc,
    days_since,
    days_until,
    next_billing_date,
    period_length_days,
    subtract_interval,
)

UTC = timezone.utc


class TestAddInterval:
    """Tests for add_interval / subtract_interval."""

    def test_month_clamps_to_end_of_february(self):
        """Jan 31 + 1 month lands on Feb 29 in a leap year."""
        assert add_interval(datetime(2024, 1, 31, tzinfo=UTC), "month") == datetime(
            2024, 2, 29, tzinfo=UTC
        )

    def test_month_rolls_over_year(self):
        assert add_interval(datetime(2024, 11, 15, tzinfo=UTC), "month", 3) == datetime(
            2025, 2, 15, tzinfo=UTC
        )

    def test_year_from_leap_day(self):
        assert add_interval(datetime(2024, 2, 29, tzinfo=UTC), "year") == datetime(
            2025, 2, 28, tzinfo=UTC
        )

    def test_week_and_day(self):
        start = datetime(2024, 1, 1, tzinfo=UTC)
        assert add_interval(start, "week", 2) == start + timedelta(days=14)
        assert add_interval(start, "day", 3) == start + timedelta(days=3)

    def test_subtract_month(self):
        assert subtract_interval(datetime(2024, 3, 31, tzinfo=UTC), "month") == datetime(
            2024, 2, 29, tzinfo=UTC
        )

    def test_unknown_interval_rejected(self):
        with pytest.raises(ValidationError):
            add_interval(datetime(2024, 1, 1, tzinfo=UTC), "fortnight")

    def test_next_billing_date_accepts_naive_datetimes(self):
        """Naive values (as SQLite returns them) are read as UTC."""
        result = next_billing_date(datetime(2024, 1, 1), "month")
        assert result == datetime(2024, 2, 1, tzinfo=UTC)


class TestDayCounting:
    """Tests for whole-day distances."""

    def test_period_length(self):
        assert period_length_days(
            datetime(2024, 1, 1, tzinfo=UTC), datetime(2024, 1, 31, tzinfo=UTC)
        ) == 30

    def test_inverted_period_has_no_days(self):
        assert period_length_days(
            datetime(2024, 1, 31, tzinfo=UTC), datetime(2024, 1, 1, tzinfo=UTC)
        ) <= 0

    def test_days_until_rounds_partial_days_up(self):
        now = datetime(2024, 1, 1, 12, tzinfo=UTC)
        assert days_until(datetime(2024, 1, 3, tzinfo=UTC), now) == 2

    def test_days_since_rounds_down(self):
        now = datetime(2024, 1, 3, 12, tzinfo=UTC)
        assert days_since(datetime(2024, 1, 1, tzinfo=UTC), now) == 2

    def test_as_utc_converts_other_zones(self):
        eastern = timezone(timedelta(hours=-5))
        value = datetime(2024, 1, 1, 19, tzinfo=eastern)
        assert as_utc(value) == datetime(2024, 1, 2, 0, tzinfo=UTC)
        assert as_utc(None) is None
