"""Period service — date arithmetic for billing intervals.

Responsible for:
- Adding / subtracting N billing intervals (day, week, month, year)
- Whole-day distances between instants (days until, days since, period length)
- Normalizing database datetimes to aware UTC

Every other engine component builds on these helpers, so they are pure:
callers pass `now` explicitly when the answer depends on the clock.
"""

import calendar
import math
from datetime import datetime, timedelta, timezone

from billing_engine.errors import ValidationError

INTERVALS = ("day", "week", "month", "year")

SECONDS_PER_DAY = 86400


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """Return `value` as an aware UTC datetime (None passes through).

    SQLite returns naive datetimes; Postgres returns aware ones.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _add_months(value, months):
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    # Jan 31 + 1 month -> Feb 28/29, never March
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_interval(value, interval, count=1):
    """Add `count` billing intervals to `value`.

    Month and year steps keep the day of month where possible and clamp to
    the last day of the target month otherwise.
    """
    if interval == "day":
        return value + timedelta(days=count)
    if interval == "week":
        return value + timedelta(weeks=count)
    if interval == "month":
        return _add_months(value, count)
    if interval == "year":
        return _add_months(value, 12 * count)
    raise ValidationError(
        f"Unknown billing interval: {interval!r}", code="invalid_interval"
    )


def subtract_interval(value, interval, count=1):
    return add_interval(value, interval, -count)


def next_billing_date(current_period_end, interval, interval_count=1):
    """The end of the period that starts at `current_period_end`."""
    return add_interval(as_utc(current_period_end), interval, interval_count)


def _day_fraction(start, end):
    return (as_utc(end) - as_utc(start)).total_seconds() / SECONDS_PER_DAY


def days_between(start, end):
    """Whole days from `start` to `end`, rounding partial days up."""
    return math.ceil(_day_fraction(start, end))


def period_length_days(period_start, period_end):
    """Length of a billing period in days (0 or negative for bad periods)."""
    return days_between(period_start, period_end)


def days_until(target, now=None):
    """Days left until `target`, rounded up; negative once it has passed."""
    return math.ceil(_day_fraction(now or utcnow(), target))


def days_since(value, now=None):
    """Whole days elapsed since `value`, rounded down."""
    return math.floor(_day_fraction(value, now or utcnow()))
