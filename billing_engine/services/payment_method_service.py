"""Payment method service — card expiry reminders.

A card is usable through the last instant of its expiry month. Reminders
go out when the days left hit one of the configured warning days.
"""

import calendar
from dataclasses import dataclass
from datetime import datetime, timezone

from billing_engine.errors import ValidationError
from billing_engine.services.period_service import as_utc, days_until, utcnow


@dataclass(frozen=True)
class ExpirationWarningConfig:
    warning_days: tuple = (30, 7, 1)

    @classmethod
    def build(cls, warning_days=None):
        if warning_days is None:
            return cls()
        if any(d < 0 for d in warning_days):
            raise ValidationError("warning_days must not be negative")
        return cls(warning_days=tuple(sorted(set(warning_days), reverse=True)))

    @classmethod
    def from_app_config(cls, app_config):
        return cls.build(app_config.get("CARD_EXPIRY_WARNING_DAYS"))


DEFAULT_EXPIRATION_WARNING_CONFIG = ExpirationWarningConfig()


def card_expiration_date(exp_month, exp_year):
    """Last instant (UTC) at which a card expiring MM/YYYY still works."""
    if not 1 <= exp_month <= 12:
        raise ValidationError(f"Invalid expiry month: {exp_month}")
    last_day = calendar.monthrange(exp_year, exp_month)[1]
    return datetime(exp_year, exp_month, last_day, 23, 59, 59, 999999, tzinfo=timezone.utc)


def is_card_expired(exp_month, exp_year, now=None):
    now = as_utc(now) or utcnow()
    return now > card_expiration_date(exp_month, exp_year)


def days_until_card_expires(exp_month, exp_year, now=None):
    return days_until(card_expiration_date(exp_month, exp_year), now)


def should_send_expiration_warning(exp_month, exp_year, now=None,
                                   config=DEFAULT_EXPIRATION_WARNING_CONFIG,
                                   already_sent=()):
    """True on a configured warning day that has not been notified yet."""
    if is_card_expired(exp_month, exp_year, now):
        return False
    days_left = days_until_card_expires(exp_month, exp_year, now)
    return days_left in config.warning_days and days_left not in already_sent
