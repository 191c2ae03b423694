"""Tests for card expiry checks and reminder days."""

from datetime import datetime, timezone

import pytest

from billing_engine.errors import ValidationError
from billing_engine.services.payment_method_service import (
    ExpirationWarningConfig,
    card_expiration_date,
    days_until_card_expires,
    is_card_expired,
    should_send_expiration_warning,
)

UTC = timezone.utc


class TestCardExpiry:
    """Tests for the expiry-month boundary."""

    def test_card_works_through_last_day_of_month(self):
        last = card_expiration_date(2, 2024)
        assert (last.year, last.month, last.day) == (2024, 2, 29)
        assert not is_card_expired(2, 2024, now=datetime(2024, 2, 29, 23, 0, tzinfo=UTC))
        assert is_card_expired(2, 2024, now=datetime(2024, 3, 1, tzinfo=UTC))

    def test_days_until_expiry(self):
        now = datetime(2024, 12, 1, tzinfo=UTC)
        assert days_until_card_expires(12, 2024, now=now) == 31

    def test_invalid_month(self):
        with pytest.raises(ValidationError):
            card_expiration_date(0, 2024)


class TestExpirationWarnings:
    """Tests for should_send_expiration_warning."""

    def test_warning_on_configured_day(self):
        # 2024-12-31T23:59:59.999999 is 7 days (rounded up) after 2024-12-25
        now = datetime(2024, 12, 25, tzinfo=UTC)
        assert should_send_expiration_warning(12, 2024, now=now)
        assert not should_send_expiration_warning(12, 2024, now=now, already_sent=[7])

    def test_no_warning_between_days(self):
        now = datetime(2024, 12, 20, tzinfo=UTC)
        assert not should_send_expiration_warning(12, 2024, now=now)

    def test_no_warning_once_expired(self):
        now = datetime(2025, 1, 2, tzinfo=UTC)
        assert not should_send_expiration_warning(12, 2024, now=now)

    def test_custom_days(self):
        config = ExpirationWarningConfig.build([14, 3])
        assert config.warning_days == (14, 3)
        now = datetime(2024, 12, 18, tzinfo=UTC)
        assert should_send_expiration_warning(12, 2024, now=now, config=config)

    def test_negative_days_rejected(self):
        with pytest.raises(ValidationError):
            ExpirationWarningConfig.build([-1])
