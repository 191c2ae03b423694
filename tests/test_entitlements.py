"""Tests for entitlements and metered usage limits."""

import math
from datetime import datetime, timedelta, timezone

import pytest

from billing_engine.errors import NotFoundError, ValidationError
from billing_engine.models.entitlement import Entitlement
from billing_engine.services.entitlement_service import (
    check_entitlement,
    check_limit,
    get_customer_entitlements,
    get_customer_limits,
    grant_entitlement,
    increment_limit,
    record_usage,
    reset_due_limits,
    revoke_entitlement,
    set_limit,
)

NOW = datetime(2024, 1, 16, tzinfo=timezone.utc)


class TestEntitlements:
    """Tests for granting, checking and revoking feature keys."""

    def test_grant_and_check(self, seed_data):
        customer_id = seed_data["customer_id"]
        assert not check_entitlement(customer_id, "api_access")
        grant_entitlement(customer_id, "api_access")
        assert check_entitlement(customer_id, "api_access")

    def test_regrant_keeps_one_row(self, seed_data):
        customer_id = seed_data["customer_id"]
        grant_entitlement(customer_id, "api_access")
        grant_entitlement(customer_id, "api_access", source="plan", source_id="pro")
        rows = Entitlement.query.filter_by(customer_id=customer_id).all()
        assert len(rows) == 1
        assert rows[0].source == "plan"

    def test_expired_grant_is_not_entitled(self, seed_data):
        customer_id = seed_data["customer_id"]
        grant_entitlement(customer_id, "beta", expires_at=NOW - timedelta(days=1))
        assert not check_entitlement(customer_id, "beta", now=NOW)
        assert get_customer_entitlements(customer_id, now=NOW) == []

    def test_future_expiry_is_entitled(self, seed_data):
        customer_id = seed_data["customer_id"]
        grant_entitlement(customer_id, "beta", expires_at=NOW + timedelta(days=1))
        assert check_entitlement(customer_id, "beta", now=NOW)

    def test_revoke(self, seed_data):
        customer_id = seed_data["customer_id"]
        grant_entitlement(customer_id, "api_access")
        assert revoke_entitlement(customer_id, "api_access") is True
        assert revoke_entitlement(customer_id, "api_access") is False
        assert not check_entitlement(customer_id, "api_access")

    def test_key_required(self, seed_data):
        with pytest.raises(ValidationError):
            grant_entitlement(seed_data["customer_id"], "")


class TestLimits:
    """Tests for limit checks and usage recording."""

    def test_undefined_limit_is_unlimited(self, seed_data):
        check = check_limit(seed_data["customer_id"], "api_calls")
        assert check.allowed is True
        assert check.max_value == math.inf
        assert check.remaining == math.inf

    def test_increment_to_max_blocks(self, seed_data):
        customer_id = seed_data["customer_id"]
        set_limit(customer_id, "api_calls", 10)
        check = increment_limit(customer_id, "api_calls", 10)
        assert check.allowed is False
        assert check.current_value == 10
        assert check.remaining == 0

    def test_overshoot_clamps_remaining(self, seed_data):
        customer_id = seed_data["customer_id"]
        set_limit(customer_id, "api_calls", 5)
        check = record_usage(customer_id, "api_calls", 8)
        assert check.current_value == 8
        assert check.remaining == 0

    def test_set_overwrites_counter(self, seed_data):
        customer_id = seed_data["customer_id"]
        set_limit(customer_id, "seats", 10)
        record_usage(customer_id, "seats", 7)
        check = record_usage(customer_id, "seats", 2, action="set")
        assert check.current_value == 2
        assert check.remaining == 8

    def test_set_limit_restarts_counter(self, seed_data):
        customer_id = seed_data["customer_id"]
        set_limit(customer_id, "seats", 10)
        record_usage(customer_id, "seats", 7)
        set_limit(customer_id, "seats", 20)
        assert check_limit(customer_id, "seats").current_value == 0

    def test_increment_undefined_limit(self, seed_data):
        with pytest.raises(NotFoundError) as exc:
            increment_limit(seed_data["customer_id"], "missing")
        assert exc.value.code == "limit_not_found"

    def test_invalid_usage_action(self, seed_data):
        with pytest.raises(ValidationError):
            record_usage(seed_data["customer_id"], "seats", 1, action="decrement")

    def test_negative_max_rejected(self, seed_data):
        with pytest.raises(ValidationError):
            set_limit(seed_data["customer_id"], "seats", -1)

    def test_customer_limits_map(self, seed_data):
        customer_id = seed_data["customer_id"]
        set_limit(customer_id, "seats", 3)
        set_limit(customer_id, "api_calls", 100)
        limits = get_customer_limits(customer_id)
        assert sorted(limits) == ["api_calls", "seats"]
        assert limits["seats"].max_value == 3

    def test_reset_due_limits(self, seed_data):
        customer_id = seed_data["customer_id"]
        set_limit(customer_id, "api_calls", 100, reset_at=NOW - timedelta(hours=1))
        set_limit(customer_id, "seats", 5, reset_at=NOW + timedelta(days=1))
        record_usage(customer_id, "api_calls", 40)
        record_usage(customer_id, "seats", 3)

        assert reset_due_limits(now=NOW) == 1
        assert check_limit(customer_id, "api_calls").current_value == 0
        assert check_limit(customer_id, "seats").current_value == 3
