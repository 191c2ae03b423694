"""Tests for payment validation, recording, and refunds."""

import pytest

from billing_engine.errors import StateConflictError, ValidationError
from billing_engine.models.audit import AuditEvent
from billing_engine.services.payment_service import (
    MAX_PAYMENT_AMOUNT,
    record_payment,
    refund_payment,
    validate_currency,
    validate_payment_amount,
)


class TestValidation:
    """Tests for amount and currency validation."""

    @pytest.mark.parametrize("amount", [0, -1, 1.5, "100", True, None, MAX_PAYMENT_AMOUNT + 1])
    def test_rejects_invalid_amounts(self, amount):
        with pytest.raises(ValidationError) as exc:
            validate_payment_amount(amount)
        assert exc.value.code == "invalid_amount"

    def test_accepts_bounds(self):
        assert validate_payment_amount(1) == 1
        assert validate_payment_amount(MAX_PAYMENT_AMOUNT) == MAX_PAYMENT_AMOUNT

    def test_currency_is_normalized(self):
        assert validate_currency("USD") == "usd"

    def test_unknown_currency(self):
        with pytest.raises(ValidationError) as exc:
            validate_currency("xyz")
        assert exc.value.code == "invalid_currency"


class TestRecordPayment:
    """Tests for record_payment and its effect on the subscription."""

    def test_failure_moves_subscription_to_past_due(self, seed_data):
        sub = seed_data["subscription"]
        payment = record_payment(
            seed_data["customer_id"], 1999, "usd", status="failed",
            subscription=sub, failure_code="card_declined",
        )
        assert payment.status == "failed"
        assert payment.failure_code == "card_declined"
        assert sub.status == "past_due"

    def test_success_recovers_past_due(self, seed_data):
        sub = seed_data["subscription"]
        sub.status = "past_due"
        record_payment(seed_data["customer_id"], 1999, "usd", subscription=sub)
        assert sub.status == "active"

    def test_failure_code_dropped_on_success(self, seed_data):
        payment = record_payment(
            seed_data["customer_id"], 1999, "usd", status="succeeded", failure_code="ignored"
        )
        assert payment.failure_code is None

    def test_idempotent_on_provider_id(self, seed_data):
        first = record_payment(
            seed_data["customer_id"], 1999, "usd", provider_payment_id="ch_123"
        )
        second = record_payment(
            seed_data["customer_id"], 1999, "usd", provider_payment_id="ch_123"
        )
        assert first.id == second.id

    def test_rejects_unknown_status(self, seed_data):
        with pytest.raises(ValidationError):
            record_payment(seed_data["customer_id"], 1999, "usd", status="refunded")

    def test_audited(self, seed_data):
        record_payment(seed_data["customer_id"], 1999, "usd")
        event = AuditEvent.query.filter_by(action="payment.succeeded").one()
        assert event.customer_id == seed_data["customer_id"]


class TestRefunds:
    """Tests for refund_payment."""

    def test_partial_then_full(self, seed_data):
        payment = record_payment(seed_data["customer_id"], 1000, "usd")

        refund_payment(payment, 400)
        assert payment.status == "partially_refunded"
        assert payment.amount_refunded == 400

        refund_payment(payment)
        assert payment.status == "refunded"
        assert payment.amount_refunded == 1000

    def test_over_refund_rejected(self, seed_data):
        payment = record_payment(seed_data["customer_id"], 1000, "usd")
        with pytest.raises(ValidationError):
            refund_payment(payment, 1001)

    def test_failed_payment_not_refundable(self, seed_data):
        payment = record_payment(seed_data["customer_id"], 1000, "usd", status="failed")
        with pytest.raises(StateConflictError) as exc:
            refund_payment(payment)
        assert exc.value.code == "payment_not_refundable"

    def test_fully_refunded_not_refundable_again(self, seed_data):
        payment = record_payment(seed_data["customer_id"], 1000, "usd")
        refund_payment(payment)
        with pytest.raises(StateConflictError):
            refund_payment(payment, 1)
