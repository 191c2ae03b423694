"""Tests for invoice numbering, totals and the invoice lifecycle."""

from datetime import datetime, timezone

import pytest

from billing_engine.errors import StateConflictError, ValidationError
from billing_engine.services.invoice_service import (
    InvoiceNumberConfig,
    calculate_invoice_totals,
    create_invoice,
    create_proration_invoice,
    finalize_invoice,
    generate_invoice_number,
    mark_invoice_paid,
    parse_invoice_number,
    void_invoice,
)
from billing_engine.services.payment_service import record_payment
from billing_engine.services.proration_service import calculate_subscription_proration

NOW = datetime(2024, 1, 16, tzinfo=timezone.utc)

LINES = [
    {"description": "Pro plan", "quantity": 2, "unit_amount": 4999},
    {"description": "Setup fee", "unit_amount": 1000},
]


class TestInvoiceNumbers:
    """Tests for generate_invoice_number / parse_invoice_number."""

    def test_default_format(self):
        assert generate_invoice_number(1, year=2024) == "INV-2024-000001"

    def test_round_trip_across_sequence_range(self):
        for sequence in (1, 9, 10, 4821, 99999, 100000, 999999):
            number = generate_invoice_number(sequence, year=2024)
            parts = parse_invoice_number(number)
            assert parts.sequence == sequence
            assert parts.year == 2024
            assert parts.prefix == "INV"

    def test_tenant_prefix_and_no_year(self):
        config = InvoiceNumberConfig.build(
            prefix="BILL", include_year=False, sequence_digits=4, tenant_prefix="acme"
        )
        number = generate_invoice_number(42, config)
        assert number == "ACME-BILL-0042"
        assert parse_invoice_number(number, config).tenant_prefix == "ACME"

    def test_sequence_out_of_range(self):
        with pytest.raises(ValidationError):
            generate_invoice_number(0)
        with pytest.raises(ValidationError):
            generate_invoice_number(1_000_000)

    @pytest.mark.parametrize("number", [
        "INV-2024",
        "XYZ-2024-000001",
        "INV-24-000001",
        "INV-2024-00001",
        "INV-2024-00000a",
        None,
    ])
    def test_parse_rejects_malformed(self, number):
        with pytest.raises(ValidationError) as exc:
            parse_invoice_number(number)
        assert exc.value.code == "invalid_invoice_number"

    def test_separator_in_prefix_rejected(self):
        with pytest.raises(ValidationError):
            InvoiceNumberConfig.build(prefix="IN-V")


class TestTotals:
    """Tests for calculate_invoice_totals."""

    def test_subtotal_and_discount(self):
        totals = calculate_invoice_totals(LINES, discount=998)
        assert totals.subtotal == 10998
        assert totals.discount == 998
        assert totals.total == 10000

    def test_discount_clamped_to_subtotal(self):
        totals = calculate_invoice_totals(LINES, discount=50000)
        assert totals.discount == 10998
        assert totals.total == 0


class TestLifecycle:
    """Tests for create / finalize / void / pay."""

    def test_create_draft(self, seed_data):
        invoice = create_invoice(seed_data["customer_id"], LINES, "USD")
        assert invoice.status == "draft"
        assert invoice.number is None
        assert invoice.currency == "usd"
        assert invoice.total == 10998
        assert [line.amount for line in invoice.lines] == [9998, 1000]

    def test_empty_lines_rejected(self, seed_data):
        with pytest.raises(ValidationError) as exc:
            create_invoice(seed_data["customer_id"], [], "usd")
        assert exc.value.code == "missing_required_field"

    def test_bad_line_rejected(self, seed_data):
        with pytest.raises(ValidationError):
            create_invoice(
                seed_data["customer_id"], [{"description": "x", "unit_amount": 1.5}], "usd"
            )

    def test_finalize_assigns_sequential_numbers(self, seed_data):
        first = finalize_invoice(create_invoice(seed_data["customer_id"], LINES, "usd"), now=NOW)
        second = finalize_invoice(create_invoice(seed_data["customer_id"], LINES, "usd"), now=NOW)
        assert first.status == "open"
        assert first.number == "INV-2024-000001"
        assert second.number == "INV-2024-000002"

    def test_sequence_restarts_each_year(self, seed_data):
        finalize_invoice(create_invoice(seed_data["customer_id"], LINES, "usd"), now=NOW)
        later = finalize_invoice(
            create_invoice(seed_data["customer_id"], LINES, "usd"),
            now=datetime(2025, 1, 2, tzinfo=timezone.utc),
        )
        assert later.number == "INV-2025-000001"

    def test_finalize_twice_conflicts(self, seed_data):
        invoice = finalize_invoice(create_invoice(seed_data["customer_id"], LINES, "usd"), now=NOW)
        with pytest.raises(StateConflictError) as exc:
            finalize_invoice(invoice, now=NOW)
        assert exc.value.code == "invoice_not_draft"

    def test_zero_total_cannot_finalize(self, seed_data):
        invoice = create_invoice(seed_data["customer_id"], LINES, "usd", discount=50000)
        with pytest.raises(ValidationError):
            finalize_invoice(invoice, now=NOW)

    def test_payment_marks_paid_and_blocks_void(self, seed_data):
        invoice = finalize_invoice(create_invoice(seed_data["customer_id"], LINES, "usd"), now=NOW)
        record_payment(seed_data["customer_id"], 10998, "usd", invoice=invoice)
        assert invoice.status == "paid"
        assert invoice.amount_remaining == 0
        with pytest.raises(StateConflictError) as exc:
            void_invoice(invoice)
        assert exc.value.code == "invoice_already_paid"

    def test_partial_payment_keeps_open(self, seed_data):
        invoice = finalize_invoice(create_invoice(seed_data["customer_id"], LINES, "usd"), now=NOW)
        mark_invoice_paid(invoice, 5000)
        assert invoice.status == "open"
        assert invoice.amount_remaining == 5998

    def test_void(self, seed_data):
        invoice = finalize_invoice(create_invoice(seed_data["customer_id"], LINES, "usd"), now=NOW)
        void_invoice(invoice, now=NOW)
        assert invoice.status == "void"
        assert invoice.amount_remaining == 0
        with pytest.raises(StateConflictError):
            void_invoice(invoice)

    def test_draft_cannot_take_payment(self, seed_data):
        invoice = create_invoice(seed_data["customer_id"], LINES, "usd")
        with pytest.raises(StateConflictError) as exc:
            mark_invoice_paid(invoice, 100)
        assert exc.value.code == "invoice_not_open"


class TestProrationInvoice:
    """Tests for create_proration_invoice."""

    def test_upgrade_invoice_lines(self, seed_data):
        sub = seed_data["subscription"]
        proration = calculate_subscription_proration(
            sub, seed_data["basic"], seed_data["pro"], now=NOW
        )
        invoice = create_proration_invoice(sub, seed_data["basic"], seed_data["pro"], proration)

        assert invoice.subscription_id == sub.id
        assert [line.amount for line in invoice.lines] == [-1000, 2500]
        assert all(line.proration for line in invoice.lines)
        assert invoice.total == 1500
