"""Invoice service — numbering, totals, and the invoice lifecycle.

Responsible for:
- Generating and parsing human-facing invoice numbers
  ("INV-2024-000001"), with a per-year sequence when the year is included
- Validating line items and computing subtotal / discount / total
- Draft creation, finalization (assigns the number), voiding, payment
- Turning a plan-change proration into a draft invoice
"""

import logging
from collections import namedtuple
from dataclasses import dataclass
from typing import Optional

from billing_engine.errors import StateConflictError, ValidationError
from billing_engine.extensions import db
from billing_engine.models.invoice import Invoice, InvoiceLine
from billing_engine.services.billing_service import log_billing_audit
from billing_engine.services.payment_service import validate_currency
from billing_engine.services.period_service import as_utc, utcnow
from billing_engine.services.proration_service import create_proration_line_items

logger = logging.getLogger(__name__)

InvoiceNumberParts = namedtuple(
    "InvoiceNumberParts", ["tenant_prefix", "prefix", "year", "sequence"]
)
InvoiceTotals = namedtuple("InvoiceTotals", ["subtotal", "discount", "total"])


@dataclass(frozen=True)
class InvoiceNumberConfig:
    prefix: str = "INV"
    include_year: bool = True
    sequence_digits: int = 6
    separator: str = "-"
    tenant_prefix: Optional[str] = None

    @classmethod
    def build(cls, prefix=None, include_year=None, sequence_digits=None,
              separator=None, tenant_prefix=None):
        """Effective config: every omitted field takes its default."""
        defaults = cls()
        config = cls(
            prefix=prefix if prefix is not None else defaults.prefix,
            include_year=include_year if include_year is not None else defaults.include_year,
            sequence_digits=sequence_digits if sequence_digits is not None
            else defaults.sequence_digits,
            separator=separator if separator is not None else defaults.separator,
            tenant_prefix=tenant_prefix.upper() if tenant_prefix else None,
        )
        config.validate()
        return config

    @classmethod
    def from_app_config(cls, app_config):
        return cls.build(
            prefix=app_config.get("INVOICE_NUMBER_PREFIX"),
            include_year=app_config.get("INVOICE_INCLUDE_YEAR"),
            sequence_digits=app_config.get("INVOICE_SEQUENCE_DIGITS"),
            separator=app_config.get("INVOICE_NUMBER_SEPARATOR"),
        )

    @property
    def max_sequence(self):
        return 10 ** self.sequence_digits - 1

    def validate(self):
        if not self.separator:
            raise ValidationError("Invoice number separator must not be empty")
        if not self.prefix or self.separator in self.prefix:
            raise ValidationError("Invoice prefix must be non-empty and free of the separator")
        if self.tenant_prefix and self.separator in self.tenant_prefix:
            raise ValidationError("Tenant prefix must not contain the separator")
        if self.sequence_digits < 1:
            raise ValidationError("sequence_digits must be at least 1")


DEFAULT_INVOICE_NUMBER_CONFIG = InvoiceNumberConfig()


# ──────────────────────────────────────────────
# Numbering
# ──────────────────────────────────────────────

def generate_invoice_number(sequence, config=DEFAULT_INVOICE_NUMBER_CONFIG, year=None):
    """Format `sequence` as an invoice number, e.g. 1 -> "INV-2024-000001"."""
    if not isinstance(sequence, int) or sequence < 1 or sequence > config.max_sequence:
        raise ValidationError(
            f"Invoice sequence must be between 1 and {config.max_sequence}, got {sequence!r}"
        )

    parts = []
    if config.tenant_prefix:
        parts.append(config.tenant_prefix)
    parts.append(config.prefix)
    if config.include_year:
        parts.append(str(year if year is not None else utcnow().year))
    parts.append(str(sequence).zfill(config.sequence_digits))
    return config.separator.join(parts)


def parse_invoice_number(number, config=DEFAULT_INVOICE_NUMBER_CONFIG):
    """Inverse of generate_invoice_number(). Raises ValidationError on mismatch."""
    parts = number.split(config.separator) if isinstance(number, str) else []
    expected = 2 + int(config.include_year) + int(bool(config.tenant_prefix))
    if len(parts) != expected:
        raise ValidationError(f"Invalid invoice number: {number!r}", code="invalid_invoice_number")

    tenant_prefix = parts.pop(0) if config.tenant_prefix else None
    prefix = parts.pop(0)
    year = parts.pop(0) if config.include_year else None
    sequence = parts.pop(0)

    if tenant_prefix is not None and tenant_prefix != config.tenant_prefix:
        raise ValidationError(f"Invalid invoice number: {number!r}", code="invalid_invoice_number")
    if prefix != config.prefix:
        raise ValidationError(f"Invalid invoice number: {number!r}", code="invalid_invoice_number")
    if year is not None and not (len(year) == 4 and year.isdigit()):
        raise ValidationError(f"Invalid invoice number: {number!r}", code="invalid_invoice_number")
    if len(sequence) != config.sequence_digits or not sequence.isdigit():
        raise ValidationError(f"Invalid invoice number: {number!r}", code="invalid_invoice_number")

    return InvoiceNumberParts(
        tenant_prefix=tenant_prefix,
        prefix=prefix,
        year=int(year) if year is not None else None,
        sequence=int(sequence),
    )


def next_invoice_sequence(config=DEFAULT_INVOICE_NUMBER_CONFIG, year=None):
    """Next free sequence number; counts restart each year when the year is in the number."""
    query = db.session.query(db.func.max(Invoice.sequence))
    if config.include_year:
        query = query.filter(Invoice.sequence_year == year)
    current = query.scalar() or 0
    if current >= config.max_sequence:
        raise ValidationError("Invoice sequence space is exhausted", code="sequence_exhausted")
    return current + 1


# ──────────────────────────────────────────────
# Lines & totals
# ──────────────────────────────────────────────

def validate_line_items(lines):
    """Raise ValidationError unless every line is well-formed."""
    if not lines:
        raise ValidationError("At least one line item is required", code="missing_required_field")
    for index, line in enumerate(lines):
        description = line.get("description")
        quantity = line.get("quantity", 1)
        unit_amount = line.get("unit_amount")
        if not description or not isinstance(description, str):
            raise ValidationError(f"Line {index}: description is required")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise ValidationError(f"Line {index}: quantity must be a positive integer")
        if not isinstance(unit_amount, int) or isinstance(unit_amount, bool):
            raise ValidationError(f"Line {index}: unit_amount must be an integer")
    return lines


def calculate_invoice_totals(lines, discount=0):
    """Subtotal of line amounts, discount clamped to it, total never negative."""
    subtotal = sum(line.get("quantity", 1) * line["unit_amount"] for line in lines)
    discount = min(max(discount or 0, 0), max(subtotal, 0))
    return InvoiceTotals(subtotal=subtotal, discount=discount, total=max(0, subtotal - discount))


# ──────────────────────────────────────────────
# Lifecycle
# ──────────────────────────────────────────────

def create_invoice(customer_id, lines, currency, subscription_id=None, discount=0,
                   period_start=None, period_end=None, due_date=None):
    """Create a draft invoice from line dicts. Returns the Invoice (flushed)."""
    validate_line_items(lines)
    currency = validate_currency(currency)
    totals = calculate_invoice_totals(lines, discount)

    invoice = Invoice(
        customer_id=customer_id,
        subscription_id=subscription_id,
        status="draft",
        currency=currency,
        subtotal=totals.subtotal,
        discount=totals.discount,
        total=totals.total,
        amount_remaining=totals.total,
        period_start=period_start,
        period_end=period_end,
        due_date=due_date,
    )
    for position, line in enumerate(lines):
        quantity = line.get("quantity", 1)
        invoice.lines.append(InvoiceLine(
            position=position,
            description=line["description"],
            quantity=quantity,
            unit_amount=line["unit_amount"],
            amount=quantity * line["unit_amount"],
            price_id=line.get("price_id"),
            period_start=line.get("period_start"),
            period_end=line.get("period_end"),
            proration=bool(line.get("proration", False)),
            metadata_=line.get("metadata") or {},
        ))
    db.session.add(invoice)
    db.session.flush()
    return invoice


def can_finalize(invoice):
    return invoice.status == "draft" and len(invoice.lines) > 0 and invoice.total > 0


def finalize_invoice(invoice, config=DEFAULT_INVOICE_NUMBER_CONFIG, now=None):
    """Move a draft to open and assign its number."""
    if invoice.status != "draft":
        raise StateConflictError(
            f"Only draft invoices can be finalized (status is {invoice.status})",
            code="invoice_not_draft",
        )
    if not invoice.lines:
        raise ValidationError("At least one line item is required", code="missing_required_field")
    if invoice.total <= 0:
        raise ValidationError("Invoice total must be greater than zero", code="invalid_amount")

    now = as_utc(now) or utcnow()
    year = now.year
    sequence = next_invoice_sequence(config, year)

    invoice.sequence = sequence
    invoice.sequence_year = year if config.include_year else None
    invoice.number = generate_invoice_number(sequence, config, year=year)
    invoice.status = "open"
    invoice.finalized_at = now
    invoice.amount_remaining = invoice.total - invoice.amount_paid
    db.session.flush()

    logger.info(f"Finalized invoice {invoice.id} as {invoice.number}")
    log_billing_audit(invoice.customer_id, "invoice.finalized", {
        "invoice_id": invoice.id,
        "number": invoice.number,
        "total": invoice.total,
    })
    return invoice


def can_void(invoice):
    return invoice.status not in ("paid", "void")


def void_invoice(invoice, now=None):
    if invoice.status == "paid":
        raise StateConflictError("Cannot void a paid invoice", code="invoice_already_paid")
    if invoice.status == "void":
        raise StateConflictError("Invoice is already void", code="invoice_void_failed")

    invoice.status = "void"
    invoice.voided_at = as_utc(now) or utcnow()
    invoice.amount_remaining = 0
    db.session.flush()

    log_billing_audit(invoice.customer_id, "invoice.voided", {"invoice_id": invoice.id})
    return invoice


def mark_invoice_paid(invoice, amount, now=None):
    """Apply `amount` to an open invoice; it becomes paid once nothing remains."""
    if invoice.status != "open":
        raise StateConflictError(
            f"Only open invoices accept payments (status is {invoice.status})",
            code="invoice_not_open",
        )

    invoice.amount_paid = (invoice.amount_paid or 0) + amount
    invoice.amount_remaining = max(0, invoice.total - invoice.amount_paid)
    if invoice.amount_remaining == 0:
        invoice.status = "paid"
        invoice.paid_at = as_utc(now) or utcnow()
    db.session.flush()
    return invoice


def create_proration_invoice(subscription, current_price, new_price, proration):
    """Draft invoice holding the credit + charge lines of a plan change.

    Returns None when the proration produced no lines.
    """
    lines = create_proration_line_items(
        current_price.plan_name,
        new_price.plan_name,
        proration.unused_amount,
        proration.new_amount,
        proration.effective_date,
        as_utc(subscription.current_period_end),
    )
    if not lines:
        return None

    return create_invoice(
        customer_id=subscription.customer_id,
        lines=lines,
        currency=new_price.currency,
        subscription_id=subscription.id,
        period_start=proration.effective_date,
        period_end=as_utc(subscription.current_period_end),
    )
