"""Payment service — amount validation, payment recording, and refunds.

Responsible for:
- Validating amounts (positive integer minor units within a safe range)
  and currency codes before anything is written
- Recording payment attempts and applying their dunning effect to the
  linked subscription (failure -> past_due, success -> active)
- Refund bookkeeping (refunded vs partially_refunded)
"""

import logging

from billing_engine.errors import NotFoundError, StateConflictError, ValidationError
from billing_engine.extensions import db
from billing_engine.models.payment import Payment
from billing_engine.services.billing_service import get_or_404, log_billing_audit
from billing_engine.services.period_service import as_utc
from billing_engine.services.subscription_service import (
    SubscriptionStatus,
    status_of,
    transition_status,
)

logger = logging.getLogger(__name__)

# $999,999.99 in cents
MAX_PAYMENT_AMOUNT = 99_999_999

SUPPORTED_CURRENCIES = (
    "usd", "eur", "gbp", "cad", "aud", "jpy", "chf", "nzd", "brl", "mxn", "ars",
)

RECORDABLE_STATUSES = ("pending", "succeeded", "failed")
REFUNDABLE_STATUSES = ("succeeded", "partially_refunded")


def _is_int(value):
    return isinstance(value, int) and not isinstance(value, bool)


def validate_payment_amount(amount):
    """Raise ValidationError unless `amount` is a positive int <= MAX_PAYMENT_AMOUNT."""
    if not _is_int(amount):
        raise ValidationError(
            f"Amount must be an integer number of minor units, got {amount!r}",
            code="invalid_amount",
        )
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero", code="invalid_amount")
    if amount > MAX_PAYMENT_AMOUNT:
        raise ValidationError(
            f"Amount exceeds the maximum of {MAX_PAYMENT_AMOUNT}", code="invalid_amount"
        )
    return amount


def validate_currency(currency):
    """Return the lower-cased currency code or raise ValidationError."""
    if not isinstance(currency, str) or currency.lower() not in SUPPORTED_CURRENCIES:
        raise ValidationError(f"Unsupported currency: {currency!r}", code="invalid_currency")
    return currency.lower()


def apply_payment_outcome(subscription, payment, now=None):
    """Drive the subscription state machine from a payment result.

    A failure moves a billing subscription to past_due; a success brings a
    past_due / unpaid / incomplete one back to active.
    """
    status = status_of(subscription)
    now = as_utc(now) or as_utc(payment.created_at)

    if payment.status == "failed" and status in (
        SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING
    ):
        transition_status(
            subscription, SubscriptionStatus.PAST_DUE,
            reason=f"payment failed ({payment.failure_code or 'unknown'})", now=now,
        )
    elif payment.status == "succeeded" and status in (
        SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID, SubscriptionStatus.INCOMPLETE
    ):
        transition_status(
            subscription, SubscriptionStatus.ACTIVE, reason="payment succeeded", now=now
        )
    return subscription


def record_payment(customer_id, amount, currency, status="succeeded", subscription=None,
                   invoice=None, failure_code=None, failure_message=None,
                   provider_payment_id=None, created_at=None):
    """Record a payment attempt and apply its effect on the subscription.

    Idempotent on provider_payment_id: a second call with the same id
    returns the existing row untouched.

    Returns the Payment (flushed, not committed).
    """
    validate_payment_amount(amount)
    currency = validate_currency(currency)
    if status not in RECORDABLE_STATUSES:
        raise ValidationError(f"Cannot record a payment with status {status!r}")

    if provider_payment_id:
        existing = Payment.query.filter_by(provider_payment_id=provider_payment_id).first()
        if existing:
            return existing

    payment = Payment(
        customer_id=customer_id,
        subscription_id=subscription.id if subscription else None,
        invoice_id=invoice.id if invoice else None,
        amount=amount,
        currency=currency,
        status=status,
        failure_code=failure_code if status == "failed" else None,
        failure_message=failure_message if status == "failed" else None,
        provider_payment_id=provider_payment_id,
    )
    if created_at is not None:
        payment.created_at = as_utc(created_at)
    db.session.add(payment)
    db.session.flush()

    logger.info(
        f"Recorded {status} payment {payment.id}: {amount} {currency}"
        + (f" for subscription {subscription.id}" if subscription else "")
    )
    log_billing_audit(customer_id, f"payment.{status}", {
        "payment_id": payment.id,
        "subscription_id": payment.subscription_id,
        "amount": amount,
        "currency": currency,
        "failure_code": payment.failure_code,
    })

    if subscription is not None:
        apply_payment_outcome(subscription, payment)

    if invoice is not None and status == "succeeded":
        # Imported lazily: invoice_service depends on this module
        from billing_engine.services.invoice_service import mark_invoice_paid
        mark_invoice_paid(invoice, amount, now=payment.created_at)

    return payment


def get_payment(payment_id):
    return get_or_404(Payment, payment_id)


def get_payment_by_provider_id(provider_payment_id):
    payment = Payment.query.filter_by(provider_payment_id=provider_payment_id).first()
    if payment is None:
        raise NotFoundError(
            f"Payment {provider_payment_id} not found", code="payment_not_found"
        )
    return payment


# ──────────────────────────────────────────────
# Refunds
# ──────────────────────────────────────────────

def remaining_refundable(payment):
    return payment.amount - (payment.amount_refunded or 0)


def is_full_refund(payment, amount):
    return amount >= remaining_refundable(payment)


def validate_refund_amount(payment, amount):
    if payment.status not in REFUNDABLE_STATUSES:
        raise StateConflictError(
            f"Cannot refund a {payment.status} payment", code="payment_not_refundable"
        )
    if not _is_int(amount) or amount <= 0:
        raise ValidationError("Refund amount must be a positive integer", code="invalid_amount")
    remaining = remaining_refundable(payment)
    if amount > remaining:
        raise ValidationError(
            f"Refund amount {amount} exceeds refundable balance {remaining}",
            code="invalid_amount",
        )
    return amount


def refund_payment(payment, amount=None):
    """Refund `amount` (default: everything left) of a payment.

    Returns the Payment with status refunded or partially_refunded.
    """
    if amount is None:
        amount = remaining_refundable(payment)
    validate_refund_amount(payment, amount)

    full = is_full_refund(payment, amount)
    payment.amount_refunded = (payment.amount_refunded or 0) + amount
    payment.status = "refunded" if full else "partially_refunded"
    db.session.flush()

    logger.info(f"Refunded {amount} {payment.currency} of payment {payment.id} ({payment.status})")
    log_billing_audit(payment.customer_id, "payment.refunded", {
        "payment_id": payment.id,
        "amount": amount,
        "full": full,
    })
    return payment
