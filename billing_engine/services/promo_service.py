"""Promo code service — eligibility, discount math, and redemption.

Responsible for:
- Validating a code for a customer / plan / amount (window, caps,
  plan restrictions, purchase conditions, currency)
- Computing discount amounts (percentage or fixed) and combining several
  codes under a stacking mode (none, best, additive)
- Applying a code to a subscription: one redemption row per
  (code, subscription) pair, so repeated applies count once
"""

import logging
from collections import namedtuple
from decimal import ROUND_HALF_UP, Decimal

from billing_engine.errors import ExhaustionError, NotFoundError, ValidationError
from billing_engine.extensions import db
from billing_engine.models.payment import Payment
from billing_engine.models.promo import PromoCode, PromoRedemption
from billing_engine.models.subscription import Subscription
from billing_engine.services.billing_service import get_or_404, log_billing_audit
from billing_engine.services.payment_service import _is_int
from billing_engine.services.period_service import as_utc, utcnow

logger = logging.getLogger(__name__)

STACKING_MODES = ("none", "best", "additive")

PromoValidation = namedtuple(
    "PromoValidation", ["promo_code", "discount_type", "discount_percent", "discount_amount"]
)
DiscountResult = namedtuple(
    "DiscountResult",
    ["original_amount", "discount_amount", "final_amount", "applied", "skipped"],
)


def normalize_code(code):
    if code is not None and not isinstance(code, str):
        raise ValidationError("code must be a string")
    return (code or "").strip().upper()


def find_promo_code(code):
    """Look up an active code, or None. Inactive codes count as missing."""
    promo = PromoCode.query.filter_by(code=normalize_code(code)).first()
    if promo is None or not promo.active:
        return None
    return promo


def get_promo_code(code):
    """Like find_promo_code, but raises NotFoundError."""
    promo = find_promo_code(code)
    if promo is None:
        raise NotFoundError(f"Promo code {code!r} not found", code="promo_code_not_found")
    return promo


def _check_amounts(amount, quantity=None):
    if amount is not None and not (_is_int(amount) and amount >= 0):
        raise ValidationError("amount must be a non-negative integer (minor units)")
    if quantity is not None and not (_is_int(quantity) and quantity >= 0):
        raise ValidationError("quantity must be a non-negative integer")


def remaining_redemptions(promo):
    """Redemptions left before max_uses, or None when uncapped."""
    if promo.max_uses is None:
        return None
    return max(0, promo.max_uses - promo.current_redemptions)


def calculate_discount_amount(discount_type, discount_value, amount):
    """Discount on `amount`: a half-up rounded percentage, or a fixed sum capped at `amount`."""
    _check_amounts(amount)
    if discount_type == "percentage":
        percent = min(max(discount_value, 0), 100)
        share = Decimal(amount) * Decimal(percent) / Decimal(100)
        return int(share.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if discount_type == "fixed_amount":
        return min(amount, max(0, discount_value))
    raise ValidationError(f"Unknown discount type: {discount_type!r}")


def _customer_redemptions(promo, customer_id):
    return promo.redemptions.filter_by(customer_id=customer_id).count()


def _is_first_purchase(customer_id):
    return Payment.query.filter_by(customer_id=customer_id, status="succeeded").count() == 0


def check_promo_code(promo, customer_id=None, plan_id=None, amount=None,
                     currency=None, quantity=None, now=None):
    """Run every eligibility rule against an already-loaded code.

    Raises ValidationError or ExhaustionError describing the first rule
    that fails; returns the code otherwise.
    """
    _check_amounts(amount, quantity)
    now = as_utc(now) or utcnow()

    if not promo.active:
        raise NotFoundError(f"Promo code {promo.code!r} not found", code="promo_code_not_found")

    valid_from = as_utc(promo.valid_from)
    valid_until = as_utc(promo.valid_until)
    if valid_from and now < valid_from:
        raise ValidationError("Promo code is not yet valid", code="promo_not_started")
    if valid_until and now > valid_until:
        raise ValidationError("Promo code has expired", code="promo_expired")

    if promo.max_uses is not None and promo.current_redemptions >= promo.max_uses:
        raise ExhaustionError(
            "Promo code has reached maximum redemptions", code="promo_max_redemptions"
        )
    if customer_id and promo.max_per_customer is not None:
        if _customer_redemptions(promo, customer_id) >= promo.max_per_customer:
            raise ExhaustionError(
                "Promo code has already been used the maximum number of times by this customer",
                code="promo_customer_limit",
            )

    if plan_id and promo.applicable_plans and plan_id not in promo.applicable_plans:
        raise ValidationError("Promo code is not valid for this plan", code="promo_plan_not_eligible")

    if promo.discount_type == "fixed_amount" and currency and promo.currency:
        if currency.lower() != promo.currency.lower():
            raise ValidationError(
                f"Promo code is only valid for {promo.currency.upper()} purchases",
                code="promo_currency_mismatch",
            )

    if promo.min_amount is not None and amount is not None and amount < promo.min_amount:
        raise ValidationError(
            f"Purchase amount must be at least {promo.min_amount}", code="promo_min_amount"
        )
    if promo.min_quantity is not None and quantity is not None and quantity < promo.min_quantity:
        raise ValidationError(
            f"Quantity must be at least {promo.min_quantity}", code="promo_min_quantity"
        )
    if promo.first_purchase_only and customer_id and not _is_first_purchase(customer_id):
        raise ValidationError(
            "Promo code is only valid on a first purchase", code="promo_first_purchase_only"
        )

    return promo


def validate_promo_code(code, customer_id=None, plan_id=None, amount=None,
                        currency=None, quantity=None, now=None):
    """Validate `code` and describe its discount.

    Returns PromoValidation: percentage codes carry discount_percent,
    fixed_amount codes carry discount_amount (capped at `amount` if given).
    """
    promo = get_promo_code(code)
    check_promo_code(promo, customer_id, plan_id, amount, currency, quantity, now)

    if promo.discount_type == "percentage":
        return PromoValidation(promo, "percentage", promo.discount_value, None)

    discount_amount = promo.discount_value
    if amount is not None:
        discount_amount = calculate_discount_amount("fixed_amount", promo.discount_value, amount)
    return PromoValidation(promo, "fixed_amount", None, discount_amount)


def calculate_discounts(amount, promo_codes, stacking_mode="best", customer_id=None,
                        plan_id=None, currency=None, quantity=None, now=None):
    """Combine several codes on one amount.

    none: first valid code only; best: the single largest discount;
    additive: sum of all valid codes, capped at `amount`. `promo_codes` may
    hold PromoCode rows or code strings. Invalid or unknown codes are
    reported in `skipped` with the reason.
    """
    if stacking_mode not in STACKING_MODES:
        raise ValidationError(f"stacking_mode must be one of {', '.join(STACKING_MODES)}")
    if amount is None:
        raise ValidationError("amount is required")
    _check_amounts(amount, quantity)

    valid = []
    skipped = []
    for promo in promo_codes:
        if isinstance(promo, str):
            code, promo = promo, find_promo_code(promo)
            if promo is None:
                skipped.append((normalize_code(code), f"Promo code {code!r} not found"))
                continue
        try:
            check_promo_code(promo, customer_id, plan_id, amount, currency, quantity, now)
        except (ValidationError, ExhaustionError, NotFoundError) as e:
            skipped.append((promo.code, e.message))
            continue
        valid.append(
            (promo, calculate_discount_amount(promo.discount_type, promo.discount_value, amount))
        )

    if not valid:
        return DiscountResult(amount, 0, amount, [], skipped)

    if stacking_mode == "none":
        chosen = [valid[0]]
        skipped.extend((p.code, "Discount stacking not allowed") for p, _ in valid[1:])
    elif stacking_mode == "best":
        best = max(valid, key=lambda pair: pair[1])
        chosen = [best]
        skipped.extend((pair[0].code, "Better discount applied") for pair in valid if pair is not best)
    else:
        chosen = valid

    discount = min(amount, sum(d for _, d in chosen))
    applied = [(p.code, d) for p, d in chosen]
    return DiscountResult(amount, discount, max(0, amount - discount), applied, skipped)


def apply_promo_code(code, customer_id, subscription_id, amount=None, plan_id=None,
                     currency=None, now=None):
    """Redeem `code` against a subscription.

    Idempotent per (code, subscription): a repeat call returns the existing
    redemption without counting again. Returns (redemption, created).
    The subscription must belong to `customer_id`.
    """
    subscription = get_or_404(Subscription, subscription_id)
    if subscription.customer_id != customer_id:
        raise ValidationError(
            "Subscription does not belong to this customer", code="customer_mismatch"
        )
    promo = get_promo_code(code)

    existing = PromoRedemption.query.filter_by(
        promo_code_id=promo.id, subscription_id=subscription_id
    ).first()
    if existing:
        return existing, False

    check_promo_code(promo, customer_id, plan_id, amount, currency, now=now)

    discount_amount = None
    if amount is not None:
        discount_amount = calculate_discount_amount(
            promo.discount_type, promo.discount_value, amount
        )

    # Conditional UPDATE: a concurrent redeemer cannot push past max_uses
    counter = PromoCode.query.filter(PromoCode.id == promo.id)
    if promo.max_uses is not None:
        counter = counter.filter(PromoCode.current_redemptions < PromoCode.max_uses)
    claimed = counter.update(
        {PromoCode.current_redemptions: PromoCode.current_redemptions + 1},
        synchronize_session=False,
    )
    if not claimed:
        raise ExhaustionError(
            "Promo code has reached maximum redemptions", code="promo_max_redemptions"
        )

    redemption = PromoRedemption(
        promo_code_id=promo.id,
        customer_id=customer_id,
        subscription_id=subscription_id,
        discount_amount=discount_amount,
    )
    db.session.add(redemption)
    # uq_promo_subscription rejects a concurrent duplicate; the caller's rollback undoes the count
    db.session.flush()

    db.session.refresh(promo)
    logger.info(f"Promo {promo.code} redeemed for subscription {subscription_id}")
    log_billing_audit(customer_id, "promo_code.redeemed", {
        "promo_code": promo.code,
        "subscription_id": subscription_id,
        "discount_amount": discount_amount,
    })
    return redemption, True
