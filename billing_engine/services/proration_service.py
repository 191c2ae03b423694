"""Proration service — credits and charges for mid-period price changes.

Responsible for:
- Time-weighting the old and new price over the days left in a period
- Producing the subscription-level credit / charge split for plan changes
- Building the credit + charge invoice lines for a plan change

All amounts are integers in minor currency units. Fractions of a unit are
rounded half-up, so 999.5 becomes 1000.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from billing_engine.errors import ProrationError, ValidationError
from billing_engine.services.period_service import (
    as_utc,
    days_until,
    period_length_days,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProrationResult:
    unused_credit: int
    new_plan_prorated: int
    net_amount: int  # > 0 charge now, < 0 credit

    @property
    def is_charge(self):
        return self.net_amount > 0

    @property
    def is_credit(self):
        return self.net_amount < 0


@dataclass(frozen=True)
class SubscriptionProration:
    unused_amount: int
    new_amount: int
    credit_amount: int
    charge_amount: int
    effective_date: datetime
    days_remaining: int
    days_in_period: int


def _prorate(amount, days_remaining, days_in_period):
    share = Decimal(amount) * Decimal(days_remaining) / Decimal(days_in_period)
    return int(share.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_proration(current_amount, new_amount, days_remaining, days_in_period):
    """Time-weight both prices over the unused part of the period.

    Raises ProrationError when the period has no days, ValidationError when
    days_remaining falls outside [0, days_in_period].
    """
    if days_in_period <= 0:
        raise ProrationError("period has no days")
    if days_remaining < 0 or days_remaining > days_in_period:
        raise ValidationError(
            f"days_remaining must be between 0 and {days_in_period}, got {days_remaining}"
        )

    unused_credit = _prorate(current_amount, days_remaining, days_in_period)
    new_plan_prorated = _prorate(new_amount, days_remaining, days_in_period)

    return ProrationResult(
        unused_credit=unused_credit,
        new_plan_prorated=new_plan_prorated,
        net_amount=new_plan_prorated - unused_credit,
    )


def _period_days(period_start, period_end, now):
    """(days_remaining, days_in_period) for a period, clamped to its bounds."""
    days_in_period = period_length_days(period_start, period_end)
    if days_in_period <= 0:
        raise ProrationError("period has no days")
    days_remaining = min(max(days_until(period_end, now), 0), days_in_period)
    return days_remaining, days_in_period


def calculate_proration_for_period(current_amount, new_amount, period_start,
                                   period_end, now=None):
    """Prorate using a period's bounds instead of precomputed day counts.

    A period whose end does not come after its start has no days.
    """
    days_remaining, days_in_period = _period_days(period_start, period_end, now)
    return calculate_proration(current_amount, new_amount, days_remaining, days_in_period)


def calculate_subscription_proration(subscription, current_price, new_price, now=None):
    """Credit / charge split for moving `subscription` to `new_price` now.

    Both prices are multiplied by the subscription quantity before being
    time-weighted over the rest of the current period.
    """
    now = as_utc(now) or utcnow()
    quantity = subscription.quantity or 1

    days_remaining, days_in_period = _period_days(
        subscription.current_period_start, subscription.current_period_end, now
    )
    result = calculate_proration(
        current_price.unit_amount * quantity,
        new_price.unit_amount * quantity,
        days_remaining,
        days_in_period,
    )

    logger.info(
        f"Proration for subscription {subscription.id}: "
        f"unused={result.unused_credit} new={result.new_plan_prorated} "
        f"days={days_remaining}/{days_in_period}"
    )

    return SubscriptionProration(
        unused_amount=result.unused_credit,
        new_amount=result.new_plan_prorated,
        credit_amount=max(0, -result.net_amount),
        charge_amount=max(0, result.net_amount),
        effective_date=now,
        days_remaining=days_remaining,
        days_in_period=days_in_period,
    )


def create_proration_line_items(current_plan_name, new_plan_name, unused_credit,
                                new_plan_prorated, period_start, period_end):
    """Build the credit and charge lines for a plan change.

    Returns a list of dicts ready for invoice_service.create_invoice(). Zero
    amounts produce no line.
    """
    lines = []

    if unused_credit > 0:
        lines.append({
            "description": f"Unused time on {current_plan_name}",
            "quantity": 1,
            "unit_amount": -unused_credit,
            "amount": -unused_credit,
            "period_start": period_start,
            "period_end": period_end,
            "proration": True,
            "metadata": {"proration": True, "type": "credit"},
        })

    if new_plan_prorated > 0:
        lines.append({
            "description": f"Remaining time on {new_plan_name}",
            "quantity": 1,
            "unit_amount": new_plan_prorated,
            "amount": new_plan_prorated,
            "period_start": period_start,
            "period_end": period_end,
            "proration": True,
            "metadata": {"proration": True, "type": "charge"},
        })

    return lines
