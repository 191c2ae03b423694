"""Subscription service — the subscription state machine and lifecycle.

Responsible for:
- The closed set of subscription statuses and the legal edges between them
- Lifecycle operations: create, cancel (now / at period end), reactivate,
  pause, resume, change plan, renew, end trial, soft delete
- Read-side helpers: access checks, renewal / trial / period info,
  approaching-renewal queries, sorting and grouping

Every status write goes through transition_status(). Moving to the state a
subscription is already in is a no-op, so cancel / pause / resume are
idempotent.
"""

import logging
from collections import namedtuple
from enum import Enum

from billing_engine.errors import StateConflictError, ValidationError
from billing_engine.extensions import db
from billing_engine.models.price import Price
from billing_engine.models.subscription import Subscription
from billing_engine.services.billing_service import get_or_404, log_billing_audit
from billing_engine.services.period_service import (
    add_interval,
    as_utc,
    days_since,
    days_until,
    next_billing_date,
    period_length_days,
    utcnow,
)
from billing_engine.services.proration_service import calculate_subscription_proration

logger = logging.getLogger(__name__)


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"


S = SubscriptionStatus

TRANSITIONS = {
    S.TRIALING: frozenset({S.ACTIVE, S.PAST_DUE, S.CANCELED}),
    S.ACTIVE: frozenset({S.PAST_DUE, S.CANCELED, S.PAUSED}),
    S.PAST_DUE: frozenset({S.ACTIVE, S.CANCELED, S.UNPAID}),
    S.PAUSED: frozenset({S.ACTIVE, S.CANCELED}),
    S.UNPAID: frozenset({S.ACTIVE, S.CANCELED}),
    S.INCOMPLETE: frozenset({S.ACTIVE, S.INCOMPLETE_EXPIRED}),
    S.CANCELED: frozenset(),
    S.INCOMPLETE_EXPIRED: frozenset(),
}

_missing = set(SubscriptionStatus) - set(TRANSITIONS)
if _missing:
    raise RuntimeError(
        f"Transition table has no entry for: {', '.join(sorted(s.value for s in _missing))}"
    )

ACCESS_STATUSES = frozenset({S.ACTIVE, S.TRIALING})
TERMINAL_STATUSES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)

TrialInfo = namedtuple(
    "TrialInfo", ["is_trialing", "trial_start", "trial_end", "days_remaining", "has_ended"]
)
PeriodInfo = namedtuple(
    "PeriodInfo",
    ["period_start", "period_end", "days_in_period", "days_elapsed",
     "days_remaining", "percent_complete"],
)
RenewalInfo = namedtuple(
    "RenewalInfo", ["will_renew", "renewal_date", "days_until_renewal", "amount", "currency"]
)


def status_of(subscription):
    return SubscriptionStatus(subscription.status)


def can_transition(current, target):
    """Whether `current` -> `target` is a legal edge (same state counts)."""
    current = SubscriptionStatus(current)
    target = SubscriptionStatus(target)
    return current == target or target in TRANSITIONS[current]


def transition_status(subscription, target, reason=None, now=None):
    """Move `subscription` to `target`, stamping the matching timestamps.

    Returns the subscription. Raises StateConflictError for illegal edges.
    """
    current = status_of(subscription)
    target = SubscriptionStatus(target)
    now = as_utc(now) or utcnow()

    if current == target:
        return subscription

    if target not in TRANSITIONS[current]:
        raise StateConflictError(
            f"Cannot move subscription {subscription.id} from {current.value} to {target.value}",
            code="invalid_transition",
        )

    subscription.status = target.value
    if target == S.CANCELED:
        subscription.canceled_at = now
        subscription.ended_at = now
        subscription.cancel_at_period_end = False
    elif target == S.PAUSED:
        subscription.paused_at = now
    elif target == S.ACTIVE and current == S.PAUSED:
        subscription.paused_at = None
    elif target == S.INCOMPLETE_EXPIRED:
        subscription.ended_at = now

    db.session.flush()

    logger.info(
        f"Subscription {subscription.id}: {current.value} -> {target.value}"
        + (f" ({reason})" if reason else "")
    )
    log_billing_audit(subscription.customer_id, "subscription.status_changed", {
        "subscription_id": subscription.id,
        "from": current.value,
        "to": target.value,
        "reason": reason,
    })
    return subscription


# ──────────────────────────────────────────────
# Predicates
# ──────────────────────────────────────────────

def is_active(subscription):
    """Access check: active or trialing, and not soft-deleted."""
    return status_of(subscription) in ACCESS_STATUSES and subscription.deleted_at is None


def is_scheduled_for_cancellation(subscription):
    return bool(subscription.cancel_at_period_end) or subscription.cancel_at is not None


def will_renew(subscription):
    return is_active(subscription) and not is_scheduled_for_cancellation(subscription)


def can_upgrade(subscription):
    return is_active(subscription) and not is_scheduled_for_cancellation(subscription)


def can_downgrade(subscription):
    return can_upgrade(subscription)


def can_pause(subscription):
    return status_of(subscription) == S.ACTIVE and subscription.deleted_at is None


def can_resume(subscription):
    return status_of(subscription) == S.PAUSED and subscription.deleted_at is None


# ──────────────────────────────────────────────
# Lifecycle
# ──────────────────────────────────────────────

def get_subscription(subscription_id):
    return get_or_404(Subscription, subscription_id)


def get_subscription_by_provider_id(provider_subscription_id):
    """Returns the Subscription or None."""
    if not provider_subscription_id:
        return None
    return Subscription.query.filter_by(
        provider_subscription_id=provider_subscription_id
    ).first()


def list_customer_subscriptions(customer_id, include_deleted=False):
    """Query (not list) of a customer's subscriptions, newest first."""
    query = Subscription.query.filter_by(customer_id=customer_id)
    if not include_deleted:
        query = query.filter(Subscription.deleted_at.is_(None))
    return query.order_by(Subscription.created_at.desc())


def create_subscription(customer, price, quantity=1, trial_days=None, now=None,
                        provider_subscription_id=None, metadata=None):
    """Start a subscription for `customer` on `price`.

    With trial_days the subscription starts trialing and its first period
    is the trial; otherwise it starts active for one billing interval.
    """
    now = as_utc(now) or utcnow()

    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
        raise ValidationError("quantity must be a positive integer", code="invalid_quantity")
    if not price.active:
        raise ValidationError(f"Price {price.id} is not active", code="price_inactive")
    if trial_days is not None and (not isinstance(trial_days, int) or trial_days < 1):
        raise ValidationError("trial_days must be a positive integer")

    subscription = Subscription(
        customer_id=customer.id,
        price_id=price.id,
        plan_id=price.plan_id,
        quantity=quantity,
        interval_count=price.interval_count,
        current_period_start=now,
        provider_subscription_id=provider_subscription_id,
        metadata_=metadata or {},
    )
    if trial_days:
        subscription.status = S.TRIALING.value
        subscription.trial_start = now
        subscription.trial_end = add_interval(now, "day", trial_days)
        subscription.current_period_end = subscription.trial_end
    else:
        subscription.status = S.ACTIVE.value
        subscription.current_period_end = add_interval(
            now, price.billing_interval, price.interval_count
        )

    db.session.add(subscription)
    db.session.flush()

    logger.info(
        f"Created subscription {subscription.id} for customer {customer.id} "
        f"on {price.plan_id} ({subscription.status})"
    )
    log_billing_audit(customer.id, "subscription.created", {
        "subscription_id": subscription.id,
        "plan_id": price.plan_id,
        "status": subscription.status,
    })
    return subscription


def cancel_subscription(subscription, at_period_end=False, now=None):
    """Cancel now, or schedule cancellation for the end of the period.

    Canceling an already-canceled subscription returns it unchanged.
    """
    if status_of(subscription) == S.CANCELED:
        return subscription

    if not at_period_end:
        return transition_status(subscription, S.CANCELED, reason="canceled", now=now)

    if status_of(subscription) not in (S.ACTIVE, S.TRIALING, S.PAST_DUE):
        raise StateConflictError(
            f"Cannot schedule cancellation of a {subscription.status} subscription",
            code="invalid_transition",
        )
    if subscription.cancel_at_period_end:
        return subscription

    subscription.cancel_at_period_end = True
    subscription.cancel_at = subscription.current_period_end
    db.session.flush()

    log_billing_audit(subscription.customer_id, "subscription.cancel_scheduled", {
        "subscription_id": subscription.id,
        "cancel_at": as_utc(subscription.cancel_at).isoformat(),
    })
    return subscription


def reactivate_subscription(subscription):
    """Drop a pending period-end cancellation. No-op when none is pending."""
    if not is_scheduled_for_cancellation(subscription):
        return subscription
    if status_of(subscription) in TERMINAL_STATUSES:
        raise StateConflictError(
            f"Subscription {subscription.id} has already ended", code="subscription_canceled"
        )

    subscription.cancel_at_period_end = False
    subscription.cancel_at = None
    db.session.flush()

    log_billing_audit(subscription.customer_id, "subscription.reactivated", {
        "subscription_id": subscription.id,
    })
    return subscription


def pause_subscription(subscription, now=None):
    """Pause an active subscription. Pausing a paused one is a no-op."""
    if status_of(subscription) == S.PAUSED:
        return subscription
    return transition_status(subscription, S.PAUSED, reason="paused", now=now)


def resume_subscription(subscription, now=None):
    """Resume a paused subscription. Resuming an active one is a no-op.

    If the period ran out while paused, a fresh period starts now.
    """
    status = status_of(subscription)
    if status == S.ACTIVE:
        return subscription
    if status != S.PAUSED:
        raise StateConflictError(
            f"Only paused subscriptions can be resumed (status is {status.value})",
            code="invalid_transition",
        )

    now = as_utc(now) or utcnow()
    transition_status(subscription, S.ACTIVE, reason="resumed", now=now)

    if as_utc(subscription.current_period_end) <= now:
        price = subscription.price or get_or_404(Price, subscription.price_id)
        subscription.current_period_start = now
        subscription.current_period_end = add_interval(
            now, price.billing_interval, price.interval_count
        )
        db.session.flush()
    return subscription


def change_plan(subscription, new_price, apply_at="immediately", prorate=True, now=None):
    """Move `subscription` to `new_price`.

    apply_at="immediately" switches now and (unless prorate=False) returns
    the proration; apply_at="period_end" records a scheduled change that
    renew_subscription() applies.

    Returns (subscription, proration_or_None).
    """
    if apply_at not in ("immediately", "period_end"):
        raise ValidationError("apply_at must be 'immediately' or 'period_end'")
    if not can_upgrade(subscription):
        raise StateConflictError(
            f"Subscription {subscription.id} cannot change plan "
            f"(status {subscription.status}, pending cancellation: "
            f"{is_scheduled_for_cancellation(subscription)})",
            code="plan_change_not_allowed",
        )
    if new_price.id == subscription.price_id:
        raise ValidationError("Subscription is already on this price")
    if not new_price.active:
        raise ValidationError(f"Price {new_price.id} is not active", code="price_inactive")

    now = as_utc(now) or utcnow()
    current_price = subscription.price or get_or_404(Price, subscription.price_id)
    if current_price.currency != new_price.currency:
        raise ValidationError("Cannot change plan across currencies", code="invalid_currency")

    metadata = dict(subscription.metadata_ or {})

    if apply_at == "period_end":
        metadata["scheduled_plan_change"] = {
            "price_id": new_price.id,
            "plan_id": new_price.plan_id,
            "effective_at": as_utc(subscription.current_period_end).isoformat(),
        }
        subscription.metadata_ = metadata
        db.session.flush()
        log_billing_audit(subscription.customer_id, "subscription.plan_change_scheduled", {
            "subscription_id": subscription.id,
            "to_plan": new_price.plan_id,
        })
        return subscription, None

    proration = None
    if prorate:
        proration = calculate_subscription_proration(
            subscription, current_price, new_price, now=now
        )

    metadata["previous_plan_id"] = subscription.plan_id
    metadata["plan_changed_at"] = now.isoformat()
    metadata.pop("scheduled_plan_change", None)
    if proration:
        metadata["proration"] = {
            "credit_amount": proration.credit_amount,
            "charge_amount": proration.charge_amount,
        }

    old_plan = subscription.plan_id
    subscription.price_id = new_price.id
    subscription.price = new_price
    subscription.plan_id = new_price.plan_id
    subscription.interval_count = new_price.interval_count
    subscription.metadata_ = metadata
    db.session.flush()

    logger.info(f"Subscription {subscription.id} changed plan {old_plan} -> {new_price.plan_id}")
    log_billing_audit(subscription.customer_id, "subscription.plan_changed", {
        "subscription_id": subscription.id,
        "from_plan": old_plan,
        "to_plan": new_price.plan_id,
        "charge_amount": proration.charge_amount if proration else 0,
        "credit_amount": proration.credit_amount if proration else 0,
    })
    return subscription, proration


def renew_subscription(subscription, now=None):
    """Roll an elapsed period forward.

    Applies a scheduled cancellation or plan change first. Does nothing
    while the current period is still running or the status does not bill.
    """
    now = as_utc(now) or utcnow()
    if status_of(subscription) not in (S.ACTIVE, S.PAST_DUE):
        return subscription
    if as_utc(subscription.current_period_end) > now:
        return subscription

    if subscription.cancel_at_period_end:
        return transition_status(
            subscription, S.CANCELED, reason="canceled at period end", now=now
        )

    metadata = dict(subscription.metadata_ or {})
    scheduled = metadata.pop("scheduled_plan_change", None)
    if scheduled:
        new_price = get_or_404(Price, scheduled["price_id"])
        metadata["previous_plan_id"] = subscription.plan_id
        subscription.price_id = new_price.id
        subscription.price = new_price
        subscription.plan_id = new_price.plan_id
        subscription.interval_count = new_price.interval_count
        subscription.metadata_ = metadata

    price = subscription.price or get_or_404(Price, subscription.price_id)
    period_end = as_utc(subscription.current_period_end)
    while period_end <= now:
        period_start = period_end
        period_end = next_billing_date(
            period_start, price.billing_interval, price.interval_count
        )

    subscription.current_period_start = period_start
    subscription.current_period_end = period_end
    db.session.flush()

    log_billing_audit(subscription.customer_id, "subscription.renewed", {
        "subscription_id": subscription.id,
        "plan_id": subscription.plan_id,
        "current_period_end": period_end.isoformat(),
    })
    return subscription


def end_trial(subscription, now=None):
    """Convert an elapsed trial into a paid period (or cancel if scheduled)."""
    now = as_utc(now) or utcnow()
    if status_of(subscription) != S.TRIALING or subscription.trial_end is None:
        return subscription
    trial_end = as_utc(subscription.trial_end)
    if trial_end > now:
        return subscription

    if subscription.cancel_at_period_end:
        return transition_status(
            subscription, S.CANCELED, reason="canceled at trial end", now=now
        )

    price = subscription.price or get_or_404(Price, subscription.price_id)
    transition_status(subscription, S.ACTIVE, reason="trial ended", now=now)
    subscription.current_period_start = trial_end
    subscription.current_period_end = add_interval(
        trial_end, price.billing_interval, price.interval_count
    )
    db.session.flush()
    return subscription


def soft_delete_subscription(subscription, now=None):
    """Mark a subscription deleted. It keeps its row and status but never grants access."""
    if subscription.deleted_at is not None:
        return subscription
    subscription.deleted_at = as_utc(now) or utcnow()
    db.session.flush()
    log_billing_audit(subscription.customer_id, "subscription.deleted", {
        "subscription_id": subscription.id,
    })
    return subscription


# ──────────────────────────────────────────────
# Read-side helpers
# ──────────────────────────────────────────────

def get_trial_info(subscription, now=None):
    now = as_utc(now) or utcnow()
    trial_end = as_utc(subscription.trial_end)
    is_trialing = status_of(subscription) == S.TRIALING
    if trial_end is None:
        return TrialInfo(is_trialing, None, None, 0, False)
    return TrialInfo(
        is_trialing=is_trialing,
        trial_start=as_utc(subscription.trial_start),
        trial_end=trial_end,
        days_remaining=max(0, days_until(trial_end, now)),
        has_ended=trial_end <= now,
    )


def get_period_info(subscription, now=None):
    now = as_utc(now) or utcnow()
    start = as_utc(subscription.current_period_start)
    end = as_utc(subscription.current_period_end)
    days_in_period = period_length_days(start, end)
    days_elapsed = min(max(days_since(start, now), 0), days_in_period)
    days_remaining = min(max(days_until(end, now), 0), days_in_period)

    total_seconds = (end - start).total_seconds()
    elapsed_seconds = min(max((now - start).total_seconds(), 0), total_seconds)
    percent = round(elapsed_seconds / total_seconds * 100) if total_seconds > 0 else 100

    return PeriodInfo(start, end, days_in_period, days_elapsed, days_remaining, percent)


def get_renewal_info(subscription, price=None, now=None):
    now = as_utc(now) or utcnow()
    price = price or subscription.price or get_or_404(Price, subscription.price_id)
    renews = will_renew(subscription)
    end = as_utc(subscription.current_period_end)
    return RenewalInfo(
        will_renew=renews,
        renewal_date=end if renews else None,
        days_until_renewal=max(0, days_until(end, now)) if renews else None,
        amount=price.unit_amount * (subscription.quantity or 1),
        currency=price.currency,
    )


def get_status_details(subscription):
    status = status_of(subscription)
    return {
        "status": status.value,
        "is_active": is_active(subscription),
        "is_trialing": status == S.TRIALING,
        "is_past_due": status == S.PAST_DUE,
        "is_paused": status == S.PAUSED,
        "is_canceled": status == S.CANCELED,
        "is_terminal": status in TERMINAL_STATUSES,
        "is_deleted": subscription.deleted_at is not None,
        "will_renew": will_renew(subscription),
        "is_scheduled_for_cancellation": is_scheduled_for_cancellation(subscription),
    }


def is_renewal_approaching(subscription, within_days=7, now=None):
    if not will_renew(subscription):
        return False
    remaining = days_until(subscription.current_period_end, now)
    return 0 <= remaining <= within_days


def is_trial_ending_soon(subscription, within_days=3, now=None):
    if status_of(subscription) != S.TRIALING or subscription.trial_end is None:
        return False
    remaining = days_until(subscription.trial_end, now)
    return 0 <= remaining <= within_days


def sort_by_renewal_date(subscriptions, descending=False):
    return sorted(
        subscriptions,
        key=lambda s: as_utc(s.current_period_end),
        reverse=descending,
    )


def group_by_status(subscriptions):
    groups = {}
    for subscription in subscriptions:
        groups.setdefault(status_of(subscription), []).append(subscription)
    return groups
