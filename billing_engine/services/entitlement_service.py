"""Entitlement service — feature grants and metered usage limits.

Responsible for:
- Checking / granting / revoking boolean entitlements per (customer, key)
- Checking limits as {allowed, current_value, max_value, remaining}
- Setting limits and recording usage (increment or absolute set)

Absence of a limit row means unlimited. Increments are a single UPDATE
statement, so concurrent increments on one (customer, key) never lose
counts. Increments may overshoot max_value; `remaining` clamps at zero.
"""

import logging
import math
from collections import namedtuple

from billing_engine.errors import NotFoundError, ValidationError
from billing_engine.extensions import db
from billing_engine.models.entitlement import Entitlement, UsageLimit
from billing_engine.services.billing_service import log_billing_audit
from billing_engine.services.period_service import as_utc, utcnow

logger = logging.getLogger(__name__)

LimitCheck = namedtuple("LimitCheck", ["allowed", "current_value", "max_value", "remaining"])

UNLIMITED = LimitCheck(allowed=True, current_value=0, max_value=math.inf, remaining=math.inf)

USAGE_ACTIONS = ("increment", "set")


def _require_key(key, kind):
    if not key or not isinstance(key, str):
        raise ValidationError(f"{kind} key is required", code="missing_required_field")


def _is_non_negative_int(value):
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


# ──────────────────────────────────────────────
# Entitlements
# ──────────────────────────────────────────────

def _is_live(entitlement, now):
    expires_at = as_utc(entitlement.expires_at)
    return expires_at is None or expires_at > now


def check_entitlement(customer_id, key, now=None):
    """True iff the customer holds an unexpired grant for `key`."""
    now = as_utc(now) or utcnow()
    entitlement = Entitlement.query.filter_by(
        customer_id=customer_id, entitlement_key=key
    ).first()
    return entitlement is not None and _is_live(entitlement, now)


def get_customer_entitlements(customer_id, now=None):
    """Unexpired grants for a customer, ordered by key."""
    now = as_utc(now) or utcnow()
    grants = (
        Entitlement.query
        .filter_by(customer_id=customer_id)
        .order_by(Entitlement.entitlement_key)
        .all()
    )
    return [e for e in grants if _is_live(e, now)]


def grant_entitlement(customer_id, key, source="manual", source_id=None, expires_at=None):
    """Grant `key` to a customer. Re-granting updates the one existing row."""
    _require_key(key, "Entitlement")
    entitlement = Entitlement.query.filter_by(
        customer_id=customer_id, entitlement_key=key
    ).first()

    if entitlement is None:
        entitlement = Entitlement(customer_id=customer_id, entitlement_key=key)
        db.session.add(entitlement)

    entitlement.source = source
    entitlement.source_id = source_id
    entitlement.expires_at = as_utc(expires_at)
    db.session.flush()

    log_billing_audit(customer_id, "entitlement.granted", {
        "key": key,
        "source": source,
        "expires_at": expires_at.isoformat() if expires_at else None,
    })
    return entitlement


def revoke_entitlement(customer_id, key):
    """Remove a grant. Returns True if one existed."""
    deleted = Entitlement.query.filter_by(
        customer_id=customer_id, entitlement_key=key
    ).delete(synchronize_session="fetch")
    db.session.flush()
    if deleted:
        log_billing_audit(customer_id, "entitlement.revoked", {"key": key})
    return bool(deleted)


# ──────────────────────────────────────────────
# Usage limits
# ──────────────────────────────────────────────

def _get_limit(customer_id, key):
    return UsageLimit.query.filter_by(customer_id=customer_id, limit_key=key).first()


def _to_check(limit):
    return LimitCheck(
        allowed=limit.current_value < limit.max_value,
        current_value=limit.current_value,
        max_value=limit.max_value,
        remaining=max(0, limit.max_value - limit.current_value),
    )


def check_limit(customer_id, key):
    """Current standing of a limit. Undefined keys are unlimited."""
    limit = _get_limit(customer_id, key)
    if limit is None:
        return UNLIMITED
    return _to_check(limit)


def get_customer_limits(customer_id):
    limits = (
        UsageLimit.query
        .filter_by(customer_id=customer_id)
        .order_by(UsageLimit.limit_key)
        .all()
    )
    return {limit.limit_key: _to_check(limit) for limit in limits}


def set_limit(customer_id, key, max_value, reset_at=None, source="manual"):
    """Define (or redefine) a limit. The usage counter starts over at zero."""
    _require_key(key, "Limit")
    if not _is_non_negative_int(max_value):
        raise ValidationError("max_value must be a non-negative integer")

    limit = _get_limit(customer_id, key)
    if limit is None:
        limit = UsageLimit(customer_id=customer_id, limit_key=key)
        db.session.add(limit)

    limit.max_value = max_value
    limit.current_value = 0
    limit.reset_at = as_utc(reset_at)
    limit.source = source
    db.session.flush()
    return limit


def increment_limit(customer_id, key, delta=1):
    """Atomically add `delta` to a limit's counter.

    Raises NotFoundError when the limit was never set.
    """
    if not _is_non_negative_int(delta) or delta == 0:
        raise ValidationError("delta must be a positive integer")

    updated = (
        UsageLimit.query
        .filter_by(customer_id=customer_id, limit_key=key)
        .update(
            {UsageLimit.current_value: UsageLimit.current_value + delta},
            synchronize_session=False,
        )
    )
    if not updated:
        raise NotFoundError(
            f"Limit {key} is not defined for customer {customer_id}", code="limit_not_found"
        )

    limit = _get_limit(customer_id, key)
    db.session.refresh(limit)
    check = _to_check(limit)
    if not check.allowed:
        logger.info(
            f"Customer {customer_id} reached limit {key} "
            f"({check.current_value}/{check.max_value})"
        )
    return check


def record_usage(customer_id, key, quantity, action="increment"):
    """Record metered usage.

    action="increment" adds `quantity`; action="set" overwrites the counter
    (period-boundary resets).
    """
    if action not in USAGE_ACTIONS:
        raise ValidationError(f"action must be one of {', '.join(USAGE_ACTIONS)}")
    if not _is_non_negative_int(quantity):
        raise ValidationError("quantity must be a non-negative integer")

    if action == "increment":
        if quantity == 0:
            return check_limit(customer_id, key)
        return increment_limit(customer_id, key, quantity)

    limit = _get_limit(customer_id, key)
    if limit is None:
        raise NotFoundError(
            f"Limit {key} is not defined for customer {customer_id}", code="limit_not_found"
        )
    limit.current_value = quantity
    db.session.flush()
    return _to_check(limit)


def reset_due_limits(now=None):
    """Zero every limit whose reset_at has passed. Returns how many were reset.

    reset_at is cleared; the caller schedules the next reset with set_limit().
    """
    now = as_utc(now) or utcnow()
    due = UsageLimit.query.filter(
        UsageLimit.reset_at.isnot(None), UsageLimit.reset_at <= now
    ).all()
    for limit in due:
        limit.current_value = 0
        limit.reset_at = None
    db.session.flush()
    return len(due)
