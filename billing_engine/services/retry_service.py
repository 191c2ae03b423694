"""Retry service — dunning schedule and grace-period access policy.

Responsible for:
- Deriving a subscription's retry state from its payment history
- Computing the next retry date from the configured interval schedule
- Deciding whether grace has run out and how many grace days remain
- Access during grace, grace-expiry warnings, and the dunning sweep that
  moves exhausted past_due subscriptions to their final status

The retry schedule is an output for the caller to act on. Nothing here
re-attempts a charge.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from billing_engine.errors import ExhaustionError, StateConflictError, ValidationError
from billing_engine.models.payment import Payment
from billing_engine.services.period_service import SECONDS_PER_DAY, as_utc, utcnow
from billing_engine.services.subscription_service import (
    SubscriptionStatus,
    is_active,
    status_of,
    transition_status,
)

logger = logging.getLogger(__name__)

# A payment in one of these states ends a failure streak.
SUCCESS_STATUSES = ("succeeded", "refunded", "partially_refunded")

DUNNING_FINAL_STATUSES = ("unpaid", "canceled")


@dataclass(frozen=True)
class RetryConfig:
    retry_intervals: tuple = (1, 3, 5, 7)
    max_attempts: int = 4
    grace_period_days: int = 7
    grace_warning_days: tuple = (2, 1)
    notify_before_grace_expires: bool = True
    final_status: str = "unpaid"

    @classmethod
    def build(cls, retry_intervals=None, max_attempts=None, grace_period_days=None,
              grace_warning_days=None, notify_before_grace_expires=None,
              final_status=None):
        """Effective config: every omitted field takes its default."""
        defaults = cls()
        config = cls(
            retry_intervals=tuple(retry_intervals) if retry_intervals is not None
            else defaults.retry_intervals,
            max_attempts=max_attempts if max_attempts is not None else defaults.max_attempts,
            grace_period_days=grace_period_days if grace_period_days is not None
            else defaults.grace_period_days,
            grace_warning_days=tuple(grace_warning_days) if grace_warning_days is not None
            else defaults.grace_warning_days,
            notify_before_grace_expires=notify_before_grace_expires
            if notify_before_grace_expires is not None
            else defaults.notify_before_grace_expires,
            final_status=final_status or defaults.final_status,
        )
        config.validate()
        return config

    @classmethod
    def from_app_config(cls, app_config):
        return cls.build(
            retry_intervals=app_config.get("BILLING_RETRY_INTERVALS"),
            max_attempts=app_config.get("BILLING_RETRY_MAX_ATTEMPTS"),
            grace_period_days=app_config.get("BILLING_GRACE_PERIOD_DAYS"),
            grace_warning_days=app_config.get("BILLING_GRACE_WARNING_DAYS"),
            final_status=app_config.get("BILLING_DUNNING_FINAL_STATUS"),
        )

    def validate(self):
        if not self.retry_intervals or any(d <= 0 for d in self.retry_intervals):
            raise ValidationError("retry_intervals must be a non-empty list of positive days")
        if self.max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1")
        if self.grace_period_days < 0:
            raise ValidationError("grace_period_days must not be negative")
        if self.final_status not in DUNNING_FINAL_STATUSES:
            raise ValidationError(
                f"final_status must be one of {', '.join(DUNNING_FINAL_STATUSES)}"
            )


DEFAULT_RETRY_CONFIG = RetryConfig()


@dataclass(frozen=True)
class RetryState:
    attempt_number: int
    first_failure_at: datetime
    last_failure_at: datetime
    next_retry_at: Optional[datetime]
    grace_ends_at: datetime
    grace_expired: bool
    grace_days_remaining: int
    max_retries_reached: bool
    failure_codes: tuple = field(default=())

    def to_dict(self):
        return {
            "attempt_number": self.attempt_number,
            "first_failure_at": self.first_failure_at.isoformat(),
            "last_failure_at": self.last_failure_at.isoformat(),
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "grace_ends_at": self.grace_ends_at.isoformat(),
            "grace_expired": self.grace_expired,
            "grace_days_remaining": self.grace_days_remaining,
            "max_retries_reached": self.max_retries_reached,
        }


# ──────────────────────────────────────────────
# Schedule arithmetic
# ──────────────────────────────────────────────

def calculate_next_retry_date(first_failure_at, attempt_number, config=DEFAULT_RETRY_CONFIG):
    """When to retry after `attempt_number` failures, or None once exhausted.

    Offsets are measured from the first failure. Attempts past the end of
    the interval list reuse its last entry.
    """
    if attempt_number >= config.max_attempts:
        return None
    index = min(attempt_number, len(config.retry_intervals) - 1)
    return as_utc(first_failure_at) + timedelta(days=config.retry_intervals[index])


def grace_end_date(first_failure_at, grace_period_days=DEFAULT_RETRY_CONFIG.grace_period_days):
    return as_utc(first_failure_at) + timedelta(days=grace_period_days)


def is_grace_period_expired(first_failure_at,
                            grace_period_days=DEFAULT_RETRY_CONFIG.grace_period_days,
                            now=None):
    now = as_utc(now) or utcnow()
    return now > grace_end_date(first_failure_at, grace_period_days)


def get_grace_days_remaining(first_failure_at,
                             grace_period_days=DEFAULT_RETRY_CONFIG.grace_period_days,
                             now=None):
    now = as_utc(now) or utcnow()
    seconds_left = (grace_end_date(first_failure_at, grace_period_days) - now).total_seconds()
    return max(0, math.ceil(seconds_left / SECONDS_PER_DAY))


# ──────────────────────────────────────────────
# Retry state
# ──────────────────────────────────────────────

def get_retry_state(payments, config=DEFAULT_RETRY_CONFIG, now=None):
    """Derive the retry state from a payment history.

    Only failures after the most recent success count. Returns None when
    there are none.
    """
    now = as_utc(now) or utcnow()
    ordered = sorted(payments, key=lambda p: as_utc(p.created_at))

    failures = []
    for payment in ordered:
        if payment.status in SUCCESS_STATUSES:
            failures = []
        elif payment.status == "failed":
            failures.append(payment)

    if not failures:
        return None

    first_failure_at = as_utc(failures[0].created_at)
    attempt_number = len(failures)

    return RetryState(
        attempt_number=attempt_number,
        first_failure_at=first_failure_at,
        last_failure_at=as_utc(failures[-1].created_at),
        next_retry_at=calculate_next_retry_date(first_failure_at, attempt_number, config),
        grace_ends_at=grace_end_date(first_failure_at, config.grace_period_days),
        grace_expired=is_grace_period_expired(first_failure_at, config.grace_period_days, now),
        grace_days_remaining=get_grace_days_remaining(
            first_failure_at, config.grace_period_days, now
        ),
        max_retries_reached=attempt_number >= config.max_attempts,
        failure_codes=tuple(p.failure_code for p in failures if p.failure_code),
    )


def get_subscription_retry_state(subscription, config=DEFAULT_RETRY_CONFIG, now=None):
    payments = Payment.query.filter_by(subscription_id=subscription.id).all()
    return get_retry_state(payments, config, now)


def has_access_during_grace(subscription, retry_state):
    """Active/trialing always has access; past_due only until grace expires."""
    if is_active(subscription):
        return True
    if subscription.deleted_at is not None:
        return False
    if status_of(subscription) == SubscriptionStatus.PAST_DUE and retry_state is not None:
        return not retry_state.grace_expired
    return False


def should_send_grace_warning(grace_days_remaining, config=DEFAULT_RETRY_CONFIG,
                              already_sent=()):
    if not config.notify_before_grace_expires:
        return False
    return any(
        grace_days_remaining == day and day not in already_sent
        for day in config.grace_warning_days
    )


def authorize_retry(subscription, config=DEFAULT_RETRY_CONFIG, now=None):
    """Gate a manual charge retry for a past_due subscription.

    Returns the current RetryState. Raises StateConflictError when the
    subscription is not in dunning or the next retry is not due yet, and
    ExhaustionError once retries or grace are used up.
    """
    now = as_utc(now) or utcnow()
    if status_of(subscription) != SubscriptionStatus.PAST_DUE:
        raise StateConflictError(
            f"Subscription {subscription.id} is {subscription.status}, not past_due",
            code="subscription_not_past_due",
        )

    state = get_subscription_retry_state(subscription, config, now)
    if state is None:
        raise StateConflictError(
            f"Subscription {subscription.id} has no failed payments to retry",
            code="no_failed_payments",
        )
    if state.max_retries_reached:
        raise ExhaustionError(
            f"Retry attempts exhausted after {state.attempt_number} failures",
            code="retries_exhausted",
        )
    if state.grace_expired:
        raise ExhaustionError("Grace period has expired", code="grace_expired")
    if state.next_retry_at and now < state.next_retry_at:
        raise StateConflictError(
            f"Next retry is not due until {state.next_retry_at.isoformat()}",
            code="retry_not_due",
        )
    return state


def evaluate_dunning(subscription, config=DEFAULT_RETRY_CONFIG, now=None):
    """Move a past_due subscription to config.final_status once grace is gone.

    Returns (subscription, retry_state). Access is revoked on grace expiry
    even if retry attempts remain.
    """
    now = as_utc(now) or utcnow()
    if status_of(subscription) != SubscriptionStatus.PAST_DUE:
        return subscription, None

    state = get_subscription_retry_state(subscription, config, now)
    if state is None or not state.grace_expired:
        return subscription, state

    logger.info(
        f"Grace expired for subscription {subscription.id} after "
        f"{state.attempt_number} failed attempt(s); moving to {config.final_status}"
    )
    transition_status(
        subscription, config.final_status, reason="grace period exhausted", now=now
    )
    return subscription, state
