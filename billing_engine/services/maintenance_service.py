"""Maintenance service — the periodic subscription sweep.

For every live subscription:
  - trialing past trial_end   -> end_trial (active, or canceled if scheduled)
  - active / past_due past period end -> renew_subscription
  - past_due                  -> evaluate_dunning (unpaid / canceled once grace is gone)
                                 and grace-expiry warnings on the configured days
Then usage limits whose reset_at has passed are zeroed.

Designed to be called from a Flask CLI command (`flask process-subscriptions`)
on a daily cron schedule.
"""

import logging

from flask import current_app

from billing_engine.extensions import db
from billing_engine.models.subscription import Subscription
from billing_engine.services.billing_service import log_billing_audit
from billing_engine.services.entitlement_service import reset_due_limits
from billing_engine.services.period_service import as_utc, utcnow
from billing_engine.services.retry_service import RetryConfig, evaluate_dunning, should_send_grace_warning
from billing_engine.services.subscription_service import (
    SubscriptionStatus,
    end_trial,
    renew_subscription,
)

logger = logging.getLogger(__name__)


def _send_grace_warning(subscription, retry_state, config):
    metadata = dict(subscription.metadata_ or {})
    sent = metadata.get("grace_warnings_sent", [])
    days_left = retry_state.grace_days_remaining
    if not should_send_grace_warning(days_left, config, already_sent=sent):
        return False

    metadata["grace_warnings_sent"] = sent + [days_left]
    subscription.metadata_ = metadata
    db.session.flush()
    logger.info(f"Grace warning for subscription {subscription.id}: {days_left} day(s) left")
    log_billing_audit(subscription.customer_id, "dunning.grace_warning", {
        "subscription_id": subscription.id,
        "grace_days_remaining": days_left,
    })
    return True


def process_subscriptions(dry_run=False, now=None, retry_config=None):
    """Run one sweep. Returns a summary dict of counts.

    With dry_run=True everything is computed and then rolled back.
    """
    now = as_utc(now) or utcnow()
    config = retry_config or RetryConfig.from_app_config(current_app.config)

    summary = {
        "trials_ended": 0,
        "renewed": 0,
        "canceled": 0,
        "dunning_final": 0,
        "grace_warnings": 0,
        "limits_reset": 0,
    }

    subscriptions = (
        Subscription.query
        .filter(Subscription.deleted_at.is_(None))
        .filter(Subscription.status.in_([
            SubscriptionStatus.TRIALING.value,
            SubscriptionStatus.ACTIVE.value,
            SubscriptionStatus.PAST_DUE.value,
        ]))
        .order_by(Subscription.current_period_end.asc())
        .all()
    )

    for subscription in subscriptions:
        status = subscription.status

        if status == SubscriptionStatus.TRIALING.value:
            end_trial(subscription, now=now)
            if subscription.status == SubscriptionStatus.CANCELED.value:
                summary["canceled"] += 1
            elif subscription.status != status:
                summary["trials_ended"] += 1
            continue

        period_end = as_utc(subscription.current_period_end)
        if period_end <= now:
            renew_subscription(subscription, now=now)
            if subscription.status == SubscriptionStatus.CANCELED.value:
                summary["canceled"] += 1
                continue
            summary["renewed"] += 1

        if subscription.status == SubscriptionStatus.PAST_DUE.value:
            _, state = evaluate_dunning(subscription, config, now=now)
            if subscription.status != SubscriptionStatus.PAST_DUE.value:
                summary["dunning_final"] += 1
            elif state is not None and _send_grace_warning(subscription, state, config):
                summary["grace_warnings"] += 1

    summary["limits_reset"] = reset_due_limits(now=now)

    if dry_run:
        db.session.rollback()
        logger.info(f"process_subscriptions dry run: {summary}")
    else:
        db.session.commit()
        logger.info(f"process_subscriptions: {summary}")
    return summary
