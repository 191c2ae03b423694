"""Stripe service — all Stripe API calls and webhook handling.

Responsible for:
- Creating Stripe Customers and Checkout Sessions
- Mirroring local lifecycle actions (cancel, pause, resume, price change)
  onto the provider subscription
- Running the webhook guard over inbound requests
- Dispatching to event-specific handlers that drive the local state machine
- Idempotency via the webhook_events table
"""

import logging
from datetime import datetime, timezone

import stripe
from flask import current_app

from billing_engine.errors import NotFoundError, StateConflictError, ValidationError
from billing_engine.extensions import db
from billing_engine.models.price import Price
from billing_engine.models.subscription import Subscription
from billing_engine.models.webhook_event import WebhookEvent
from billing_engine.services.billing_service import (
    get_customer_by_provider_id,
    log_billing_audit,
)
from billing_engine.services.payment_service import (
    get_payment_by_provider_id,
    record_payment,
    refund_payment,
    remaining_refundable,
)
from billing_engine.services.subscription_service import (
    SubscriptionStatus,
    cancel_subscription,
    get_subscription_by_provider_id,
    transition_status,
)

logger = logging.getLogger(__name__)


def _configure():
    stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]


def _from_timestamp(ts):
    if ts:
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    return None


def _extract_period(sub_data):
    """Extract (current_period_start, current_period_end) from a Stripe subscription.

    Newer Stripe API versions moved the period fields from the subscription
    top level to items.data[0]. This helper checks both locations.
    """
    start = sub_data.get("current_period_start")
    end = sub_data.get("current_period_end")

    if not start or not end:
        items = sub_data.get("items")
        if items and items.get("data"):
            first = items["data"][0]
            start = start or first.get("current_period_start")
            end = end or first.get("current_period_end")

    return _from_timestamp(start), _from_timestamp(end)


def _extract_price_id(sub_data):
    items = sub_data.get("items")
    if items and items.get("data"):
        return (items["data"][0].get("price") or {}).get("id")
    return None


# ──────────────────────────────────────────────
# Customers & Checkout
# ──────────────────────────────────────────────

def create_provider_customer(customer):
    """Create the Stripe Customer for a local customer (once).

    Returns the Stripe customer id. Raises stripe.StripeError on API failures.
    """
    if customer.provider_customer_id:
        return customer.provider_customer_id

    _configure()
    params = {
        "email": customer.email,
        "metadata": {"customer_id": str(customer.id)},
    }
    if customer.name:
        params["name"] = customer.name
    provider_customer = stripe.Customer.create(**params)

    customer.provider_customer_id = provider_customer.id
    db.session.flush()
    logger.info(f"Linked customer {customer.id} to Stripe customer {provider_customer.id}")
    return provider_customer.id


def create_checkout_session(customer, price, quantity=1, trial_days=None,
                            success_url=None, cancel_url=None):
    """Create a Stripe Checkout Session for a subscription to `price`.

    Returns the checkout session URL.
    Raises ValidationError if the price is not linked to Stripe,
    stripe.StripeError on API failures.
    """
    if not price.provider_price_id:
        raise ValidationError(
            f"Price {price.id} has no Stripe price attached", code="price_not_linked"
        )

    provider_customer_id = create_provider_customer(customer)
    app_base_url = current_app.config["APP_BASE_URL"]

    subscription_data = {"metadata": {"customer_id": str(customer.id)}}
    if trial_days:
        subscription_data["trial_period_days"] = trial_days

    session = stripe.checkout.Session.create(
        mode="subscription",
        customer=provider_customer_id,
        line_items=[{"price": price.provider_price_id, "quantity": quantity}],
        subscription_data=subscription_data,
        allow_promotion_codes=True,
        success_url=success_url or (
            f"{app_base_url}/billing/success?session_id={{CHECKOUT_SESSION_ID}}"
        ),
        cancel_url=cancel_url or f"{app_base_url}/billing/cancel",
        metadata={
            "customer_id": str(customer.id),
            "plan_id": price.plan_id,
        },
    )
    return session.url


# ──────────────────────────────────────────────
# Provider subscription mirroring
# ──────────────────────────────────────────────
# Each helper returns None for subscriptions that only exist locally.

def retrieve_provider_subscription(subscription):
    if not subscription.provider_subscription_id:
        return None
    _configure()
    return stripe.Subscription.retrieve(subscription.provider_subscription_id)


def cancel_provider_subscription(subscription, at_period_end=False):
    if not subscription.provider_subscription_id:
        return None
    _configure()
    if at_period_end:
        return stripe.Subscription.modify(
            subscription.provider_subscription_id, cancel_at_period_end=True
        )
    return stripe.Subscription.cancel(subscription.provider_subscription_id)


def reactivate_provider_subscription(subscription):
    if not subscription.provider_subscription_id:
        return None
    _configure()
    return stripe.Subscription.modify(
        subscription.provider_subscription_id, cancel_at_period_end=False
    )


def pause_provider_subscription(subscription):
    if not subscription.provider_subscription_id:
        return None
    _configure()
    return stripe.Subscription.modify(
        subscription.provider_subscription_id,
        pause_collection={"behavior": "void"},
    )


def resume_provider_subscription(subscription):
    if not subscription.provider_subscription_id:
        return None
    _configure()
    # An empty string unsets pause_collection
    return stripe.Subscription.modify(
        subscription.provider_subscription_id, pause_collection=""
    )


def update_provider_subscription_price(subscription, new_price, prorate=True):
    """Swap the subscription's single item over to `new_price` on Stripe."""
    if not subscription.provider_subscription_id:
        return None
    if not new_price.provider_price_id:
        raise ValidationError(
            f"Price {new_price.id} has no Stripe price attached", code="price_not_linked"
        )

    provider_sub = retrieve_provider_subscription(subscription)
    item_id = provider_sub["items"]["data"][0]["id"]
    return stripe.Subscription.modify(
        subscription.provider_subscription_id,
        items=[{"id": item_id, "price": new_price.provider_price_id}],
        proration_behavior="create_prorations" if prorate else "none",
    )


# ──────────────────────────────────────────────
# Webhook Handling
# ──────────────────────────────────────────────

def construct_event(payload, sig_header, guard, content_type="application/json",
                    source="unknown"):
    """Run the webhook guard over a raw request. Returns the event as a dict.

    Raises a SecurityError subclass when the request is rejected.
    """
    return guard.inspect(payload, sig_header, content_type, source=source)


def handle_webhook_event(event):
    """Process a verified Stripe webhook event.

    Idempotency: checks webhook_events table before processing.
    If the event was already processed, returns immediately.

    Returns (success: bool, message: str).
    """
    event_id = event["id"]
    event_type = event["type"]

    # --- Idempotency check ---
    existing = WebhookEvent.query.filter_by(provider_event_id=event_id).first()
    if existing:
        logger.info(f"Duplicate webhook event {event_id}, skipping")
        return True, "already_processed"

    # --- Route to handler ---
    handlers = {
        "customer.subscription.created": _handle_subscription_upserted,
        "customer.subscription.updated": _handle_subscription_upserted,
        "customer.subscription.deleted": _handle_subscription_deleted,
        "customer.subscription.trial_will_end": _handle_trial_will_end,
        "invoice.payment_failed": _handle_payment_failed,
        "invoice.payment_succeeded": _handle_payment_succeeded,
        "charge.refunded": _handle_charge_refunded,
    }

    handler = handlers.get(event_type)
    if handler:
        try:
            handler(event)
        except Exception as e:
            logger.error(f"Error handling {event_type}: {e}", exc_info=True)
            db.session.rollback()
            return False, str(e)
    else:
        logger.debug(f"Ignoring unhandled webhook event type {event_type}")

    # --- Record event for idempotency ---
    db.session.add(WebhookEvent(provider_event_id=event_id, event_type=event_type))
    db.session.commit()

    return True, "processed"


# ──────────────────────────────────────────────
# Event Handlers
# ──────────────────────────────────────────────

def _sync_status(subscription, provider_status):
    """Follow the provider's status along a legal edge; log anything else."""
    try:
        target = SubscriptionStatus(provider_status)
    except ValueError:
        logger.warning(
            f"Unknown Stripe status {provider_status!r} for subscription {subscription.id}"
        )
        return
    try:
        transition_status(subscription, target, reason="stripe sync")
    except StateConflictError as e:
        logger.warning(f"Stripe sync skipped: {e.message}")


def _handle_subscription_upserted(event):
    """Handle customer.subscription.created / customer.subscription.updated.

    Creates the local record on first sight, then mirrors price, period,
    cancellation flag and status.
    """
    sub_data = event["data"]["object"]
    provider_subscription_id = sub_data.get("id")
    provider_status = sub_data.get("status", "active")

    subscription = get_subscription_by_provider_id(provider_subscription_id)

    provider_price_id = _extract_price_id(sub_data)
    price = None
    if provider_price_id:
        price = Price.query.filter_by(provider_price_id=provider_price_id).first()

    period_start, period_end = _extract_period(sub_data)

    if subscription is None:
        customer = get_customer_by_provider_id(sub_data.get("customer"))
        if not customer or not price or not period_start or not period_end:
            logger.warning(
                f"{event['type']}: cannot map sub={provider_subscription_id} "
                f"(customer={sub_data.get('customer')}, price={provider_price_id})"
            )
            return
        try:
            status = SubscriptionStatus(provider_status).value
        except ValueError:
            logger.warning(f"{event['type']}: unknown status {provider_status!r}")
            return

        subscription = Subscription(
            customer_id=customer.id,
            price_id=price.id,
            plan_id=price.plan_id,
            status=status,
            quantity=sub_data.get("quantity") or 1,
            interval_count=price.interval_count,
            current_period_start=period_start,
            current_period_end=period_end,
            trial_start=_from_timestamp(sub_data.get("trial_start")),
            trial_end=_from_timestamp(sub_data.get("trial_end")),
            cancel_at_period_end=bool(sub_data.get("cancel_at_period_end")),
            cancel_at=_from_timestamp(sub_data.get("cancel_at")),
            provider_subscription_id=provider_subscription_id,
            metadata_={"source": "stripe"},
        )
        db.session.add(subscription)
        db.session.flush()
        logger.info(f"Created subscription {subscription.id} from Stripe {provider_subscription_id}")
        log_billing_audit(customer.id, "subscription.created", {
            "subscription_id": subscription.id,
            "provider_subscription_id": provider_subscription_id,
            "plan_id": price.plan_id,
            "status": status,
        })
        return

    if price and price.id != subscription.price_id:
        subscription.price_id = price.id
        subscription.price = price
        subscription.plan_id = price.plan_id
        subscription.interval_count = price.interval_count
    if period_start and period_end:
        subscription.current_period_start = period_start
        subscription.current_period_end = period_end

    # Stripe uses cancel_at_period_end OR cancel_at (a future timestamp)
    # to indicate the subscription is set to cancel. Treat either as cancelling.
    subscription.cancel_at_period_end = bool(
        sub_data.get("cancel_at_period_end") or sub_data.get("cancel_at")
    )
    subscription.cancel_at = _from_timestamp(sub_data.get("cancel_at")) or (
        subscription.current_period_end if subscription.cancel_at_period_end else None
    )
    db.session.flush()

    _sync_status(subscription, provider_status)

    log_billing_audit(subscription.customer_id, "subscription.synced", {
        "subscription_id": subscription.id,
        "provider_subscription_id": provider_subscription_id,
        "status": provider_status,
        "cancel_at_period_end": subscription.cancel_at_period_end,
    })


def _handle_subscription_deleted(event):
    """Handle customer.subscription.deleted.

    Marks the local subscription as canceled.
    """
    sub_data = event["data"]["object"]
    provider_subscription_id = sub_data.get("id")

    subscription = get_subscription_by_provider_id(provider_subscription_id)
    if not subscription:
        logger.warning(
            f"subscription.deleted: no local record for sub={provider_subscription_id}"
        )
        return

    try:
        cancel_subscription(subscription, now=_from_timestamp(sub_data.get("ended_at")))
    except StateConflictError as e:
        logger.warning(f"subscription.deleted: {e.message}")


def _handle_trial_will_end(event):
    """Handle customer.subscription.trial_will_end (sent ~3 days ahead)."""
    sub_data = event["data"]["object"]
    subscription = get_subscription_by_provider_id(sub_data.get("id"))
    if not subscription:
        logger.warning(f"trial_will_end: no local record for sub={sub_data.get('id')}")
        return

    trial_end = _from_timestamp(sub_data.get("trial_end"))
    logger.info(f"Trial for subscription {subscription.id} ends {trial_end}")
    log_billing_audit(subscription.customer_id, "subscription.trial_will_end", {
        "subscription_id": subscription.id,
        "trial_end": trial_end.isoformat() if trial_end else None,
    })


def _invoice_context(event, label):
    """Resolve (invoice_data, customer, subscription) for an invoice event."""
    invoice = event["data"]["object"]
    customer = get_customer_by_provider_id(invoice.get("customer"))
    if not customer:
        logger.warning(f"{label}: cannot find customer for {invoice.get('customer')}")
        return invoice, None, None

    subscription = None
    if invoice.get("subscription"):
        subscription = get_subscription_by_provider_id(invoice["subscription"])
    return invoice, customer, subscription


def _handle_payment_failed(event):
    """Handle invoice.payment_failed.

    Records the failed attempt; the subscription moves to past_due.
    """
    invoice, customer, subscription = _invoice_context(event, "invoice.payment_failed")
    if not customer:
        return

    amount = invoice.get("amount_due") or 0
    if amount <= 0:
        logger.info(f"invoice.payment_failed for {invoice.get('id')} with nothing due")
        return

    error = invoice.get("last_payment_error") or {}
    try:
        record_payment(
            customer.id, amount, invoice.get("currency", "usd"),
            status="failed",
            subscription=subscription,
            failure_code=error.get("code") or "payment_failed",
            failure_message=error.get("message"),
            provider_payment_id=invoice.get("charge") or event["id"],
            created_at=_from_timestamp(event.get("created")),
        )
    except StateConflictError as e:
        logger.warning(f"invoice.payment_failed: {e.message}")


def _handle_payment_succeeded(event):
    """Handle invoice.payment_succeeded.

    Records the payment; a past_due / unpaid subscription returns to active.
    """
    invoice, customer, subscription = _invoice_context(event, "invoice.payment_succeeded")
    if not customer:
        return

    amount = invoice.get("amount_paid") or 0
    if amount <= 0:
        logger.info(f"invoice.payment_succeeded for {invoice.get('id')} with nothing paid")
        return

    try:
        record_payment(
            customer.id, amount, invoice.get("currency", "usd"),
            status="succeeded",
            subscription=subscription,
            provider_payment_id=invoice.get("charge") or event["id"],
            created_at=_from_timestamp(event.get("created")),
        )
    except StateConflictError as e:
        logger.warning(f"invoice.payment_succeeded: {e.message}")


def _handle_charge_refunded(event):
    """Handle charge.refunded.

    Stripe reports the cumulative refunded amount; only the delta is applied.
    """
    charge = event["data"]["object"]
    try:
        payment = get_payment_by_provider_id(charge.get("id"))
    except NotFoundError:
        logger.warning(f"charge.refunded: no local payment for charge={charge.get('id')}")
        return

    delta = (charge.get("amount_refunded") or 0) - (payment.amount_refunded or 0)
    delta = min(delta, remaining_refundable(payment))
    if delta <= 0:
        logger.info(f"charge.refunded: payment {payment.id} already reflects the refund")
        return
    refund_payment(payment, delta)
