"""Billing blueprint — /api/*

JSON API over customers, subscriptions, payments, invoices and promo codes.
Every failure is a BillingError; the app-level error handler turns it into
{"error", "code"} with the matching status.

Routes:
- POST /api/customers                              — create (or fetch) a customer
- GET  /api/customers/<id>                         — customer record
- POST /api/customers/<id>/checkout                — Stripe Checkout URL for a plan
- GET  /api/prices                                 — active prices
- POST /api/subscriptions                          — start a subscription
- GET  /api/customers/<id>/subscriptions           — paginated list
- GET  /api/subscriptions/<id>                     — record + status / period / renewal info
- POST /api/subscriptions/<id>/cancel              — now or at period end
- POST /api/subscriptions/<id>/reactivate          — drop a pending cancellation
- POST /api/subscriptions/<id>/pause|resume
- POST /api/subscriptions/<id>/change-plan         — with proration invoice
- DELETE /api/subscriptions/<id>                   — soft delete
- GET  /api/subscriptions/<id>/retry-state         — dunning state
- POST /api/subscriptions/<id>/retry               — authorize a manual retry
- POST /api/payments                               — record a payment attempt
- POST /api/payments/<id>/refund
- POST /api/invoices, GET /api/invoices/<id>
- POST /api/invoices/<id>/finalize|void
- POST /api/promo-codes/validate|apply
- POST /api/promo-codes/discounts                  — combine several codes (stacking mode)
- POST /api/payment-methods/expiration             — card expiry status
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from billing_engine.errors import ValidationError
from billing_engine.extensions import db, limiter
from billing_engine.models.customer import Customer
from billing_engine.models.invoice import Invoice
from billing_engine.models.price import Price
from billing_engine.models.subscription import Subscription
from billing_engine.services import stripe_service
from billing_engine.services.billing_service import (
    get_or_404,
    get_or_create_customer,
    get_price_for_plan,
    paginate,
)
from billing_engine.services.invoice_service import (
    InvoiceNumberConfig,
    create_invoice,
    create_proration_invoice,
    finalize_invoice,
    void_invoice,
)
from billing_engine.services.payment_method_service import (
    ExpirationWarningConfig,
    days_until_card_expires,
    is_card_expired,
    should_send_expiration_warning,
)
from billing_engine.services.payment_service import get_payment, record_payment, refund_payment
from billing_engine.services.promo_service import (
    apply_promo_code,
    calculate_discounts,
    validate_promo_code,
)
from billing_engine.services.retry_service import (
    RetryConfig,
    authorize_retry,
    get_subscription_retry_state,
    has_access_during_grace,
)
from billing_engine.services.subscription_service import (
    cancel_subscription,
    change_plan,
    create_subscription,
    get_period_info,
    get_renewal_info,
    get_status_details,
    get_trial_info,
    list_customer_subscriptions,
    pause_subscription,
    reactivate_subscription,
    resume_subscription,
    soft_delete_subscription,
)

logger = logging.getLogger(__name__)

billing_bp = Blueprint("billing", __name__, url_prefix="/api")


def _api_rate_limit():
    return current_app.config["API_RATE_LIMIT"]


limiter.limit(_api_rate_limit)(billing_bp)


def _json():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _require(data, *fields):
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        raise ValidationError(
            f"Missing required field(s): {', '.join(missing)}", code="missing_required_field"
        )


def _int_arg(name):
    value = request.args.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")


def _iso(value):
    return value.isoformat() if value else None


def _retry_config():
    return RetryConfig.from_app_config(current_app.config)


# ──────────────────────────────────────────────
# Customers & prices
# ──────────────────────────────────────────────

@billing_bp.route("/customers", methods=["POST"])
def create_customer():
    data = _json()
    _require(data, "email")
    customer = get_or_create_customer(data["email"], name=data.get("name"))
    db.session.commit()
    return jsonify(customer.to_dict()), 201


@billing_bp.route("/customers/<customer_id>")
def get_customer(customer_id):
    return jsonify(get_or_404(Customer, customer_id).to_dict())


@billing_bp.route("/customers/<customer_id>/checkout", methods=["POST"])
def checkout(customer_id):
    """Create a Stripe Checkout Session for a plan and return its URL."""
    data = _json()
    _require(data, "plan_id")
    customer = get_or_404(Customer, customer_id)
    price = get_price_for_plan(data["plan_id"], data.get("price_id"))

    url = stripe_service.create_checkout_session(
        customer,
        price,
        quantity=data.get("quantity", 1),
        trial_days=data.get("trial_days"),
        success_url=data.get("success_url"),
        cancel_url=data.get("cancel_url"),
    )
    db.session.commit()
    return jsonify({"url": url})


@billing_bp.route("/prices")
def list_prices():
    query = Price.query.filter_by(active=True).order_by(Price.plan_id, Price.unit_amount)
    if request.args.get("plan_id"):
        query = query.filter_by(plan_id=request.args["plan_id"])
    page = paginate(query, _int_arg("limit"), _int_arg("offset"))
    page["data"] = [p.to_dict() for p in page["data"]]
    return jsonify(page)


# ──────────────────────────────────────────────
# Subscriptions
# ──────────────────────────────────────────────

def _subscription_payload(subscription):
    payload = subscription.to_dict()
    payload["details"] = get_status_details(subscription)

    period = get_period_info(subscription)
    payload["period"] = {
        "days_in_period": period.days_in_period,
        "days_elapsed": period.days_elapsed,
        "days_remaining": period.days_remaining,
        "percent_complete": period.percent_complete,
    }

    trial = get_trial_info(subscription)
    if trial.trial_end:
        payload["trial"] = {
            "is_trialing": trial.is_trialing,
            "days_remaining": trial.days_remaining,
            "has_ended": trial.has_ended,
        }

    renewal = get_renewal_info(subscription)
    payload["renewal"] = {
        "will_renew": renewal.will_renew,
        "renewal_date": _iso(renewal.renewal_date),
        "days_until_renewal": renewal.days_until_renewal,
        "amount": renewal.amount,
        "currency": renewal.currency,
    }
    return payload


@billing_bp.route("/subscriptions", methods=["POST"])
def start_subscription():
    """Start a subscription, optionally redeeming a promo code on it."""
    data = _json()
    _require(data, "customer_id", "plan_id")
    customer = get_or_404(Customer, data["customer_id"])
    price = get_price_for_plan(data["plan_id"], data.get("price_id"))

    subscription = create_subscription(
        customer,
        price,
        quantity=data.get("quantity", 1),
        trial_days=data.get("trial_days"),
        metadata=data.get("metadata"),
    )

    if data.get("promo_code"):
        apply_promo_code(
            data["promo_code"],
            customer_id=customer.id,
            subscription_id=subscription.id,
            amount=price.unit_amount * subscription.quantity,
            plan_id=price.plan_id,
            currency=price.currency,
        )

    db.session.commit()
    return jsonify(_subscription_payload(subscription)), 201


@billing_bp.route("/customers/<customer_id>/subscriptions")
def customer_subscriptions(customer_id):
    get_or_404(Customer, customer_id)
    include_deleted = request.args.get("include_deleted", "").lower() in ("1", "true", "yes")
    page = paginate(
        list_customer_subscriptions(customer_id, include_deleted=include_deleted),
        _int_arg("limit"),
        _int_arg("offset"),
    )
    page["data"] = [s.to_dict() for s in page["data"]]
    return jsonify(page)


@billing_bp.route("/subscriptions/<subscription_id>")
def get_subscription_route(subscription_id):
    return jsonify(_subscription_payload(get_or_404(Subscription, subscription_id)))


@billing_bp.route("/subscriptions/<subscription_id>/cancel", methods=["POST"])
def cancel(subscription_id):
    data = _json()
    subscription = get_or_404(Subscription, subscription_id)
    at_period_end = bool(data.get("at_period_end", False))

    already_canceled = subscription.status == "canceled"
    cancel_subscription(subscription, at_period_end=at_period_end)
    if not already_canceled:
        stripe_service.cancel_provider_subscription(subscription, at_period_end=at_period_end)

    db.session.commit()
    return jsonify(_subscription_payload(subscription))


@billing_bp.route("/subscriptions/<subscription_id>/reactivate", methods=["POST"])
def reactivate(subscription_id):
    subscription = get_or_404(Subscription, subscription_id)
    was_scheduled = subscription.cancel_at_period_end
    reactivate_subscription(subscription)
    if was_scheduled:
        stripe_service.reactivate_provider_subscription(subscription)
    db.session.commit()
    return jsonify(_subscription_payload(subscription))


@billing_bp.route("/subscriptions/<subscription_id>/pause", methods=["POST"])
def pause(subscription_id):
    subscription = get_or_404(Subscription, subscription_id)
    previous = subscription.status
    pause_subscription(subscription)
    if previous != subscription.status:
        stripe_service.pause_provider_subscription(subscription)
    db.session.commit()
    return jsonify(_subscription_payload(subscription))


@billing_bp.route("/subscriptions/<subscription_id>/resume", methods=["POST"])
def resume(subscription_id):
    subscription = get_or_404(Subscription, subscription_id)
    previous = subscription.status
    resume_subscription(subscription)
    if previous != subscription.status:
        stripe_service.resume_provider_subscription(subscription)
    db.session.commit()
    return jsonify(_subscription_payload(subscription))


@billing_bp.route("/subscriptions/<subscription_id>/change-plan", methods=["POST"])
def change_plan_route(subscription_id):
    """Switch plans now (prorated, with a draft invoice) or at period end."""
    data = _json()
    _require(data, "plan_id")
    subscription = get_or_404(Subscription, subscription_id)
    current_price = get_or_404(Price, subscription.price_id)
    new_price = get_price_for_plan(data["plan_id"], data.get("price_id"))
    apply_at = data.get("apply_at", "immediately")
    prorate = bool(data.get("prorate", True))

    subscription, proration = change_plan(
        subscription, new_price, apply_at=apply_at, prorate=prorate
    )

    invoice = None
    if proration is not None and proration.charge_amount + proration.credit_amount > 0:
        invoice = create_proration_invoice(subscription, current_price, new_price, proration)

    if apply_at == "immediately":
        stripe_service.update_provider_subscription_price(subscription, new_price, prorate=prorate)

    db.session.commit()
    return jsonify({
        "subscription": _subscription_payload(subscription),
        "proration": {
            "unused_amount": proration.unused_amount,
            "new_amount": proration.new_amount,
            "credit_amount": proration.credit_amount,
            "charge_amount": proration.charge_amount,
            "days_remaining": proration.days_remaining,
            "days_in_period": proration.days_in_period,
            "effective_date": _iso(proration.effective_date),
        } if proration else None,
        "invoice": invoice.to_dict() if invoice else None,
    })


@billing_bp.route("/subscriptions/<subscription_id>", methods=["DELETE"])
def delete_subscription(subscription_id):
    subscription = get_or_404(Subscription, subscription_id)
    soft_delete_subscription(subscription)
    db.session.commit()
    return jsonify({"id": subscription.id, "deleted": True})


@billing_bp.route("/subscriptions/<subscription_id>/retry-state")
def retry_state(subscription_id):
    subscription = get_or_404(Subscription, subscription_id)
    state = get_subscription_retry_state(subscription, _retry_config())
    return jsonify({
        "subscription_id": subscription.id,
        "status": subscription.status,
        "has_access": has_access_during_grace(subscription, state),
        "retry_state": state.to_dict() if state else None,
    })


@billing_bp.route("/subscriptions/<subscription_id>/retry", methods=["POST"])
def authorize_retry_route(subscription_id):
    """Check that a manual charge retry is allowed right now."""
    subscription = get_or_404(Subscription, subscription_id)
    state = authorize_retry(subscription, _retry_config())
    return jsonify({"authorized": True, "retry_state": state.to_dict()})


# ──────────────────────────────────────────────
# Payments
# ──────────────────────────────────────────────

@billing_bp.route("/payments", methods=["POST"])
def create_payment():
    data = _json()
    _require(data, "customer_id", "amount", "currency")
    customer = get_or_404(Customer, data["customer_id"])
    subscription = None
    if data.get("subscription_id"):
        subscription = get_or_404(Subscription, data["subscription_id"])
    invoice = None
    if data.get("invoice_id"):
        invoice = get_or_404(Invoice, data["invoice_id"])

    payment = record_payment(
        customer.id,
        data["amount"],
        data["currency"],
        status=data.get("status", "succeeded"),
        subscription=subscription,
        invoice=invoice,
        failure_code=data.get("failure_code"),
        failure_message=data.get("failure_message"),
        provider_payment_id=data.get("provider_payment_id"),
    )
    db.session.commit()
    return jsonify(payment.to_dict()), 201


@billing_bp.route("/payments/<payment_id>/refund", methods=["POST"])
def refund(payment_id):
    data = _json()
    payment = refund_payment(get_payment(payment_id), data.get("amount"))
    db.session.commit()
    return jsonify(payment.to_dict())


# ──────────────────────────────────────────────
# Invoices
# ──────────────────────────────────────────────

@billing_bp.route("/invoices", methods=["POST"])
def create_invoice_route():
    data = _json()
    _require(data, "customer_id", "currency")
    customer = get_or_404(Customer, data["customer_id"])
    if data.get("subscription_id"):
        get_or_404(Subscription, data["subscription_id"])

    invoice = create_invoice(
        customer.id,
        data.get("lines") or [],
        data["currency"],
        subscription_id=data.get("subscription_id"),
        discount=data.get("discount", 0),
    )
    db.session.commit()
    return jsonify(invoice.to_dict()), 201


@billing_bp.route("/invoices/<invoice_id>")
def get_invoice(invoice_id):
    return jsonify(get_or_404(Invoice, invoice_id).to_dict())


@billing_bp.route("/invoices/<invoice_id>/finalize", methods=["POST"])
def finalize(invoice_id):
    invoice = finalize_invoice(
        get_or_404(Invoice, invoice_id),
        InvoiceNumberConfig.from_app_config(current_app.config),
    )
    db.session.commit()
    return jsonify(invoice.to_dict())


@billing_bp.route("/invoices/<invoice_id>/void", methods=["POST"])
def void(invoice_id):
    invoice = void_invoice(get_or_404(Invoice, invoice_id))
    db.session.commit()
    return jsonify(invoice.to_dict())


# ──────────────────────────────────────────────
# Promo codes
# ──────────────────────────────────────────────

@billing_bp.route("/promo-codes/validate", methods=["POST"])
def validate_promo():
    data = _json()
    _require(data, "code")
    result = validate_promo_code(
        data["code"],
        customer_id=data.get("customer_id"),
        plan_id=data.get("plan_id"),
        amount=data.get("amount"),
        currency=data.get("currency"),
        quantity=data.get("quantity"),
    )
    return jsonify({
        "valid": True,
        "code": result.promo_code.code,
        "discount_type": result.discount_type,
        "discount_percent": result.discount_percent,
        "discount_amount": result.discount_amount,
    })


@billing_bp.route("/promo-codes/apply", methods=["POST"])
def apply_promo():
    data = _json()
    _require(data, "code", "subscription_id")
    subscription = get_or_404(Subscription, data["subscription_id"])
    price = get_or_404(Price, subscription.price_id)

    redemption, created = apply_promo_code(
        data["code"],
        customer_id=data.get("customer_id") or subscription.customer_id,
        subscription_id=subscription.id,
        amount=data.get("amount", price.unit_amount * subscription.quantity),
        plan_id=subscription.plan_id,
        currency=price.currency,
    )
    db.session.commit()
    return jsonify({
        "id": redemption.id,
        "subscription_id": redemption.subscription_id,
        "discount_amount": redemption.discount_amount,
        "created": created,
    }), 201 if created else 200


@billing_bp.route("/promo-codes/discounts", methods=["POST"])
def combine_promos():
    """Price `amount` under several codes using the configured stacking mode."""
    data = _json()
    _require(data, "amount", "codes")
    codes = data["codes"]
    if not isinstance(codes, list) or not all(isinstance(c, str) for c in codes):
        raise ValidationError("codes must be a list of strings")

    result = calculate_discounts(
        data["amount"],
        codes,
        stacking_mode=data.get("stacking_mode") or current_app.config["PROMO_STACKING_MODE"],
        customer_id=data.get("customer_id"),
        plan_id=data.get("plan_id"),
        currency=data.get("currency"),
        quantity=data.get("quantity"),
    )
    return jsonify({
        "original_amount": result.original_amount,
        "discount_amount": result.discount_amount,
        "final_amount": result.final_amount,
        "applied": [{"code": c, "discount_amount": d} for c, d in result.applied],
        "skipped": [{"code": c, "reason": r} for c, r in result.skipped],
    })


# ──────────────────────────────────────────────
# Payment methods
# ──────────────────────────────────────────────

@billing_bp.route("/payment-methods/expiration", methods=["POST"])
def card_expiration():
    data = _json()
    _require(data, "exp_month", "exp_year")
    try:
        exp_month, exp_year = int(data["exp_month"]), int(data["exp_year"])
    except (TypeError, ValueError):
        raise ValidationError("exp_month and exp_year must be integers")

    config = ExpirationWarningConfig.from_app_config(current_app.config)
    return jsonify({
        "expired": is_card_expired(exp_month, exp_year),
        "days_until_expiry": days_until_card_expires(exp_month, exp_year),
        "send_warning": should_send_expiration_warning(
            exp_month, exp_year, config=config, already_sent=data.get("already_sent") or ()
        ),
    })
