"""Billing service — storage helpers shared by the engine services.

Responsible for:
- Getting or creating Customer records (local + provider id)
- Looking up entities by id with a typed not-found failure
- Paginating list queries as {data, total, has_more}
- Guarding Price immutability once subscriptions depend on it
- Writing billing audit events
"""

import logging

from billing_engine.errors import NotFoundError, StateConflictError, ValidationError
from billing_engine.extensions import db
from billing_engine.models.audit import AuditEvent
from billing_engine.models.customer import Customer
from billing_engine.models.price import Price
from billing_engine.models.subscription import Subscription

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

# Statuses that pin a price: while a subscription in one of these
# references it, the price's amount fields are frozen.
PRICE_PINNING_STATUSES = ("trialing", "active", "past_due", "paused", "unpaid")


def get_or_404(model, entity_id):
    """Fetch `model` by primary key or raise NotFoundError."""
    obj = db.session.get(model, entity_id) if entity_id else None
    if obj is None:
        raise NotFoundError(f"{model.__name__} {entity_id} not found")
    return obj


def paginate(query, limit=None, offset=None):
    """Run `query` as one page.

    Returns {"data": [...], "total": int, "has_more": bool}.
    """
    limit = DEFAULT_PAGE_SIZE if limit is None else int(limit)
    offset = 0 if offset is None else int(offset)
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    if offset < 0:
        raise ValidationError("offset must not be negative")

    total = query.order_by(None).count()
    data = query.limit(limit).offset(offset).all()
    return {
        "data": data,
        "total": total,
        "has_more": offset + len(data) < total,
    }


def get_or_create_customer(email, name=None, provider_customer_id=None):
    """Get existing Customer (by provider id, then email) or create one.

    Returns the Customer instance (flushed, not committed).
    """
    customer = None
    if provider_customer_id:
        customer = Customer.query.filter_by(
            provider_customer_id=provider_customer_id
        ).first()
    if customer is None:
        customer = Customer.query.filter_by(email=email.lower().strip()).first()

    if customer:
        if provider_customer_id and customer.provider_customer_id != provider_customer_id:
            customer.provider_customer_id = provider_customer_id
            db.session.flush()
        return customer

    customer = Customer(
        email=email.lower().strip(),
        name=name,
        provider_customer_id=provider_customer_id,
    )
    db.session.add(customer)
    db.session.flush()
    logger.info(f"Created customer {customer.id} ({customer.email})")
    return customer


def get_customer_by_provider_id(provider_customer_id):
    """Look up a Customer from a provider customer id. Returns None on miss."""
    if not provider_customer_id:
        return None
    return Customer.query.filter_by(
        provider_customer_id=provider_customer_id
    ).first()


def get_price_for_plan(plan_id, price_id=None):
    """Resolve the price to use for `plan_id` (explicit id, else first active)."""
    query = Price.query.filter_by(plan_id=plan_id, active=True)
    if price_id:
        query = query.filter_by(id=price_id)
    price = query.order_by(Price.created_at).first()
    if price is None:
        raise NotFoundError(
            f"No active price for plan {plan_id}", code="price_not_found"
        )
    return price


def update_price(price, **changes):
    """Apply `changes` to a Price.

    Only `active` may change once a live subscription references the price;
    anything else raises StateConflictError.
    """
    frozen = {k: v for k, v in changes.items() if k != "active"}
    if frozen:
        in_use = Subscription.query.filter(
            Subscription.price_id == price.id,
            Subscription.status.in_(PRICE_PINNING_STATUSES),
            Subscription.deleted_at.is_(None),
        ).count()
        if in_use:
            raise StateConflictError(
                f"Price {price.id} is referenced by {in_use} active subscription(s); "
                f"only the active flag can change",
                code="price_in_use",
            )

    for field, value in changes.items():
        if not hasattr(price, field):
            raise ValidationError(f"Unknown price field: {field}")
        setattr(price, field, value)
    db.session.flush()
    return price


def log_billing_audit(customer_id, action, metadata=None):
    """Log a billing-related audit event.

    Flushed, not committed: the caller owns the transaction.
    """
    event = AuditEvent(
        customer_id=customer_id,
        action=action,
        metadata_=metadata or {},
    )
    db.session.add(event)
    db.session.flush()
    return event
