"""Shared test fixtures for the billing engine test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, provider keys faked)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: a customer, Basic and Pro monthly prices, and an active
  Basic subscription with a fixed 30-day period
- sign_payload: helper that builds a Stripe-Signature header for a body
"""

import json
import time
from datetime import datetime, timezone

import pytest

from billing_engine import create_app
from billing_engine.extensions import db as _db
from billing_engine.models.customer import Customer
from billing_engine.models.price import Price
from billing_engine.models.subscription import Subscription
from billing_engine.services.webhook_security import sign_payload as _sign_payload

WEBHOOK_SECRET = "whsec_test_fake"

PERIOD_START = datetime(2024, 1, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2024, 1, 31, tzinfo=timezone.utc)


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture(autouse=True)
def webhook_guard(app):
    """The app's webhook guard, with its replay / rate-limit stores emptied."""
    guard = app.extensions["webhook_guard"]
    guard.replay_store.clear()
    guard.rate_limiter.clear()
    return guard


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def sign_payload():
    """Return a function (payload, timestamp=None) -> Stripe-Signature header."""

    def _sign(payload, timestamp=None, secret=WEBHOOK_SECRET):
        if timestamp is None:
            timestamp = int(time.time())
        return _sign_payload(payload, secret, timestamp)

    return _sign


@pytest.fixture
def post_webhook(client, sign_payload):
    """POST a signed event dict to /stripe/webhooks."""

    def _post(event, timestamp=None, headers=None):
        body = json.dumps(event)
        all_headers = {"Stripe-Signature": sign_payload(body, timestamp)}
        all_headers.update(headers or {})
        return client.post(
            "/stripe/webhooks",
            data=body,
            content_type="application/json",
            headers=all_headers,
        )

    return _post


@pytest.fixture
def seed_data(app, db_session):
    """Seed a customer, two prices and an active subscription.

    Returns a dict with the created objects and their plain IDs.
    """
    customer = Customer(
        email="jane@example.com",
        name="Jane Example",
        provider_customer_id="cus_test_123",
    )
    _db.session.add(customer)

    basic = Price(
        plan_id="basic",
        plan_name="Basic",
        unit_amount=1999,
        currency="usd",
        billing_interval="month",
        provider_price_id="price_basic_test",
    )
    pro = Price(
        plan_id="pro",
        plan_name="Pro",
        unit_amount=4999,
        currency="usd",
        billing_interval="month",
        provider_price_id="price_pro_test",
    )
    _db.session.add_all([basic, pro])
    _db.session.flush()

    subscription = Subscription(
        customer_id=customer.id,
        price_id=basic.id,
        plan_id="basic",
        status="active",
        quantity=1,
        interval_count=1,
        current_period_start=PERIOD_START,
        current_period_end=PERIOD_END,
        provider_subscription_id="sub_test_123",
        metadata_={},
    )
    _db.session.add(subscription)
    _db.session.commit()

    return {
        "customer": customer,
        "customer_id": customer.id,
        "basic": basic,
        "basic_id": basic.id,
        "pro": pro,
        "pro_id": pro.id,
        "subscription": subscription,
        "subscription_id": subscription.id,
    }
