"""Tests for the Stripe webhook endpoint and event handlers."""

import json
from datetime import datetime, timezone
from unittest.mock import patch

from billing_engine.extensions import db as _db
from billing_engine.models.payment import Payment
from billing_engine.models.subscription import Subscription
from billing_engine.models.webhook_event import WebhookEvent
from billing_engine.services.period_service import as_utc
from billing_engine.services.stripe_service import handle_webhook_event
from billing_engine.services.subscription_service import pause_subscription

JAN_1 = 1704067200   # 2024-01-01T00:00:00Z
FEB_1 = 1706745600   # 2024-02-01T00:00:00Z
MAR_1 = 1709251200   # 2024-03-01T00:00:00Z


def _subscription_event(event_id, event_type, status="active", price_id="price_basic_test",
                        sub_id="sub_test_123", **extra):
    obj = {
        "id": sub_id,
        "customer": "cus_test_123",
        "status": status,
        "items": {"data": [{
            "id": "si_1",
            "price": {"id": price_id},
            "current_period_start": FEB_1,
            "current_period_end": MAR_1,
        }]},
    }
    obj.update(extra)
    return {"id": event_id, "type": event_type, "created": FEB_1, "data": {"object": obj}}


def _invoice_event(event_id, event_type, charge="ch_1", **amounts):
    obj = {
        "id": "in_1",
        "customer": "cus_test_123",
        "subscription": "sub_test_123",
        "currency": "usd",
        "charge": charge,
    }
    obj.update(amounts)
    return {"id": event_id, "type": event_type, "created": JAN_1, "data": {"object": obj}}


class TestWebhookEndpoint:
    """Tests for request-level checks on POST /stripe/webhooks."""

    def test_missing_signature(self, client, seed_data):
        resp = client.post(
            "/stripe/webhooks",
            data=json.dumps({"id": "evt_1", "type": "ping"}),
            content_type="application/json",
        )
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "missing_signature"

    def test_invalid_signature(self, client, seed_data):
        resp = client.post(
            "/stripe/webhooks",
            data=json.dumps({"id": "evt_1", "type": "ping"}),
            content_type="application/json",
            headers={"Stripe-Signature": "t=1,v1=deadbeef"},
        )
        assert resp.status_code == 400

    def test_wrong_content_type(self, client, sign_payload, seed_data):
        body = json.dumps({"id": "evt_1", "type": "ping"})
        resp = client.post(
            "/stripe/webhooks",
            data=body,
            content_type="text/plain",
            headers={"Stripe-Signature": sign_payload(body)},
        )
        assert resp.status_code == 415
        assert resp.get_json()["code"] == "unsupported_content_type"

    def test_unhandled_event_is_acknowledged(self, post_webhook, seed_data):
        resp = post_webhook({"id": "evt_ping", "type": "customer.created", "data": {"object": {}}})
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "processed"
        assert WebhookEvent.query.filter_by(provider_event_id="evt_ping").count() == 1

    def test_replay_rejected(self, post_webhook, seed_data):
        event = {"id": "evt_dup", "type": "customer.created", "data": {"object": {}}}
        assert post_webhook(event).status_code == 200
        resp = post_webhook(event)
        assert resp.status_code == 409
        assert resp.get_json()["code"] == "replay"

    def test_stale_timestamp(self, post_webhook, seed_data):
        event = {"id": "evt_old", "type": "customer.created", "data": {"object": {}}}
        resp = post_webhook(event, timestamp=JAN_1)
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "expired"

    def test_not_configured(self, app, client, monkeypatch):
        monkeypatch.setitem(app.extensions, "webhook_guard", None)
        resp = client.post("/stripe/webhooks", data="{}", content_type="application/json")
        assert resp.status_code == 503

    def test_failure_releases_event_for_redelivery(self, post_webhook, seed_data):
        event = _invoice_event("evt_retry", "invoice.payment_failed", amount_due=1999)
        with patch(
            "billing_engine.services.stripe_service._handle_payment_failed",
            side_effect=RuntimeError("boom"),
        ):
            resp = post_webhook(event)
        assert resp.status_code == 500
        assert resp.get_json()["code"] == "processing_failed"
        assert WebhookEvent.query.filter_by(provider_event_id="evt_retry").count() == 0

        resp = post_webhook(event)
        assert resp.status_code == 200
        assert _db.session.get(Subscription, seed_data["subscription_id"]).status == "past_due"


class TestSubscriptionEvents:
    """Tests for customer.subscription.* handlers."""

    def test_updated_syncs_price_period_and_status(self, post_webhook, seed_data):
        resp = post_webhook(_subscription_event(
            "evt_upd", "customer.subscription.updated",
            status="past_due", price_id="price_pro_test",
        ))
        assert resp.status_code == 200

        sub = _db.session.get(Subscription, seed_data["subscription_id"])
        assert sub.price_id == seed_data["pro_id"]
        assert sub.plan_id == "pro"
        assert sub.status == "past_due"
        assert as_utc(sub.current_period_end) == datetime(2024, 3, 1, tzinfo=timezone.utc)

    def test_updated_with_cancel_at_period_end(self, post_webhook, seed_data):
        post_webhook(_subscription_event(
            "evt_cancel", "customer.subscription.updated", cancel_at_period_end=True,
        ))
        sub = _db.session.get(Subscription, seed_data["subscription_id"])
        assert sub.cancel_at_period_end is True
        assert sub.cancel_at is not None
        assert sub.status == "active"

    def test_illegal_provider_transition_is_skipped(self, post_webhook, seed_data):
        sub = seed_data["subscription"]
        sub.status = "canceled"
        resp = post_webhook(_subscription_event("evt_back", "customer.subscription.updated"))
        assert resp.status_code == 200
        assert _db.session.get(Subscription, seed_data["subscription_id"]).status == "canceled"

    def test_created_inserts_unknown_subscription(self, post_webhook, seed_data):
        resp = post_webhook(_subscription_event(
            "evt_new", "customer.subscription.created",
            sub_id="sub_new_456", price_id="price_pro_test", status="trialing",
        ))
        assert resp.status_code == 200
        sub = Subscription.query.filter_by(provider_subscription_id="sub_new_456").one()
        assert sub.customer_id == seed_data["customer_id"]
        assert sub.status == "trialing"
        assert sub.plan_id == "pro"

    def test_deleted_cancels(self, post_webhook, seed_data):
        resp = post_webhook(_subscription_event(
            "evt_del", "customer.subscription.deleted", status="canceled", ended_at=FEB_1,
        ))
        assert resp.status_code == 200
        sub = _db.session.get(Subscription, seed_data["subscription_id"])
        assert sub.status == "canceled"
        assert sub.canceled_at is not None

    def test_deleted_cancels_paused_subscription(self, post_webhook, seed_data):
        pause_subscription(seed_data["subscription"])
        _db.session.commit()

        resp = post_webhook(_subscription_event(
            "evt_del_paused", "customer.subscription.deleted", status="canceled", ended_at=FEB_1,
        ))
        assert resp.status_code == 200
        sub = _db.session.get(Subscription, seed_data["subscription_id"])
        assert sub.status == "canceled"
        assert as_utc(sub.canceled_at) == datetime(2024, 2, 1, tzinfo=timezone.utc)

    def test_deleted_unknown_subscription(self, post_webhook, seed_data):
        resp = post_webhook(_subscription_event(
            "evt_del2", "customer.subscription.deleted", sub_id="sub_missing",
        ))
        assert resp.status_code == 200


class TestInvoiceEvents:
    """Tests for invoice.* and charge.refunded handlers."""

    def test_payment_failed_moves_to_past_due(self, post_webhook, seed_data):
        resp = post_webhook(_invoice_event(
            "evt_fail", "invoice.payment_failed", amount_due=1999,
            last_payment_error={"code": "card_declined", "message": "Declined"},
        ))
        assert resp.status_code == 200

        payment = Payment.query.filter_by(provider_payment_id="ch_1").one()
        assert payment.status == "failed"
        assert payment.failure_code == "card_declined"
        assert _db.session.get(Subscription, seed_data["subscription_id"]).status == "past_due"

    def test_payment_succeeded_recovers(self, post_webhook, seed_data):
        post_webhook(_invoice_event(
            "evt_fail", "invoice.payment_failed", charge="ch_1", amount_due=1999,
        ))
        post_webhook(_invoice_event(
            "evt_ok", "invoice.payment_succeeded", charge="ch_2", amount_paid=1999,
        ))
        assert _db.session.get(Subscription, seed_data["subscription_id"]).status == "active"
        assert Payment.query.count() == 2

    def test_nothing_due_records_nothing(self, post_webhook, seed_data):
        post_webhook(_invoice_event("evt_zero", "invoice.payment_succeeded", amount_paid=0))
        assert Payment.query.count() == 0

    def test_charge_refunded_applies_delta(self, post_webhook, seed_data):
        post_webhook(_invoice_event(
            "evt_ok", "invoice.payment_succeeded", charge="ch_9", amount_paid=1999,
        ))
        refund = {"id": "ch_9", "amount_refunded": 500}
        post_webhook({"id": "evt_r1", "type": "charge.refunded", "data": {"object": refund}})
        payment = Payment.query.filter_by(provider_payment_id="ch_9").one()
        assert payment.status == "partially_refunded"
        assert payment.amount_refunded == 500

        # Stripe resends the cumulative total; nothing new to apply
        post_webhook({"id": "evt_r2", "type": "charge.refunded", "data": {"object": refund}})
        assert Payment.query.filter_by(provider_payment_id="ch_9").one().amount_refunded == 500

        refund = {"id": "ch_9", "amount_refunded": 1999}
        post_webhook({"id": "evt_r3", "type": "charge.refunded", "data": {"object": refund}})
        assert Payment.query.filter_by(provider_payment_id="ch_9").one().status == "refunded"


class TestIdempotency:
    """Tests for the webhook_events idempotency table."""

    def test_second_delivery_is_skipped(self, seed_data):
        event = _invoice_event("evt_once", "invoice.payment_failed", amount_due=1999)
        assert handle_webhook_event(event) == (True, "processed")
        assert handle_webhook_event(event) == (True, "already_processed")
        assert Payment.query.count() == 1
