"""Webhook event model (idempotency table).

Every dispatched provider event is recorded by its event ID. This is the
durable counterpart of the in-memory replay store: the replay store drops
re-deliveries inside its TTL, this table drops them forever.
"""

import uuid

from billing_engine.extensions import db


class WebhookEvent(db.Model):
    __tablename__ = "webhook_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    provider_event_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "evt_1Abc..."
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "invoice.payment_failed"
    processed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<WebhookEvent {self.provider_event_id} ({self.event_type})>"
