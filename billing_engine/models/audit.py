"""Audit event model.

Logs every significant billing action (status transitions, refunds,
promo redemptions, webhook-driven syncs) for support and debugging.
"""

import uuid

from billing_engine.extensions import db


class AuditEvent(db.Model):
    __tablename__ = "audit_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    customer_id = db.Column(
        db.String(36), db.ForeignKey("customers.id"), nullable=True, index=True
    )
    action = db.Column(db.String(255), nullable=False)  # e.g. "subscription.canceled"
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # extra context, named metadata_ to avoid clashing with SQLAlchemy's Model.metadata
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<AuditEvent {self.action}>"
