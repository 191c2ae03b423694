"""Payment model.

One row per charge attempt. Failed attempts are kept: the retry engine
derives the dunning state of a subscription from the ordered sequence of
its payments, so nothing here is ever rewritten except refund bookkeeping.
"""

import uuid
from datetime import datetime, timezone

from billing_engine.extensions import db


class Payment(db.Model):
    __tablename__ = "payments"

    STATUSES = [
        "pending",
        "succeeded",
        "failed",
        "refunded",
        "partially_refunded",
    ]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    customer_id = db.Column(
        db.String(36), db.ForeignKey("customers.id"), nullable=False, index=True
    )
    subscription_id = db.Column(
        db.String(36), db.ForeignKey("subscriptions.id"), nullable=True, index=True
    )
    invoice_id = db.Column(
        db.String(36), db.ForeignKey("invoices.id"), nullable=True
    )
    amount = db.Column(db.Integer, nullable=False)
    amount_refunded = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False)
    status = db.Column(db.String(30), nullable=False, default="pending")
    failure_code = db.Column(db.String(100), nullable=True)  # e.g. "card_declined"
    failure_message = db.Column(db.String(500), nullable=True)
    provider_payment_id = db.Column(db.String(255), unique=True, nullable=True)
    # Python-side default: retry ordering needs sub-second precision on SQLite too
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.CheckConstraint("amount > 0", name="ck_payment_amount_positive"),
    )

    # --- Relationships ---
    customer = db.relationship("Customer", back_populates="payments")
    subscription = db.relationship("Subscription", back_populates="payments")

    def to_dict(self):
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "subscription_id": self.subscription_id,
            "invoice_id": self.invoice_id,
            "amount": self.amount,
            "amount_refunded": self.amount_refunded,
            "currency": self.currency,
            "status": self.status,
            "failure_code": self.failure_code,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Payment {self.amount} {self.currency} ({self.status})>"
