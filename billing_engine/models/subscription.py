"""Subscription model.

status holds a SubscriptionStatus value; all writes to it go through
subscription_service.transition_status() so only legal edges are taken.

A soft-deleted subscription (deleted_at set) is never considered active,
whatever its status says.
"""

import uuid

from billing_engine.extensions import db


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    customer_id = db.Column(
        db.String(36), db.ForeignKey("customers.id"), nullable=False, index=True
    )
    price_id = db.Column(
        db.String(36), db.ForeignKey("prices.id"), nullable=False
    )
    plan_id = db.Column(db.String(100), nullable=False)
    status = db.Column(
        db.String(50), nullable=False
    )  # trialing | active | past_due | paused | canceled | incomplete | incomplete_expired | unpaid
    quantity = db.Column(db.Integer, nullable=False, default=1)
    interval_count = db.Column(db.Integer, nullable=False, default=1)

    current_period_start = db.Column(db.DateTime(timezone=True), nullable=False)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=False)
    trial_start = db.Column(db.DateTime(timezone=True), nullable=True)
    trial_end = db.Column(db.DateTime(timezone=True), nullable=True)

    cancel_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False)
    canceled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ended_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paused_at = db.Column(db.DateTime(timezone=True), nullable=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    provider_subscription_id = db.Column(
        db.String(255), unique=True, nullable=True
    )  # e.g. "sub_1Abc..."
    metadata_ = db.Column("metadata", db.JSON, default=dict)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __table_args__ = (
        db.CheckConstraint(
            "current_period_end > current_period_start",
            name="ck_subscription_period_order",
        ),
        db.CheckConstraint("quantity > 0", name="ck_subscription_quantity"),
    )

    # --- Relationships ---
    customer = db.relationship("Customer", back_populates="subscriptions")
    price = db.relationship("Price")
    payments = db.relationship(
        "Payment", back_populates="subscription", lazy="dynamic"
    )

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    def to_dict(self):
        def _iso(value):
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "price_id": self.price_id,
            "plan_id": self.plan_id,
            "status": self.status,
            "quantity": self.quantity,
            "current_period_start": _iso(self.current_period_start),
            "current_period_end": _iso(self.current_period_end),
            "trial_start": _iso(self.trial_start),
            "trial_end": _iso(self.trial_end),
            "cancel_at": _iso(self.cancel_at),
            "cancel_at_period_end": self.cancel_at_period_end,
            "canceled_at": _iso(self.canceled_at),
            "provider_subscription_id": self.provider_subscription_id,
            "metadata": self.metadata_ or {},
        }

    def __repr__(self):
        return f"<Subscription {self.plan_id} ({self.status})>"
