"""Price model.

A price belongs to a plan (plan_id is a stable slug such as "pro") and
fixes the amount charged per billing interval. Amounts are integers in
minor currency units (cents).

Once an active subscription references a price, only its `active` flag
may change. billing_service.update_price() enforces that.
"""

import uuid

from billing_engine.extensions import db


class Price(db.Model):
    __tablename__ = "prices"

    INTERVALS = ["day", "week", "month", "year"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    plan_id = db.Column(db.String(100), nullable=False, index=True)  # e.g. "pro"
    plan_name = db.Column(db.String(255), nullable=False)  # e.g. "Pro"
    unit_amount = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="usd")
    billing_interval = db.Column(
        db.String(10), nullable=False, default="month"
    )  # day | week | month | year
    interval_count = db.Column(db.Integer, nullable=False, default=1)
    active = db.Column(db.Boolean, nullable=False, default=True)
    provider_price_id = db.Column(db.String(255), unique=True, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    __table_args__ = (
        db.CheckConstraint("unit_amount >= 0", name="ck_price_unit_amount"),
        db.CheckConstraint("interval_count > 0", name="ck_price_interval_count"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "plan_id": self.plan_id,
            "plan_name": self.plan_name,
            "unit_amount": self.unit_amount,
            "currency": self.currency,
            "billing_interval": self.billing_interval,
            "interval_count": self.interval_count,
            "active": self.active,
        }

    def __repr__(self):
        return f"<Price {self.plan_id} {self.unit_amount} {self.currency}/{self.billing_interval}>"
