"""Promo code models.

- PromoCode: a discount (percentage or fixed_amount) with a validity
  window, usage caps, plan restrictions and purchase conditions.
- PromoRedemption: one row per code applied to a subscription. The unique
  (promo_code_id, subscription_id) pair makes apply idempotent.
"""

import uuid

from billing_engine.extensions import db


class PromoCode(db.Model):
    __tablename__ = "promo_codes"

    DISCOUNT_TYPES = ["percentage", "fixed_amount"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    code = db.Column(db.String(64), unique=True, nullable=False)  # stored upper-case
    discount_type = db.Column(db.String(20), nullable=False)  # percentage | fixed_amount
    discount_value = db.Column(db.Integer, nullable=False)  # percent, or minor units
    currency = db.Column(db.String(3), nullable=True)  # required for fixed_amount
    active = db.Column(db.Boolean, nullable=False, default=True)

    max_uses = db.Column(db.Integer, nullable=True)  # None = unlimited
    max_per_customer = db.Column(db.Integer, nullable=True)
    current_redemptions = db.Column(db.Integer, nullable=False, default=0)

    valid_from = db.Column(db.DateTime(timezone=True), nullable=True)
    valid_until = db.Column(db.DateTime(timezone=True), nullable=True)
    applicable_plans = db.Column(db.JSON, default=list)  # empty = every plan

    # --- Conditions ---
    min_amount = db.Column(db.Integer, nullable=True)
    min_quantity = db.Column(db.Integer, nullable=True)
    first_purchase_only = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    redemptions = db.relationship(
        "PromoRedemption", back_populates="promo_code", lazy="dynamic"
    )

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "discount_type": self.discount_type,
            "discount_value": self.discount_value,
            "currency": self.currency,
            "active": self.active,
            "max_uses": self.max_uses,
            "current_redemptions": self.current_redemptions,
        }

    def __repr__(self):
        return f"<PromoCode {self.code} {self.discount_type}={self.discount_value}>"


class PromoRedemption(db.Model):
    __tablename__ = "promo_redemptions"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    promo_code_id = db.Column(
        db.String(36), db.ForeignKey("promo_codes.id"), nullable=False
    )
    customer_id = db.Column(
        db.String(36), db.ForeignKey("customers.id"), nullable=False, index=True
    )
    subscription_id = db.Column(
        db.String(36), db.ForeignKey("subscriptions.id"), nullable=False
    )
    discount_amount = db.Column(db.Integer, nullable=True)
    redeemed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    __table_args__ = (
        db.UniqueConstraint(
            "promo_code_id", "subscription_id", name="uq_promo_subscription"
        ),
    )

    # --- Relationships ---
    promo_code = db.relationship("PromoCode", back_populates="redemptions")

    def __repr__(self):
        return f"<PromoRedemption promo={self.promo_code_id} sub={self.subscription_id}>"
