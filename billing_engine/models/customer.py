"""Customer model.

A billable party. Links to the payment provider through
provider_customer_id (Stripe "cus_..." id) once one has been created.
"""

import uuid

from billing_engine.extensions import db


class Customer(db.Model):
    __tablename__ = "customers"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email = db.Column(db.String(255), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=True)
    provider_customer_id = db.Column(
        db.String(255), unique=True, nullable=True
    )  # e.g. "cus_1Abc..."
    metadata_ = db.Column("metadata", db.JSON, default=dict)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    subscriptions = db.relationship(
        "Subscription", back_populates="customer", lazy="dynamic"
    )
    payments = db.relationship(
        "Payment", back_populates="customer", lazy="dynamic"
    )

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "provider_customer_id": self.provider_customer_id,
            "metadata": self.metadata_ or {},
        }

    def __repr__(self):
        return f"<Customer {self.email}>"
