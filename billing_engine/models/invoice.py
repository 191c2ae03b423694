"""Invoice models.

- Invoice: draft -> open (finalized, numbered) -> paid | void | uncollectible.
  The human-facing number (e.g. "INV-2024-000001") is assigned on
  finalization; drafts have no number.
- InvoiceLine: one charge or credit. Proration credits carry negative amounts.
"""

import uuid

from billing_engine.extensions import db


class Invoice(db.Model):
    __tablename__ = "invoices"

    STATUSES = ["draft", "open", "paid", "void", "uncollectible"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    customer_id = db.Column(
        db.String(36), db.ForeignKey("customers.id"), nullable=False, index=True
    )
    subscription_id = db.Column(
        db.String(36), db.ForeignKey("subscriptions.id"), nullable=True
    )
    number = db.Column(db.String(64), unique=True, nullable=True)
    sequence = db.Column(db.Integer, nullable=True)
    sequence_year = db.Column(db.Integer, nullable=True)
    status = db.Column(db.String(20), nullable=False, default="draft")
    currency = db.Column(db.String(3), nullable=False)
    subtotal = db.Column(db.Integer, nullable=False, default=0)
    discount = db.Column(db.Integer, nullable=False, default=0)
    total = db.Column(db.Integer, nullable=False, default=0)
    amount_paid = db.Column(db.Integer, nullable=False, default=0)
    amount_remaining = db.Column(db.Integer, nullable=False, default=0)
    period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    period_end = db.Column(db.DateTime(timezone=True), nullable=True)
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    finalized_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    lines = db.relationship(
        "InvoiceLine",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLine.position",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "subscription_id": self.subscription_id,
            "number": self.number,
            "status": self.status,
            "currency": self.currency,
            "subtotal": self.subtotal,
            "discount": self.discount,
            "total": self.total,
            "amount_paid": self.amount_paid,
            "amount_remaining": self.amount_remaining,
            "lines": [line.to_dict() for line in self.lines],
        }

    def __repr__(self):
        return f"<Invoice {self.number or self.id} ({self.status})>"


class InvoiceLine(db.Model):
    __tablename__ = "invoice_lines"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    invoice_id = db.Column(
        db.String(36), db.ForeignKey("invoices.id"), nullable=False, index=True
    )
    position = db.Column(db.Integer, nullable=False, default=0)
    description = db.Column(db.String(500), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_amount = db.Column(db.Integer, nullable=False)
    amount = db.Column(db.Integer, nullable=False)  # negative for credits
    price_id = db.Column(db.String(36), db.ForeignKey("prices.id"), nullable=True)
    period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    period_end = db.Column(db.DateTime(timezone=True), nullable=True)
    proration = db.Column(db.Boolean, nullable=False, default=False)
    metadata_ = db.Column("metadata", db.JSON, default=dict)

    # --- Relationships ---
    invoice = db.relationship("Invoice", back_populates="lines")

    def to_dict(self):
        return {
            "description": self.description,
            "quantity": self.quantity,
            "unit_amount": self.unit_amount,
            "amount": self.amount,
            "proration": self.proration,
            "metadata": self.metadata_ or {},
        }

    def __repr__(self):
        return f"<InvoiceLine {self.description!r} {self.amount}>"
