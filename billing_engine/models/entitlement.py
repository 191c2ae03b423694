"""Entitlement and usage-limit models.

- Entitlement: boolean feature grant per (customer, key), optionally
  time-bounded. At most one row per pair; re-granting updates it in place.
- UsageLimit: numeric ceiling per (customer, key) with a running counter.
  A key with no row is unlimited.
"""

import uuid
from datetime import datetime, timezone

from billing_engine.extensions import db


class Entitlement(db.Model):
    __tablename__ = "entitlements"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    customer_id = db.Column(
        db.String(36), db.ForeignKey("customers.id"), nullable=False
    )
    entitlement_key = db.Column(db.String(100), nullable=False)  # e.g. "api_access"
    source = db.Column(
        db.String(50), nullable=False, default="manual"
    )  # subscription | purchase | manual
    source_id = db.Column(db.String(36), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    granted_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    __table_args__ = (
        db.UniqueConstraint(
            "customer_id", "entitlement_key", name="uq_entitlement_customer_key"
        ),
    )

    @property
    def is_expired(self):
        """Check if the grant has lapsed."""
        if self.expires_at is None:
            return False
        expires = self.expires_at
        # SQLite returns naive datetimes; Postgres returns aware ones.
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) >= expires

    def to_dict(self):
        return {
            "customer_id": self.customer_id,
            "entitlement_key": self.entitlement_key,
            "source": self.source,
            "source_id": self.source_id,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "expired": self.is_expired,
        }

    def __repr__(self):
        return f"<Entitlement {self.entitlement_key} customer={self.customer_id}>"


class UsageLimit(db.Model):
    __tablename__ = "usage_limits"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    customer_id = db.Column(
        db.String(36), db.ForeignKey("customers.id"), nullable=False
    )
    limit_key = db.Column(db.String(100), nullable=False)  # e.g. "api_calls"
    max_value = db.Column(db.Integer, nullable=False)
    current_value = db.Column(db.Integer, nullable=False, default=0)
    reset_at = db.Column(db.DateTime(timezone=True), nullable=True)
    source = db.Column(db.String(50), nullable=False, default="manual")
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __table_args__ = (
        db.UniqueConstraint(
            "customer_id", "limit_key", name="uq_usage_limit_customer_key"
        ),
        db.CheckConstraint("current_value >= 0", name="ck_usage_limit_current"),
    )

    def __repr__(self):
        return f"<UsageLimit {self.limit_key} {self.current_value}/{self.max_value}>"
