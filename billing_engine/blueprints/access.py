"""Access blueprint — /api/customers/<customer_id>/entitlements|limits

Feature grants and metered usage limits for one customer.

Routes:
- GET    /entitlements              — unexpired grants
- GET    /entitlements/<key>        — {"entitled": bool}
- POST   /entitlements              — grant (re-grant updates the one row)
- DELETE /entitlements/<key>        — revoke
- GET    /limits                    — all limits
- GET    /limits/<key>              — standing of one limit (undefined = unlimited)
- PUT    /limits/<key>              — set max_value (counter restarts at 0)
- POST   /limits/<key>/usage        — record usage (increment or set)
"""

import logging
import math
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request

from billing_engine.errors import ValidationError
from billing_engine.extensions import db, limiter
from billing_engine.models.customer import Customer
from billing_engine.services.billing_service import get_or_404
from billing_engine.services.entitlement_service import (
    check_entitlement,
    check_limit,
    get_customer_entitlements,
    get_customer_limits,
    grant_entitlement,
    record_usage,
    revoke_entitlement,
    set_limit,
)
from billing_engine.services.period_service import as_utc

logger = logging.getLogger(__name__)

access_bp = Blueprint("access", __name__, url_prefix="/api/customers/<customer_id>")


def _api_rate_limit():
    return current_app.config["API_RATE_LIMIT"]


limiter.limit(_api_rate_limit)(access_bp)


def _json():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _parse_datetime(value, field):
    if value is None:
        return None
    try:
        return as_utc(datetime.fromisoformat(value))
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an ISO 8601 datetime")


def _limit_payload(key, check):
    # JSON has no infinity; unlimited is reported as null
    def _finite(value):
        return None if value == math.inf else value

    return {
        "key": key,
        "allowed": check.allowed,
        "current_value": check.current_value,
        "max_value": _finite(check.max_value),
        "remaining": _finite(check.remaining),
        "unlimited": check.max_value == math.inf,
    }


# ──────────────────────────────────────────────
# Entitlements
# ──────────────────────────────────────────────

@access_bp.route("/entitlements")
def list_entitlements(customer_id):
    get_or_404(Customer, customer_id)
    return jsonify({
        "data": [e.to_dict() for e in get_customer_entitlements(customer_id)],
    })


@access_bp.route("/entitlements/<key>")
def get_entitlement(customer_id, key):
    return jsonify({"key": key, "entitled": check_entitlement(customer_id, key)})


@access_bp.route("/entitlements", methods=["POST"])
def grant(customer_id):
    data = _json()
    get_or_404(Customer, customer_id)
    entitlement = grant_entitlement(
        customer_id,
        data.get("key"),
        source=data.get("source", "manual"),
        source_id=data.get("source_id"),
        expires_at=_parse_datetime(data.get("expires_at"), "expires_at"),
    )
    db.session.commit()
    return jsonify(entitlement.to_dict()), 201


@access_bp.route("/entitlements/<key>", methods=["DELETE"])
def revoke(customer_id, key):
    revoked = revoke_entitlement(customer_id, key)
    db.session.commit()
    return jsonify({"key": key, "revoked": revoked})


# ──────────────────────────────────────────────
# Usage limits
# ──────────────────────────────────────────────

@access_bp.route("/limits")
def list_limits(customer_id):
    get_or_404(Customer, customer_id)
    limits = get_customer_limits(customer_id)
    return jsonify({"data": [_limit_payload(k, c) for k, c in limits.items()]})


@access_bp.route("/limits/<key>")
def get_limit(customer_id, key):
    return jsonify(_limit_payload(key, check_limit(customer_id, key)))


@access_bp.route("/limits/<key>", methods=["PUT"])
def put_limit(customer_id, key):
    data = _json()
    get_or_404(Customer, customer_id)
    set_limit(
        customer_id,
        key,
        data.get("max_value"),
        reset_at=_parse_datetime(data.get("reset_at"), "reset_at"),
        source=data.get("source", "manual"),
    )
    db.session.commit()
    return jsonify(_limit_payload(key, check_limit(customer_id, key)))


@access_bp.route("/limits/<key>/usage", methods=["POST"])
def usage(customer_id, key):
    data = _json()
    check = record_usage(
        customer_id, key, data.get("quantity", 1), action=data.get("action", "increment")
    )
    db.session.commit()
    return jsonify(_limit_payload(key, check))
