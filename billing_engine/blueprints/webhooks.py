"""Webhooks blueprint — /stripe/webhooks

Receives Stripe webhook events. Raw body is required for signature
verification, so the payload is read with request.get_data().
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from billing_engine.errors import SecurityError
from billing_engine.services.stripe_service import construct_event, handle_webhook_event

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/stripe")


@webhooks_bp.route("/webhooks", methods=["POST"])
def stripe_webhook():
    """Receive and process Stripe webhook events.

    1. Run the webhook guard (content type, size, rate limit, signature,
       freshness, replay) on the raw body
    2. Pass to handle_webhook_event (idempotent via webhook_events table)
    3. Return 200 to acknowledge receipt

    A rejected request answers with the status of its SecurityError.
    If processing fails the event id is released from the replay store
    so Stripe's retry can get through.
    """
    guard = current_app.extensions.get("webhook_guard")
    if guard is None:
        logger.error("Webhook received but no webhook secret is configured")
        return jsonify({"error": "Webhooks are not configured", "code": "not_configured"}), 503

    payload = request.get_data()

    # --- Verify request ---
    try:
        event = construct_event(
            payload,
            request.headers.get("Stripe-Signature"),
            guard,
            content_type=request.content_type,
            source=request.remote_addr or "unknown",
        )
    except SecurityError as e:
        logger.warning(f"Webhook rejected ({e.code}): {e.message}")
        return jsonify(e.to_dict()), e.http_status

    # --- Process event (idempotent) ---
    success, message = handle_webhook_event(event)

    if success:
        return jsonify({"status": message}), 200
    else:
        guard.release(event["id"])
        logger.error(f"Webhook processing failed: {message}")
        return jsonify({"error": message, "code": "processing_failed"}), 500
