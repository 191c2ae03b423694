"""Billing error taxonomy.

Every engine operation fails with one of these. The app factory maps each
kind to an HTTP status so blueprints never build error responses by hand.

- ValidationError: malformed or out-of-range input (raised before any write)
- NotFoundError: referenced entity does not exist (write paths only)
- StateConflictError: operation illegal for the entity's current state
- SecurityError: inbound webhook rejected (one subclass per reason)
- ExhaustionError: retry attempts or redemption caps used up
"""


class BillingError(Exception):
    """Base class for all billing engine failures."""

    code = "billing_error"
    http_status = 400

    def __init__(self, message, code=None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self):
        return {"error": self.message, "code": self.code}


class ValidationError(BillingError):
    code = "validation_failed"
    http_status = 400


class ProrationError(ValidationError):
    code = "invalid_period"


class NotFoundError(BillingError):
    code = "entity_not_found"
    http_status = 404


class StateConflictError(BillingError):
    code = "state_conflict"
    http_status = 409


class ExhaustionError(BillingError):
    code = "exhausted"
    http_status = 422


# ──────────────────────────────────────────────
# Webhook security rejections
# ──────────────────────────────────────────────

class SecurityError(BillingError):
    code = "security_rejected"
    http_status = 400


class MissingSignatureError(SecurityError):
    code = "missing_signature"


class MalformedSignatureError(SecurityError):
    code = "malformed_signature"


class InvalidSignatureError(SecurityError):
    code = "invalid_signature"


class FutureTimestampError(SecurityError):
    code = "future_timestamp"


class ExpiredTimestampError(SecurityError):
    code = "expired"


class ReplayError(SecurityError):
    code = "replay"
    http_status = 409


class RateLimitedError(SecurityError):
    code = "rate_limited"
    http_status = 429


class PayloadTooLargeError(SecurityError):
    code = "payload_too_large"
    http_status = 413


class UnsupportedContentTypeError(SecurityError):
    code = "unsupported_content_type"
    http_status = 415


class SourceNotAllowedError(SecurityError):
    code = "source_not_allowed"
    http_status = 403
