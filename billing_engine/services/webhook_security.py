"""Webhook security — gatekeeping for inbound provider notifications.

Responsible for:
- Parsing and verifying `t=<unix>,v1=<hex>` signature headers
  (HMAC-SHA256 over "<t>.<raw body>", any v1 value may match)
- Rejecting stale or future-dated timestamps
- Suppressing replays of an event id within a TTL
- Per-source sliding-window rate limiting
- Payload size / content type constraints and an optional source allowlist

ReplayStore and RateLimitStore are plain objects owned by whoever builds
the guard (create_app keeps one pair per Flask app). ReplayStore locks per
shard, never across keys; RateLimitStore rides on the `limits` package
that Flask-Limiter is built on.
"""

import hashlib
import hmac
import ipaddress
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from billing_engine.errors import (
    ExpiredTimestampError,
    FutureTimestampError,
    InvalidSignatureError,
    MalformedSignatureError,
    MissingSignatureError,
    PayloadTooLargeError,
    RateLimitedError,
    ReplayError,
    SourceNotAllowedError,
    UnsupportedContentTypeError,
    ValidationError,
)

logger = logging.getLogger(__name__)

SIGNATURE_SCHEME = "v1"
FUTURE_SKEW_SECONDS = 60
DEFAULT_SHARDS = 16


@dataclass(frozen=True)
class WebhookSecurityConfig:
    secret: str
    tolerance_seconds: int = 300
    future_skew_seconds: int = FUTURE_SKEW_SECONDS
    replay_ttl_seconds: int = 3600
    max_requests: int = 1000
    window_seconds: int = 60
    max_payload_bytes: int = 1024 * 1024
    allowed_networks: tuple = ()

    @classmethod
    def build(cls, secret, tolerance_seconds=None, replay_ttl_seconds=None,
              max_requests=None, window_seconds=None, max_payload_bytes=None,
              allowed_cidrs=None):
        """Effective config: unset fields keep their defaults."""
        if not secret:
            raise ValidationError("Webhook secret is required")
        overrides = {
            "tolerance_seconds": tolerance_seconds,
            "replay_ttl_seconds": replay_ttl_seconds,
            "max_requests": max_requests,
            "window_seconds": window_seconds,
            "max_payload_bytes": max_payload_bytes,
        }
        fields = {k: int(v) for k, v in overrides.items() if v is not None}
        for name, value in fields.items():
            if value <= 0:
                raise ValidationError(f"{name} must be positive")
        if allowed_cidrs:
            try:
                fields["allowed_networks"] = tuple(
                    ipaddress.ip_network(c, strict=False) for c in allowed_cidrs
                )
            except ValueError as e:
                raise ValidationError(f"Invalid webhook CIDR: {e}")
        return cls(secret=secret, **fields)

    @classmethod
    def from_app_config(cls, app_config):
        return cls.build(
            secret=app_config.get("STRIPE_WEBHOOK_SECRET"),
            tolerance_seconds=app_config.get("WEBHOOK_TOLERANCE_SECONDS"),
            replay_ttl_seconds=app_config.get("WEBHOOK_REPLAY_TTL_SECONDS"),
            max_requests=app_config.get("WEBHOOK_RATE_LIMIT_MAX"),
            window_seconds=app_config.get("WEBHOOK_RATE_LIMIT_WINDOW_SECONDS"),
            max_payload_bytes=app_config.get("WEBHOOK_MAX_PAYLOAD_BYTES"),
            allowed_cidrs=app_config.get("WEBHOOK_ALLOWED_CIDRS"),
        )


def _to_bytes(value):
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


# ──────────────────────────────────────────────
# Signatures
# ──────────────────────────────────────────────

def parse_signature_header(header):
    """Split a signature header into (timestamp, [v1 signatures])."""
    if not header:
        raise MissingSignatureError("Missing signature header")

    timestamp = None
    signatures = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == SIGNATURE_SCHEME and value:
            signatures.append(value)

    if timestamp is None or not signatures:
        raise MalformedSignatureError("Signature header must carry t= and v1= parts")
    try:
        timestamp = int(timestamp)
    except ValueError:
        raise MalformedSignatureError("Signature timestamp is not an integer")
    return timestamp, signatures


def compute_signature(payload, timestamp, secret):
    """Lowercase hex HMAC-SHA256 of "<timestamp>.<payload>"."""
    signed = f"{timestamp}.".encode("utf-8") + _to_bytes(payload)
    return hmac.new(_to_bytes(secret), signed, hashlib.sha256).hexdigest()


def sign_payload(payload, secret, timestamp=None):
    """Build a signature header for `payload` (what the provider sends)."""
    if timestamp is None:
        timestamp = int(time.time())
    return f"t={timestamp},{SIGNATURE_SCHEME}={compute_signature(payload, timestamp, secret)}"


def constant_time_equals(a, b):
    """Fixed-time equality, including when the lengths differ.

    Both sides are reduced to 32-byte digests first, so the comparison
    always walks the same number of bytes.
    """
    a_digest = hashlib.sha256(_to_bytes(a)).digest()
    b_digest = hashlib.sha256(_to_bytes(b)).digest()
    return hmac.compare_digest(a_digest, b_digest)


def verify_signature(payload, header, secret):
    """Check `header` against `payload`. Returns the signed timestamp."""
    timestamp, signatures = parse_signature_header(header)
    expected = compute_signature(payload, timestamp, secret)

    # No early exit: every candidate is compared
    matched = False
    for candidate in signatures:
        matched |= constant_time_equals(candidate, expected)
    if not matched:
        raise InvalidSignatureError("Signature does not match payload")
    return timestamp


def check_freshness(timestamp, now=None, tolerance_seconds=300,
                    future_skew_seconds=FUTURE_SKEW_SECONDS):
    if now is None:
        now = time.time()
    if timestamp > now + future_skew_seconds:
        raise FutureTimestampError("Signature timestamp is in the future")
    if now - timestamp > tolerance_seconds:
        raise ExpiredTimestampError("Signature timestamp is outside the tolerance window")


# ──────────────────────────────────────────────
# Payload constraints
# ──────────────────────────────────────────────

def validate_payload_size(payload, max_bytes):
    size = len(_to_bytes(payload))
    if size > max_bytes:
        raise PayloadTooLargeError(f"Payload of {size} bytes exceeds {max_bytes}")


def validate_content_type(content_type):
    if not (content_type or "").strip().lower().startswith("application/json"):
        raise UnsupportedContentTypeError(
            f"Unsupported content type: {content_type or 'none'}"
        )


def check_source_allowed(source, allowed_networks):
    """Reject sources outside the configured networks. No networks = allow all."""
    if not allowed_networks:
        return
    try:
        address = ipaddress.ip_address(source)
    except ValueError:
        raise SourceNotAllowedError(f"Unrecognized webhook source {source!r}")
    if not any(address in network for network in allowed_networks):
        raise SourceNotAllowedError(f"Webhook source {source} is not allowed")


# ──────────────────────────────────────────────
# Shared stores
# ──────────────────────────────────────────────

class _Sharded:
    """Spread keys over N independently locked dicts."""

    def __init__(self, shards, factory):
        self._locks = [threading.Lock() for _ in range(shards)]
        self._maps = [factory() for _ in range(shards)]

    def shard(self, key):
        index = hash(key) % len(self._locks)
        return self._locks[index], self._maps[index]

    def __iter__(self):
        return iter(zip(self._locks, self._maps))


class ReplayStore:
    """Event id -> first-seen time, forgotten after `ttl_seconds`."""

    def __init__(self, ttl_seconds=3600, shards=DEFAULT_SHARDS):
        self.ttl_seconds = ttl_seconds
        self._shards = _Sharded(shards, OrderedDict)

    def _evict(self, seen, now):
        # OrderedDict keeps insertion order, which is first-seen order
        while seen:
            event_id, first_seen = next(iter(seen.items()))
            if now - first_seen < self.ttl_seconds:
                break
            seen.pop(event_id)

    def is_replay(self, event_id, now=None):
        now = time.time() if now is None else now
        lock, seen = self._shards.shard(event_id)
        with lock:
            self._evict(seen, now)
            return event_id in seen

    def check_and_record(self, event_id, now=None):
        """Record `event_id`. Returns False if it was already seen within the TTL."""
        now = time.time() if now is None else now
        lock, seen = self._shards.shard(event_id)
        with lock:
            self._evict(seen, now)
            if event_id in seen:
                return False
            seen[event_id] = now
            return True

    def forget(self, event_id):
        lock, seen = self._shards.shard(event_id)
        with lock:
            seen.pop(event_id, None)

    def clear(self):
        for lock, seen in self._shards:
            with lock:
                seen.clear()

    def __len__(self):
        return sum(len(seen) for _, seen in self._shards)


class RateLimitStore:
    """Moving-window request counter per source key.

    Backed by a `limits` storage, so expired windows are dropped by the
    storage itself. Pass a shared storage to count across processes.
    """

    def __init__(self, max_requests=1000, window_seconds=60, storage=None):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.item = RateLimitItemPerSecond(max_requests, window_seconds, namespace="webhook")
        self.storage = storage or MemoryStorage()
        self._limiter = MovingWindowRateLimiter(self.storage)

    def is_allowed(self, source):
        """Count a request from `source`; False once the window is full."""
        return self._limiter.hit(self.item, source)

    def clear(self):
        self.storage.reset()


# ──────────────────────────────────────────────
# Guard
# ──────────────────────────────────────────────

class WebhookGuard:
    """Runs every check on one inbound request, cheapest first.

    content type -> size -> source -> rate limit -> signature -> freshness
    -> parse -> replay. Returns the parsed event dict.
    """

    def __init__(self, config, replay_store=None, rate_limiter=None):
        self.config = config
        self.replay_store = replay_store or ReplayStore(config.replay_ttl_seconds)
        self.rate_limiter = rate_limiter or RateLimitStore(
            config.max_requests, config.window_seconds
        )

    def inspect(self, payload, signature_header, content_type, source="unknown", now=None):
        now = time.time() if now is None else now
        config = self.config

        validate_content_type(content_type)
        validate_payload_size(payload, config.max_payload_bytes)
        check_source_allowed(source, config.allowed_networks)
        if not self.rate_limiter.is_allowed(source):
            raise RateLimitedError(f"Too many webhook requests from {source}")

        timestamp = verify_signature(payload, signature_header, config.secret)
        check_freshness(timestamp, now, config.tolerance_seconds, config.future_skew_seconds)

        try:
            event = json.loads(_to_bytes(payload).decode("utf-8"))
        except ValueError:
            raise ValidationError("Webhook payload is not valid JSON", code="invalid_payload")
        if not isinstance(event, dict) or not isinstance(event.get("id"), str) or not event["id"]:
            raise ValidationError("Webhook event has no id", code="invalid_payload")

        if not self.replay_store.check_and_record(event["id"], now):
            raise ReplayError(f"Event {event['id']} was already received")
        return event

    def release(self, event_id):
        """Let a redelivery of `event_id` through (its processing failed)."""
        self.replay_store.forget(event_id)
