"""Tests for webhook signature verification, freshness, replay and rate limiting."""

import json
import threading
import time

import pytest

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
from billing_engine.services.webhook_security import (
    RateLimitStore,
    ReplayStore,
    WebhookGuard,
    WebhookSecurityConfig,
    compute_signature,
    constant_time_equals,
    parse_signature_header,
    sign_payload,
    verify_signature,
)

SECRET = "whsec_unit"
NOW = 1_700_000_000
PAYLOAD = json.dumps({"id": "evt_1", "type": "invoice.payment_succeeded"})


def _guard(**overrides):
    return WebhookGuard(WebhookSecurityConfig.build(SECRET, **overrides))


def _inspect(guard, payload=PAYLOAD, timestamp=NOW, now=NOW, header=None,
             content_type="application/json", source="10.0.0.1"):
    if header is None:
        header = sign_payload(payload, SECRET, timestamp)
    return guard.inspect(payload, header, content_type, source=source, now=now)


class TestSignatureHeader:
    """Tests for parse_signature_header."""

    def test_parses_timestamp_and_signatures(self):
        ts, sigs = parse_signature_header(f"t={NOW},v1=abc,v1=def,v0=old")
        assert ts == NOW
        assert sigs == ["abc", "def"]

    def test_missing(self):
        with pytest.raises(MissingSignatureError):
            parse_signature_header("")
        with pytest.raises(MissingSignatureError):
            parse_signature_header(None)

    @pytest.mark.parametrize("header", [
        "v1=abc",
        f"t={NOW}",
        "t=notanumber,v1=abc",
        "garbage",
    ])
    def test_malformed(self, header):
        with pytest.raises(MalformedSignatureError):
            parse_signature_header(header)


class TestVerifySignature:
    """Tests for verify_signature / constant_time_equals."""

    def test_valid(self):
        header = sign_payload(PAYLOAD, SECRET, NOW)
        assert verify_signature(PAYLOAD, header, SECRET) == NOW

    def test_any_v1_may_match(self):
        good = compute_signature(PAYLOAD, NOW, SECRET)
        header = f"t={NOW},v1={'0' * 64},v1={good}"
        assert verify_signature(PAYLOAD, header, SECRET) == NOW

    def test_tampered_payload(self):
        header = sign_payload(PAYLOAD, SECRET, NOW)
        tampered = PAYLOAD.replace("evt_1", "evt_2")
        with pytest.raises(InvalidSignatureError):
            verify_signature(tampered, header, SECRET)

    def test_tampered_signature(self):
        good = compute_signature(PAYLOAD, NOW, SECRET)
        flipped = ("0" if good[0] != "0" else "1") + good[1:]
        with pytest.raises(InvalidSignatureError):
            verify_signature(PAYLOAD, f"t={NOW},v1={flipped}", SECRET)

    def test_wrong_secret(self):
        header = sign_payload(PAYLOAD, "whsec_other", NOW)
        with pytest.raises(InvalidSignatureError):
            verify_signature(PAYLOAD, header, SECRET)

    def test_timestamp_is_signed(self):
        good = compute_signature(PAYLOAD, NOW, SECRET)
        with pytest.raises(InvalidSignatureError):
            verify_signature(PAYLOAD, f"t={NOW + 1},v1={good}", SECRET)

    def test_constant_time_equals(self):
        assert constant_time_equals("abc", "abc")
        assert not constant_time_equals("abc", "abd")
        assert not constant_time_equals("abc", "abcd")
        assert constant_time_equals(b"abc", "abc")


class TestWebhookGuard:
    """Tests for the full inspection pipeline."""

    def test_accepts_valid_event(self):
        event = _inspect(_guard())
        assert event["id"] == "evt_1"

    def test_replay_rejected(self):
        guard = _guard()
        _inspect(guard)
        with pytest.raises(ReplayError) as exc:
            _inspect(guard, now=NOW + 10, timestamp=NOW + 10)
        assert exc.value.http_status == 409

    def test_replay_forgotten_after_ttl(self):
        guard = _guard(replay_ttl_seconds=60, tolerance_seconds=300)
        _inspect(guard)
        assert _inspect(guard, timestamp=NOW + 61, now=NOW + 61)["id"] == "evt_1"

    def test_release_allows_redelivery(self):
        guard = _guard()
        _inspect(guard)
        guard.release("evt_1")
        assert _inspect(guard)["id"] == "evt_1"

    def test_expired_timestamp(self):
        with pytest.raises(ExpiredTimestampError) as exc:
            _inspect(_guard(), timestamp=NOW - 600)
        assert exc.value.code == "expired"

    def test_future_timestamp(self):
        with pytest.raises(FutureTimestampError):
            _inspect(_guard(), timestamp=NOW + 600)

    def test_small_clock_skew_accepted(self):
        assert _inspect(_guard(), timestamp=NOW + 30)["id"] == "evt_1"

    def test_bad_signature_not_recorded_as_seen(self):
        guard = _guard()
        with pytest.raises(InvalidSignatureError):
            _inspect(guard, header=f"t={NOW},v1={'0' * 64}")
        assert len(guard.replay_store) == 0
        assert _inspect(guard)["id"] == "evt_1"

    def test_payload_too_large(self):
        guard = _guard(max_payload_bytes=16)
        with pytest.raises(PayloadTooLargeError) as exc:
            _inspect(guard)
        assert exc.value.http_status == 413

    def test_content_type(self):
        with pytest.raises(UnsupportedContentTypeError) as exc:
            _inspect(_guard(), content_type="text/plain")
        assert exc.value.http_status == 415
        assert _inspect(_guard(), content_type="application/json; charset=utf-8")

    def test_rate_limit_is_per_source(self):
        guard = _guard(max_requests=2)
        for i in range(2):
            payload = json.dumps({"id": f"evt_{i}"})
            _inspect(guard, payload=payload)
        with pytest.raises(RateLimitedError) as exc:
            _inspect(guard, payload=json.dumps({"id": "evt_9"}))
        assert exc.value.http_status == 429
        assert _inspect(guard, payload=json.dumps({"id": "evt_9"}), source="10.0.0.2")

    def test_source_allowlist(self):
        guard = _guard(allowed_cidrs=["10.0.0.0/24"])
        assert _inspect(guard, source="10.0.0.7")
        with pytest.raises(SourceNotAllowedError) as exc:
            _inspect(guard, payload=json.dumps({"id": "evt_2"}), source="192.168.1.1")
        assert exc.value.http_status == 403

    def test_event_without_id(self):
        with pytest.raises(ValidationError) as exc:
            _inspect(_guard(), payload=json.dumps({"type": "ping"}))
        assert exc.value.code == "invalid_payload"

    @pytest.mark.parametrize("event_id", [["evt_1"], {"id": "evt_1"}, 42, ""])
    def test_event_id_must_be_string(self, event_id):
        with pytest.raises(ValidationError) as exc:
            _inspect(_guard(), payload=json.dumps({"id": event_id, "type": "ping"}))
        assert exc.value.code == "invalid_payload"

    def test_config_requires_secret(self):
        with pytest.raises(ValidationError):
            WebhookSecurityConfig.build("")

    def test_config_rejects_non_positive(self):
        with pytest.raises(ValidationError):
            WebhookSecurityConfig.build(SECRET, tolerance_seconds=0)


class TestStores:
    """Tests for ReplayStore / RateLimitStore directly."""

    def test_replay_store(self):
        store = ReplayStore(ttl_seconds=10)
        assert store.check_and_record("evt", now=0)
        assert not store.check_and_record("evt", now=5)
        assert store.is_replay("evt", now=9)
        assert not store.is_replay("evt", now=10)
        assert len(store) == 0

    def test_concurrent_record_has_one_winner(self):
        store = ReplayStore(ttl_seconds=60)
        barrier = threading.Barrier(8)
        results = []

        def record():
            barrier.wait()
            results.append(store.check_and_record("evt_race", now=NOW))

        threads = [threading.Thread(target=record) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1
        assert results.count(False) == 7
        assert len(store) == 1

    def test_rate_window_moves(self):
        store = RateLimitStore(max_requests=1, window_seconds=1)
        assert store.is_allowed("a")
        assert not store.is_allowed("a")
        assert store.is_allowed("b")
        time.sleep(1.1)
        assert store.is_allowed("a")

    def test_rate_clear(self):
        store = RateLimitStore(max_requests=1, window_seconds=60)
        assert store.is_allowed("a")
        store.clear()
        assert store.is_allowed("a")
