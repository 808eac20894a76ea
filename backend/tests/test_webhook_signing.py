"""
Outbound webhook signatures and the receiver-side check.
"""
import hashlib
import hmac

from services.webhook_signing import (
    ATTEMPT_HEADER,
    DELIVERY_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    build_signed_headers,
    compute_signature,
    serialize_payload,
    verify_signature,
)

SECRET = "whsec_test"
TS = 1717243200


def test_signature_covers_timestamp_and_body():
    body = serialize_payload({"b": 2, "a": 1})
    expected = hmac.new(SECRET.encode(), f"{TS}.{body}".encode(), hashlib.sha256).hexdigest()
    assert compute_signature(body, SECRET, TS) == expected


def test_serialization_is_canonical():
    assert serialize_payload({"b": 2, "a": 1}) == '{"a":1,"b":2}'


def test_headers():
    body = serialize_payload({"type": "trial.started"})
    headers = build_signed_headers(body, SECRET, "trial.started", "corr-1", 2, timestamp=TS)
    assert headers[SIGNATURE_HEADER] == f"sha256={compute_signature(body, SECRET, TS)}"
    assert headers[TIMESTAMP_HEADER] == str(TS)
    assert headers[EVENT_HEADER] == "trial.started"
    assert headers[DELIVERY_HEADER] == "corr-1"
    assert headers[ATTEMPT_HEADER] == "2"
    assert headers["Content-Type"] == "application/json"


def test_verify_accepts_valid_signature():
    body = serialize_payload({"type": "trial.started"})
    headers = build_signed_headers(body, SECRET, "trial.started", "corr-1", 1, timestamp=TS)
    assert verify_signature(body, headers[SIGNATURE_HEADER], SECRET, TS, now=TS + 10)


def test_verify_rejects_tampered_body():
    body = serialize_payload({"type": "trial.started"})
    signature = compute_signature(body, SECRET, TS)
    assert not verify_signature(body.replace("started", "expired"), signature, SECRET, TS, now=TS)


def test_verify_rejects_wrong_secret():
    body = serialize_payload({"type": "trial.started"})
    signature = compute_signature(body, "other", TS)
    assert not verify_signature(body, signature, SECRET, TS, now=TS)


def test_verify_rejects_stale_timestamp():
    body = serialize_payload({"type": "trial.started"})
    signature = compute_signature(body, SECRET, TS)
    assert not verify_signature(body, signature, SECRET, TS, now=TS + 301)
    assert verify_signature(body, signature, SECRET, TS, now=TS + 300)
