"""HMAC-SHA256 signing for outbound webhooks.

Signature = hex(HMAC_SHA256(secret, f"{timestamp}.{raw_body}")), sent as
"X-Webhook-Signature: sha256=<hex>" with the unix timestamp in
"X-Webhook-Timestamp". Receivers must reject stale timestamps.
"""
import hashlib
import hmac
import json
import time
from typing import Any, Dict, Optional

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
EVENT_HEADER = "X-Webhook-Event"
DELIVERY_HEADER = "X-Webhook-Delivery"
ATTEMPT_HEADER = "X-Webhook-Attempt"
USER_AGENT = "BillingLifecycle-Webhook/1.0"

DEFAULT_MAX_AGE_SECONDS = 300


def serialize_payload(payload: Dict[str, Any]) -> str:
    """Canonical JSON body; signed and sent byte-for-byte."""
    return json.dumps(payload, default=str, sort_keys=True, separators=(",", ":"))


def compute_signature(body: str, secret: str, timestamp: int) -> str:
    message = f"{timestamp}.{body}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def build_signed_headers(
    body: str,
    secret: str,
    event_type: str,
    delivery_id: str,
    attempt: int,
    timestamp: Optional[int] = None,
) -> Dict[str, str]:
    if timestamp is None:
        timestamp = int(time.time())
    return {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: f"sha256={compute_signature(body, secret, timestamp)}",
        TIMESTAMP_HEADER: str(timestamp),
        EVENT_HEADER: event_type,
        DELIVERY_HEADER: delivery_id,
        ATTEMPT_HEADER: str(attempt),
        "User-Agent": USER_AGENT,
    }


def verify_signature(
    body: str,
    signature: str,
    secret: str,
    timestamp: int,
    max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
    now: Optional[int] = None,
) -> bool:
    """Receiver-side check: fresh timestamp and matching signature."""
    if now is None:
        now = int(time.time())
    if abs(now - int(timestamp)) > max_age_seconds:
        return False
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    expected = compute_signature(body, secret, int(timestamp))
    return hmac.compare_digest(signature, expected)
