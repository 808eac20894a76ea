"""Event Builder - turns a lifecycle transition into a versioned webhook event.

Pure: the same (transition, subscriber, snapshot) always yields the same payload
and the same correlation id. Nothing here reads the clock; "now" for every
derived field is the transition's own timestamp.
"""
import hashlib
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from models import LifecycleStatus, SubscriberMirror, WebhookEvent, WebhookEventType

SCHEMA_VERSION = "2024-01"

TRIAL_EVENTS = frozenset({
    WebhookEventType.TRIAL_STARTED,
    WebhookEventType.TRIAL_EXPIRING,
    WebhookEventType.TRIAL_EXPIRED,
})
GRACE_EVENTS = frozenset({
    WebhookEventType.GRACE_PERIOD_STARTED,
    WebhookEventType.GRACE_PERIOD_ENDING,
    WebhookEventType.GRACE_PERIOD_ENDED,
})


@dataclass(frozen=True)
class LifecycleTransition:
    """One detected lifecycle change (or time-based notice) for a subscriber."""
    event_type: WebhookEventType
    occurred_at: datetime
    previous_status: Optional[LifecycleStatus] = None
    new_status: Optional[LifecycleStatus] = None
    reason: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


def normalize_timestamp(value: datetime) -> datetime:
    """UTC, millisecond precision (what MongoDB stores)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return normalize_timestamp(value).isoformat().replace("+00:00", "Z")


def build_correlation_id(subscriber_id: str, event_type: WebhookEventType, occurred_at: datetime) -> str:
    raw = f"{subscriber_id}|{event_type.value}|{_iso(occurred_at)}"
    return hashlib.sha256(raw.encode()).hexdigest()[:32]


def _days_remaining(end: Optional[datetime], reference: datetime) -> Optional[int]:
    if end is None:
        return None
    seconds = (normalize_timestamp(end) - normalize_timestamp(reference)).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def _relevant_end(event_type: WebhookEventType, mirror: SubscriberMirror) -> Optional[datetime]:
    if event_type in TRIAL_EVENTS:
        return mirror.trial_end
    if event_type in GRACE_EVENTS:
        return mirror.grace_period_ends_at
    return mirror.period_end


def build_event_data(transition: LifecycleTransition, mirror: SubscriberMirror) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "status": mirror.status.value,
        "previousStatus": transition.previous_status.value if transition.previous_status else None,
        "plan": mirror.plan_id,
        "period": {
            "startsAt": _iso(mirror.period_start),
            "endsAt": _iso(mirror.period_end),
        },
        "cancellation": {
            "intent": mirror.cancel_intent,
            "effectiveAt": _iso(mirror.cancel_effective_at),
            "occurred": mirror.cancellation_occurred,
        },
        "daysRemaining": _days_remaining(_relevant_end(transition.event_type, mirror), transition.occurred_at),
        "reason": transition.reason,
    }
    if mirror.trial_start or mirror.trial_end:
        data["trial"] = {
            "startsAt": _iso(mirror.trial_start),
            "endsAt": _iso(mirror.trial_end),
        }
    if mirror.grace_period_ends_at:
        data["gracePeriod"] = {"endsAt": _iso(mirror.grace_period_ends_at)}
    # Payment amounts, invoice ids, failure details
    for key, value in transition.extra.items():
        data[key] = value
    return data


def build_event(
    transition: LifecycleTransition,
    subscriber_id: str,
    mirror: SubscriberMirror,
) -> WebhookEvent:
    occurred_at = normalize_timestamp(transition.occurred_at)
    correlation_id = build_correlation_id(subscriber_id, transition.event_type, occurred_at)
    payload = {
        "type": transition.event_type.value,
        "correlationId": correlation_id,
        "subscriberId": subscriber_id,
        "occurredAt": _iso(occurred_at),
        "schemaVersion": SCHEMA_VERSION,
        "data": build_event_data(transition, mirror),
    }
    return WebhookEvent(
        event_id=f"evt_{correlation_id}",
        type=transition.event_type,
        subscriber_id=subscriber_id,
        correlation_id=correlation_id,
        schema_version=SCHEMA_VERSION,
        occurred_at=occurred_at,
        payload=payload,
        created_at=occurred_at,
    )
