from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class LifecycleStatus(str, Enum):
    TRIAL = "TRIAL"
    ACTIVE = "ACTIVE"
    GRACE_PERIOD = "GRACE_PERIOD"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class WebhookEventType(str, Enum):
    # Trial
    TRIAL_STARTED = "trial.started"
    TRIAL_EXPIRING = "trial.expiring"
    TRIAL_EXPIRED = "trial.expired"

    # Subscription
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_EXPIRING = "subscription.expiring"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"

    # Grace period
    GRACE_PERIOD_STARTED = "grace_period.started"
    GRACE_PERIOD_ENDING = "grace_period.ending"
    GRACE_PERIOD_ENDED = "grace_period.ended"

    # Payment
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    DELIVERED = "DELIVERED"
    EXHAUSTED = "EXHAUSTED"


class DeliveryOutcome(str, Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_REJECTION = "permanent_rejection"


class NoticeType(str, Enum):
    TRIAL_EXPIRING = "TRIAL_EXPIRING"
    GRACE_PERIOD_ENDING = "GRACE_PERIOD_ENDING"
    SUBSCRIPTION_EXPIRING = "SUBSCRIPTION_EXPIRING"


class AuditAction(str, Enum):
    # Lifecycle
    SUBSCRIBER_PROVISIONED = "SUBSCRIBER_PROVISIONED"
    LIFECYCLE_TRANSITION = "LIFECYCLE_TRANSITION"
    SUBSCRIPTION_SYNCED = "SUBSCRIPTION_SYNCED"
    SUBSCRIPTION_CANCEL_REQUESTED = "SUBSCRIPTION_CANCEL_REQUESTED"

    # Processor events
    STRIPE_EVENT_FAILED = "STRIPE_EVENT_FAILED"

    # Webhooks
    WEBHOOK_DELIVERED = "WEBHOOK_DELIVERED"
    WEBHOOK_REJECTED = "WEBHOOK_REJECTED"
    WEBHOOK_RETRIES_EXHAUSTED = "WEBHOOK_RETRIES_EXHAUSTED"
    WEBHOOK_ENDPOINT_DISABLED = "WEBHOOK_ENDPOINT_DISABLED"

    # Admin
    ADMIN_ACTION = "ADMIN_ACTION"


class ActorRole(str, Enum):
    SUBSCRIBER = "SUBSCRIBER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


# ============================================================================
# LIFECYCLE TRANSITION TABLE
# ============================================================================

# CANCELLED targets additionally require recorded cancellation intent.
ALLOWED_TRANSITIONS: Dict[LifecycleStatus, frozenset] = {
    LifecycleStatus.TRIAL: frozenset({LifecycleStatus.ACTIVE, LifecycleStatus.EXPIRED}),
    LifecycleStatus.ACTIVE: frozenset({
        LifecycleStatus.GRACE_PERIOD,
        LifecycleStatus.CANCELLED,
        LifecycleStatus.EXPIRED,
    }),
    LifecycleStatus.GRACE_PERIOD: frozenset({
        LifecycleStatus.ACTIVE,
        LifecycleStatus.CANCELLED,
        LifecycleStatus.EXPIRED,
    }),
    LifecycleStatus.CANCELLED: frozenset(),
    LifecycleStatus.EXPIRED: frozenset(),
}

TERMINAL_STATUSES = frozenset({LifecycleStatus.CANCELLED, LifecycleStatus.EXPIRED})

# Statuses in which a pending cancellation may be recorded
CANCEL_INTENT_STATUSES = frozenset({LifecycleStatus.ACTIVE, LifecycleStatus.GRACE_PERIOD})

# Event emitted for each status step
TRANSITION_EVENTS: Dict[tuple, WebhookEventType] = {
    (LifecycleStatus.TRIAL, LifecycleStatus.ACTIVE): WebhookEventType.SUBSCRIPTION_ACTIVATED,
    (LifecycleStatus.TRIAL, LifecycleStatus.EXPIRED): WebhookEventType.TRIAL_EXPIRED,
    (LifecycleStatus.ACTIVE, LifecycleStatus.GRACE_PERIOD): WebhookEventType.GRACE_PERIOD_STARTED,
    (LifecycleStatus.ACTIVE, LifecycleStatus.CANCELLED): WebhookEventType.SUBSCRIPTION_CANCELLED,
    (LifecycleStatus.ACTIVE, LifecycleStatus.EXPIRED): WebhookEventType.SUBSCRIPTION_EXPIRED,
    (LifecycleStatus.GRACE_PERIOD, LifecycleStatus.ACTIVE): WebhookEventType.SUBSCRIPTION_ACTIVATED,
    (LifecycleStatus.GRACE_PERIOD, LifecycleStatus.CANCELLED): WebhookEventType.SUBSCRIPTION_CANCELLED,
    (LifecycleStatus.GRACE_PERIOD, LifecycleStatus.EXPIRED): WebhookEventType.GRACE_PERIOD_ENDED,
}


def is_transition_allowed(
    from_status: LifecycleStatus,
    to_status: LifecycleStatus,
    cancel_intent: bool = False,
) -> bool:
    if to_status not in ALLOWED_TRANSITIONS[from_status]:
        return False
    if to_status == LifecycleStatus.CANCELLED and not cancel_intent:
        return False
    return True


# ============================================================================
# DOCUMENTS
# ============================================================================

class SubscriberMirror(BaseModel):
    """Locally persisted lifecycle state for one account."""
    model_config = ConfigDict(extra="ignore")

    subscriber_id: str
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    status: LifecycleStatus = LifecycleStatus.TRIAL
    processor_status: Optional[str] = None
    plan_id: Optional[str] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    cancel_intent: bool = False
    cancel_effective_at: Optional[datetime] = None
    cancellation_occurred: bool = False
    grace_period_ends_at: Optional[datetime] = None
    version: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    last_synced_at: Optional[datetime] = None
    # Events committed with a mirror change and not yet handed to the dispatcher
    pending_events: List[Dict[str, Any]] = Field(default_factory=list)


class WebhookEndpoint(BaseModel):
    """Outbound webhook target configured by an account (read-only here)."""
    model_config = ConfigDict(extra="ignore")

    endpoint_id: str
    account_id: Optional[str] = None
    url: str
    secret: str
    event_types: List[str] = Field(default_factory=list)
    enabled: bool = True


class WebhookEvent(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: WebhookEventType
    subscriber_id: str
    correlation_id: str
    schema_version: str
    occurred_at: datetime
    payload: Dict[str, Any]
    created_at: datetime = Field(default_factory=utc_now)


class DeliveryAttempt(BaseModel):
    """One (event, endpoint) delivery unit with its own retry state."""
    model_config = ConfigDict(extra="ignore")

    attempt_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_id: str
    correlation_id: str
    event_type: WebhookEventType
    endpoint_id: str
    account_id: Optional[str] = None
    subscriber_id: str
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempt_count: int = 0
    last_outcome: Optional[DeliveryOutcome] = None
    last_status_code: Optional[int] = None
    last_error: Optional[str] = None
    next_retry_at: Optional[datetime] = Field(default_factory=utc_now)
    locked_until: Optional[datetime] = None
    history: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    delivered_at: Optional[datetime] = None
    exhausted_at: Optional[datetime] = None


class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[ActorRole] = None
    actor_id: Optional[str] = None
    subscriber_id: Optional[str] = None
    account_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    reason_code: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)
