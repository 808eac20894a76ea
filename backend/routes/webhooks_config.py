"""Webhook Delivery Routes - read-only view of outbound webhooks for an account.

Endpoint configuration (create/edit) belongs to account settings; these routes
only report on deliveries and send test events.

Endpoints:
- GET /api/webhooks/events - Available event types and signing details
- GET /api/webhooks/stats - Delivery statistics
- GET /api/webhooks/{endpoint_id}/deliveries - Recent delivery attempts
- POST /api/webhooks/{endpoint_id}/test - Send a signed test event
"""
from fastapi import APIRouter, HTTPException, Request, status
from typing import Optional
from middleware import subscriber_route_guard
from models import DeliveryStatus, WebhookEventType
from services import delivery_engine as engine_module
from services.delivery_engine import delivery_engine
from services.event_builder import SCHEMA_VERSION
from services.webhook_signing import (
    ATTEMPT_HEADER,
    DELIVERY_HEADER,
    DEFAULT_MAX_AGE_SECONDS,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
)
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


EVENT_DESCRIPTIONS = {
    WebhookEventType.TRIAL_STARTED: "A new account started its free trial",
    WebhookEventType.TRIAL_EXPIRING: "The trial ends within the notice window",
    WebhookEventType.TRIAL_EXPIRED: "The trial ended without a paid subscription",
    WebhookEventType.SUBSCRIPTION_ACTIVATED: "A paid subscription became active (or recovered from a grace period)",
    WebhookEventType.SUBSCRIPTION_RENEWED: "The subscription moved into a new billing period",
    WebhookEventType.SUBSCRIPTION_EXPIRING: "A pending cancellation takes effect within the notice window",
    WebhookEventType.SUBSCRIPTION_EXPIRED: "The subscription ended without a prior cancellation request",
    WebhookEventType.SUBSCRIPTION_CANCELLED: "A requested cancellation took effect",
    WebhookEventType.GRACE_PERIOD_STARTED: "A payment problem started the grace period",
    WebhookEventType.GRACE_PERIOD_ENDING: "The grace period ends within the notice window",
    WebhookEventType.GRACE_PERIOD_ENDED: "The grace period ended and access expired",
    WebhookEventType.PAYMENT_SUCCEEDED: "An invoice was paid",
    WebhookEventType.PAYMENT_FAILED: "An invoice payment attempt failed",
}


@router.get("/events")
async def get_available_events(request: Request):
    """Get list of available webhook event types with descriptions."""
    await subscriber_route_guard(request)

    return {
        "events": [
            {"type": event_type.value, "description": EVENT_DESCRIPTIONS[event_type]}
            for event_type in WebhookEventType
        ],
        "schema_version": SCHEMA_VERSION,
        "retry_policy": {
            "max_attempts": engine_module.MAX_ATTEMPTS,
            "backoff": "exponential with jitter",
            "backoff_base_seconds": engine_module.BACKOFF_BASE_SECONDS,
            "backoff_max_seconds": engine_module.BACKOFF_MAX_SECONDS,
            "timeout_seconds": engine_module.REQUEST_TIMEOUT_SECONDS,
            "auto_disable_after_failures": engine_module.AUTO_DISABLE_AFTER_EXHAUSTED,
        },
        "signature_info": {
            "algorithm": "HMAC-SHA256",
            "header": SIGNATURE_HEADER,
            "format": "sha256={hex_digest}",
            "signed_content": "{timestamp}.{raw_body}",
            "timestamp_header": TIMESTAMP_HEADER,
            "max_age_seconds": DEFAULT_MAX_AGE_SECONDS,
            "other_headers": [EVENT_HEADER, DELIVERY_HEADER, ATTEMPT_HEADER],
        },
    }


@router.get("/stats")
async def get_webhook_stats(request: Request):
    """Get webhook delivery statistics for the account."""
    account_id = await subscriber_route_guard(request)

    try:
        return await delivery_engine.get_endpoint_stats(account_id)
    except Exception as e:
        logger.error(f"Get webhook stats error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get statistics"
        )


@router.get("/{endpoint_id}/deliveries")
async def list_endpoint_deliveries(
    request: Request,
    endpoint_id: str,
    status_filter: Optional[str] = None,
    limit: int = 50,
):
    """Recent delivery attempts for one of the account's endpoints."""
    account_id = await subscriber_route_guard(request)

    if status_filter:
        try:
            status_filter = DeliveryStatus(status_filter.upper()).value
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid status. Use one of: {', '.join(s.value for s in DeliveryStatus)}"
            )

    deliveries = await delivery_engine.list_deliveries(
        endpoint_id,
        account_id=account_id,
        status=status_filter,
        limit=max(1, min(limit, 200)),
    )
    return {"endpoint_id": endpoint_id, "deliveries": deliveries, "count": len(deliveries)}


@router.post("/{endpoint_id}/test")
async def test_webhook(request: Request, endpoint_id: str):
    """Send a signed test event. Single attempt, not retried."""
    account_id = await subscriber_route_guard(request)

    result = await delivery_engine.send_test(endpoint_id, account_id=account_id)
    if not result.get("success") and result.get("error") == "Webhook endpoint not found":
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Webhook endpoint not found"
        )
    return result
