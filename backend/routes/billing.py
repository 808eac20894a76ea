"""Billing Routes - Subscription lifecycle for the calling subscriber.

Endpoints:
- GET /api/billing/status - Current mirror (lifecycle status, plan, period, cancellation)
- POST /api/billing/sync - Reconcile with Stripe now
- POST /api/billing/cancel - Cancel at period end, or immediately
"""
from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel
from models import ActorRole, SubscriberMirror
from services.billing_errors import BillingError, Conflict, InvalidTransition, NotFound, ProcessorUnavailable
from services.subscription_reconciler import subscription_reconciler
from middleware import subscriber_route_guard
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/billing", tags=["billing"])


class CancelRequest(BaseModel):
    """Request to cancel subscription."""
    immediate: bool = False


def billing_error_to_http(e: BillingError) -> HTTPException:
    """Map reconciliation errors to HTTP responses."""
    if isinstance(e, NotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, (Conflict, InvalidTransition)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, ProcessorUnavailable):
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment processor unavailable. Please try again."
        )
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Billing error")


def _mirror_response(mirror: SubscriberMirror) -> dict:
    data = mirror.model_dump(mode="json")
    data.pop("version", None)
    data.pop("pending_events", None)
    return data


@router.get("/status")
async def get_billing_status(request: Request):
    """Get the caller's lifecycle status from the local mirror (no Stripe call)."""
    subscriber_id = await subscriber_route_guard(request)
    try:
        mirror = await subscription_reconciler.get_status(subscriber_id)
    except BillingError as e:
        raise billing_error_to_http(e)
    return _mirror_response(mirror)


@router.post("/sync")
async def sync_billing(request: Request):
    """Reconcile the caller's mirror with Stripe (e.g. after returning from checkout)."""
    subscriber_id = await subscriber_route_guard(request)
    try:
        mirror = await subscription_reconciler.sync(
            subscriber_id,
            actor_role=ActorRole.SUBSCRIBER,
            actor_id=subscriber_id,
        )
    except BillingError as e:
        logger.warning(f"Billing sync failed for {subscriber_id}: {e}")
        raise billing_error_to_http(e)
    return {"success": True, "subscription": _mirror_response(mirror)}


@router.post("/cancel")
async def cancel_subscription(request: Request, body: CancelRequest):
    """
    Cancel the caller's subscription.

    immediate=false: access continues until the period end, then CANCELLED.
    immediate=true: Stripe cancels now and the mirror becomes EXPIRED.
    """
    subscriber_id = await subscriber_route_guard(request)
    try:
        mirror = await subscription_reconciler.cancel(
            subscriber_id,
            immediate=body.immediate,
            actor_role=ActorRole.SUBSCRIBER,
            actor_id=subscriber_id,
        )
    except BillingError as e:
        logger.warning(f"Cancel failed for {subscriber_id}: {e}")
        raise billing_error_to_http(e)

    if body.immediate:
        message = "Subscription cancelled immediately"
    else:
        message = "Subscription will cancel at the end of the current billing period"
    return {"success": True, "message": message, "subscription": _mirror_response(mirror)}
