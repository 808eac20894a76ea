"""Webhook Routes - inbound Stripe events.

POST /api/webhooks/stripe - Stripe webhook endpoint
- Signature verification
- Idempotency (via stripe_events collection)
"""
from fastapi import APIRouter, Header, Request
from services.stripe_webhook_service import stripe_webhook_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


@router.post("/api/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    """
    Handled Events:
    - checkout.session.completed
    - customer.subscription.created / updated / deleted
    - invoice.paid
    - invoice.payment_failed
    """
    try:
        payload = await request.body()

        success, message, details = await stripe_webhook_service.process_webhook(
            payload=payload,
            signature=stripe_signature or ""
        )

        if success:
            return {"status": "received", "message": message, "details": details}
        # Still return 200 to prevent Stripe retries; errors are logged internally
        logger.error(f"Webhook processing failed: {message}")
        return {"status": "error", "message": message}

    except Exception as e:
        logger.exception(f"Stripe webhook error: {e}")
        # Return 200 to prevent Stripe retries - we've logged the error
        return {"status": "error", "message": str(e)}
