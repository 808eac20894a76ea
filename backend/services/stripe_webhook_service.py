"""Stripe Webhook Service - inbound processor events with idempotency.

Stripe events are hints, never truth: every subscription event triggers a full
sync() of the affected subscriber, which re-reads the canonical subscription.

Key Principles:
1. Idempotency: every Stripe event id is processed exactly once (stripe_events)
2. Signature verification: all events must be signed when a secret is configured
3. Subscriber resolution: metadata.subscriber_id, then subscription ref, then customer ref
4. Audit logging: failed events are recorded for operators

Events Handled:
- checkout.session.completed (links customer/subscription refs to the mirror)
- customer.subscription.created / updated / deleted
- invoice.paid (payment.succeeded; invoice.payment_succeeded fires for the same
  payment and is deliberately not routed)
- invoice.payment_failed (payment.failed)
"""
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import stripe
from pymongo.errors import DuplicateKeyError

from database import database
from models import ActorRole, AuditAction, SubscriberMirror, WebhookEventType, utc_now
from services.event_builder import LifecycleTransition, build_event
from services.subscription_reconciler import SubscriptionReconciler, subscription_reconciler
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


# Webhook secret: support test vs live. If STRIPE_WEBHOOK_SECRET is set, use it; else choose by key prefix.
def _get_webhook_secret() -> str:
    explicit = (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()
    if explicit:
        return explicit
    key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()
    if key.startswith("sk_live_"):
        return (os.getenv("STRIPE_WEBHOOK_SECRET_LIVE") or "").strip()
    if key.startswith("sk_test_"):
        return (os.getenv("STRIPE_WEBHOOK_SECRET_TEST") or "").strip()
    return ""


def _ref(value: Any) -> Optional[str]:
    """Stripe ids arrive either as strings or as expanded objects."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    return None


def _extract_webhook_context(event: Dict) -> Dict[str, Any]:
    """Safe fields for structured logging."""
    obj = event.get("data", {}).get("object", {}) or {}
    metadata = obj.get("metadata", {}) or {}
    is_subscription = obj.get("object") == "subscription"
    return {
        "event_id": event.get("id"),
        "event_type": event.get("type"),
        "livemode": event.get("livemode"),
        "subscriber_id": metadata.get("subscriber_id"),
        "customer_id": _ref(obj.get("customer")),
        "subscription_id": obj.get("id") if is_subscription else _ref(obj.get("subscription")),
    }


def _payment_occurred_at(invoice: Dict, event: Dict, event_type: WebhookEventType) -> datetime:
    """Timestamp that keys the payment event's correlation id.

    A success is keyed on the invoice (paid_at, else invoice creation) so every
    Stripe notification about the same payment collapses into one event. Each
    failed attempt is its own Stripe event, keyed on that event's time.
    """
    candidates = [event.get("created")]
    if event_type == WebhookEventType.PAYMENT_SUCCEEDED:
        paid_at = (invoice.get("status_transitions") or {}).get("paid_at")
        candidates = [paid_at, invoice.get("created")] + candidates
    for value in candidates:
        if value:
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
    return utc_now()


class StripeWebhookService:
    """Stripe webhook handler with idempotency."""

    def __init__(self, reconciler: SubscriptionReconciler = subscription_reconciler):
        self.reconciler = reconciler

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    async def process_webhook(
        self,
        payload: bytes,
        signature: str
    ) -> Tuple[bool, str, Optional[Dict]]:
        """
        Main webhook entry point.

        Returns:
            (success, message, details)
        """
        # Step 1: Verify signature
        webhook_secret = _get_webhook_secret()
        try:
            if webhook_secret:
                stripe.Webhook.construct_event(payload, signature, webhook_secret)
            else:
                logger.warning("STRIPE_WEBHOOK_SECRET (or _TEST/_LIVE) not set - skipping signature verification")
            event = json.loads(payload)
        except stripe.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s (check STRIPE_WEBHOOK_SECRET vs Stripe key mode)", e)
            return False, "Invalid signature", {"error": str(e)}
        except ValueError as e:
            logger.error(f"Webhook parse error: {e}")
            return False, "Invalid payload", {"error": str(e)}

        event_id = event.get("id")
        event_type = event.get("type")
        ctx = _extract_webhook_context(event)
        logger.info(
            "STRIPE_EVENT_RECEIVED event_id=%s event_type=%s livemode=%s subscriber_id=%s customer_id=%s subscription_id=%s",
            event_id, event_type, ctx.get("livemode"), ctx.get("subscriber_id"),
            ctx.get("customer_id"), ctx.get("subscription_id"),
        )

        # Step 2: Idempotency check
        db = database.get_db()
        existing = await db.stripe_events.find_one({"event_id": event_id}, {"_id": 0})

        if existing and existing.get("status") == "PROCESSED":
            logger.info(f"Event {event_id} already processed - skipping")
            return True, "Already processed", {"event_id": event_id}

        # Step 3: Record event
        event_record = {
            "event_id": event_id,
            "type": event_type,
            "created": utc_now(),
            "processed_at": None,
            "status": "PROCESSING",
            "error": None,
            "related_subscriber_id": None,
        }

        if existing:
            await db.stripe_events.update_one({"event_id": event_id}, {"$set": event_record})
        else:
            try:
                await db.stripe_events.insert_one(event_record)
            except DuplicateKeyError:
                logger.info(f"Event {event_id} duplicate insert (race) - skipping")
                return True, "Already processed", {"event_id": event_id}

        # Step 4: Process event
        try:
            result = await self._handle_event(event)

            await db.stripe_events.update_one(
                {"event_id": event_id},
                {
                    "$set": {
                        "status": "PROCESSED",
                        "processed_at": utc_now(),
                        "related_subscriber_id": result.get("subscriber_id"),
                    }
                }
            )
            logger.info(
                "STRIPE_EVENT_PROCESSED event_id=%s event_type=%s subscriber_id=%s",
                event_id, event_type, result.get("subscriber_id"),
            )
            return True, "Processed", result

        except Exception as e:
            logger.error(
                "STRIPE_EVENT_FAILED event_id=%s event_type=%s error=%s",
                event_id, event_type, str(e),
            )
            await db.stripe_events.update_one(
                {"event_id": event_id},
                {
                    "$set": {
                        "status": "FAILED",
                        "processed_at": utc_now(),
                        "error": str(e),
                    }
                }
            )
            await create_audit_log(
                action=AuditAction.STRIPE_EVENT_FAILED,
                actor_role=ActorRole.SYSTEM,
                subscriber_id=ctx.get("subscriber_id"),
                metadata={
                    "event_id": event_id,
                    "event_type": event_type,
                    "error": str(e),
                }
            )
            # Return 200 to prevent Stripe retries (we've logged the failure);
            # the next scheduled sync or event reconciles the subscriber
            return True, "Event logged with error", {"error": str(e), "event_id": event_id}

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def _handle_event(self, event: Dict) -> Dict:
        """Route event to appropriate handler."""
        event_type = event.get("type")
        data = event.get("data", {}).get("object", {})

        handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.created": self._handle_subscription_change,
            "customer.subscription.updated": self._handle_subscription_change,
            "customer.subscription.deleted": self._handle_subscription_change,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_payment_failed,
        }

        handler = handlers.get(event_type)
        if handler:
            return await handler(data, event)

        logger.info(f"Ignoring unhandled event type: {event_type}")
        return {"handled": False, "event_type": event_type}

    async def _resolve_subscriber(
        self,
        obj: Dict,
        subscription_id: Optional[str],
        customer_id: Optional[str],
    ) -> Optional[SubscriberMirror]:
        metadata = obj.get("metadata") or {}
        subscriber_id = metadata.get("subscriber_id")
        if subscriber_id:
            db = database.get_db()
            doc = await db.subscriber_mirrors.find_one({"subscriber_id": subscriber_id}, {"_id": 0})
            if doc:
                return SubscriberMirror(**doc)
        if subscription_id:
            mirror = await self.reconciler.find_by_subscription(subscription_id)
            if mirror:
                return mirror
        if customer_id:
            return await self.reconciler.find_by_customer(customer_id)
        return None

    async def _handle_checkout_completed(self, session: Dict, event: Dict) -> Dict:
        """Link the new Stripe customer/subscription to the mirror, then sync."""
        if session.get("mode") != "subscription":
            return {"handled": False, "reason": "not_subscription_checkout"}

        customer_id = _ref(session.get("customer"))
        subscription_id = _ref(session.get("subscription"))
        subscriber_id = (session.get("metadata") or {}).get("subscriber_id") or session.get("client_reference_id")
        if not subscriber_id:
            mirror = await self._resolve_subscriber(session, subscription_id, customer_id)
            subscriber_id = mirror.subscriber_id if mirror else None
        if not subscriber_id:
            logger.warning(f"Checkout session {session.get('id')} has no resolvable subscriber")
            return {"handled": False, "reason": "subscriber_not_found"}

        await self.reconciler.link_processor_refs(subscriber_id, customer_id, subscription_id)
        mirror = await self.reconciler.sync(subscriber_id)
        return {"handled": True, "subscriber_id": subscriber_id, "status": mirror.status.value}

    async def _handle_subscription_change(self, subscription: Dict, event: Dict) -> Dict:
        subscription_id = subscription.get("id")
        customer_id = _ref(subscription.get("customer"))
        mirror = await self._resolve_subscriber(subscription, subscription_id, customer_id)
        if not mirror:
            logger.warning(
                f"No subscriber for Stripe subscription {subscription_id} (customer {customer_id})"
            )
            return {"handled": False, "reason": "subscriber_not_found"}

        if not mirror.subscription_ref and subscription_id:
            await self.reconciler.link_processor_refs(mirror.subscriber_id, customer_id, subscription_id)
        updated = await self.reconciler.sync(mirror.subscriber_id)
        return {"handled": True, "subscriber_id": updated.subscriber_id, "status": updated.status.value}

    async def _handle_invoice_paid(self, invoice: Dict, event: Dict) -> Dict:
        return await self._handle_invoice(invoice, event, WebhookEventType.PAYMENT_SUCCEEDED)

    async def _handle_payment_failed(self, invoice: Dict, event: Dict) -> Dict:
        return await self._handle_invoice(invoice, event, WebhookEventType.PAYMENT_FAILED)

    async def _handle_invoice(self, invoice: Dict, event: Dict, event_type: WebhookEventType) -> Dict:
        """Sync the subscriber, then emit the payment event."""
        subscription_id = _ref(invoice.get("subscription")) or _ref(
            ((invoice.get("parent") or {}).get("subscription_details") or {}).get("subscription")
        )
        customer_id = _ref(invoice.get("customer"))
        mirror = await self._resolve_subscriber(invoice, subscription_id, customer_id)
        if not mirror:
            logger.warning(f"No subscriber for invoice {invoice.get('id')} (customer {customer_id})")
            return {"handled": False, "reason": "subscriber_not_found"}

        if mirror.subscription_ref or mirror.customer_ref:
            mirror = await self.reconciler.sync(mirror.subscriber_id)

        occurred_at = _payment_occurred_at(invoice, event, event_type)
        extra: Dict[str, Any] = {
            "invoice": {
                "id": invoice.get("id"),
                "currency": invoice.get("currency"),
                "attemptCount": invoice.get("attempt_count"),
            }
        }
        if event_type == WebhookEventType.PAYMENT_SUCCEEDED:
            extra["invoice"]["amountPaid"] = invoice.get("amount_paid")
        else:
            extra["invoice"]["amountDue"] = invoice.get("amount_due")
            last_error = (invoice.get("last_finalization_error") or {}).get("message")
            extra["failure"] = {
                "message": last_error,
                "nextPaymentAttempt": invoice.get("next_payment_attempt"),
            }

        payment_event = build_event(
            LifecycleTransition(
                event_type=event_type,
                occurred_at=occurred_at,
                previous_status=mirror.status,
                new_status=mirror.status,
                reason=event.get("type"),
                extra=extra,
            ),
            mirror.subscriber_id,
            mirror,
        )
        await self.reconciler.publish_events([payment_event])
        return {"handled": True, "subscriber_id": mirror.subscriber_id, "status": mirror.status.value}


# Singleton instance
stripe_webhook_service = StripeWebhookService()
