"""Subscription Reconciler - brings the local mirror in line with Stripe.

Single entry point for lifecycle mutations driven by the processor:
- sync(): fetch canonical subscription, map status, overwrite mirror fields,
  emit one event per status step
- cancel(): record intent (period end) or cancel now, then sync
- provision(): create the TRIAL mirror for a new account

Key Principles:
- Stripe is the source of truth; the mirror is a derived cache
- Per-subscriber work is serialized (subscriber_locks) and every write is
  guarded by the mirror's version, so concurrent writers surface as Conflict
- Events are written into the mirror's outbox (pending_events) in the same
  atomic write as the change that implies them; a failed write emits nothing,
  and events the dispatcher could not take are flushed by the retry sweep
- Terminal mirrors (CANCELLED / EXPIRED) never change status again
"""
import asyncio
import logging
import os
from datetime import timedelta
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from models import (
    ActorRole,
    AuditAction,
    CANCEL_INTENT_STATUSES,
    LifecycleStatus,
    SubscriberMirror,
    TERMINAL_STATUSES,
    TRANSITION_EVENTS,
    WebhookEvent,
    WebhookEventType,
    is_transition_allowed,
    utc_now,
)
from services.billing_errors import BillingError, Conflict, InvalidTransition, NotFound
from services.event_builder import LifecycleTransition, build_event
from services.plan_registry import plan_registry
from services.processor_client import (
    CanonicalSubscription,
    StripeProcessorClient,
    processor_client,
    select_most_relevant,
)
from services.webhook_dispatcher import WebhookDispatcher, webhook_dispatcher
from utils.audit import create_audit_log
from utils.locks import subscriber_locks

logger = logging.getLogger(__name__)

TRIAL_DAYS = int(os.getenv("TRIAL_DAYS", "30"))
GRACE_PERIOD_DAYS = int(os.getenv("GRACE_PERIOD_DAYS", "3"))
RECONCILE_CONCURRENCY = int(os.getenv("SCHEDULER_CONCURRENCY", "10"))

# Stripe subscription status -> lifecycle bucket
ACTIVE_PROCESSOR_STATUSES = frozenset({"trialing", "active"})
GRACE_PROCESSOR_STATUSES = frozenset({"past_due", "unpaid", "incomplete", "paused"})
ENDED_PROCESSOR_STATUSES = frozenset({"canceled", "incomplete_expired"})

# Mirror fields compared for the sync audit entry
SYNCED_FIELDS = (
    "status", "processor_status", "subscription_ref", "customer_ref", "plan_id",
    "period_start", "period_end", "cancel_intent", "cancel_effective_at",
    "cancellation_occurred", "grace_period_ends_at",
)


def validate_transition(
    from_status: LifecycleStatus,
    to_status: LifecycleStatus,
    cancel_intent: bool = False,
) -> None:
    if not is_transition_allowed(from_status, to_status, cancel_intent):
        raise InvalidTransition(from_status, to_status)


def map_processor_status(
    processor_status: str,
    cancel_intent: bool,
    force_expired: bool = False,
) -> LifecycleStatus:
    """Lifecycle status implied by a Stripe subscription status."""
    if force_expired:
        return LifecycleStatus.EXPIRED
    if processor_status in ACTIVE_PROCESSOR_STATUSES:
        return LifecycleStatus.ACTIVE
    if processor_status in GRACE_PROCESSOR_STATUSES:
        return LifecycleStatus.GRACE_PERIOD
    if processor_status in ENDED_PROCESSOR_STATUSES:
        return LifecycleStatus.CANCELLED if cancel_intent else LifecycleStatus.EXPIRED
    logger.warning(f"Unknown Stripe subscription status '{processor_status}', treating as grace period")
    return LifecycleStatus.GRACE_PERIOD


def plan_status_path(
    from_status: LifecycleStatus,
    to_status: LifecycleStatus,
    cancel_intent: bool = False,
) -> List[LifecycleStatus]:
    """Legal steps from from_status to to_status, routed through ACTIVE when needed.

    TRIAL -> GRACE_PERIOD becomes [ACTIVE, GRACE_PERIOD]. Raises InvalidTransition
    when no legal path exists.
    """
    if from_status == to_status:
        return []
    if is_transition_allowed(from_status, to_status, cancel_intent):
        return [to_status]
    if (
        from_status != LifecycleStatus.ACTIVE
        and is_transition_allowed(from_status, LifecycleStatus.ACTIVE, cancel_intent)
        and is_transition_allowed(LifecycleStatus.ACTIVE, to_status, cancel_intent)
    ):
        return [LifecycleStatus.ACTIVE, to_status]
    raise InvalidTransition(from_status, to_status)


def _to_doc(updates: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (v.value if isinstance(v, LifecycleStatus) else v) for k, v in updates.items()}


def _event_doc(event: WebhookEvent) -> Dict[str, Any]:
    doc = event.model_dump()
    doc["type"] = event.type.value
    return doc


def _snapshot(mirror: SubscriberMirror) -> Dict[str, Any]:
    data = mirror.model_dump(mode="json")
    return {k: data.get(k) for k in SYNCED_FIELDS}


class SubscriptionReconciler:
    """Reconciles subscriber mirrors against Stripe and emits lifecycle events."""

    def __init__(
        self,
        processor: StripeProcessorClient = processor_client,
        dispatcher: WebhookDispatcher = webhook_dispatcher,
    ):
        self.processor = processor
        self.dispatcher = dispatcher

    # =========================================================================
    # Reads
    # =========================================================================

    async def _load(self, subscriber_id: str) -> SubscriberMirror:
        db = database.get_db()
        doc = await db.subscriber_mirrors.find_one({"subscriber_id": subscriber_id}, {"_id": 0})
        if not doc:
            raise NotFound(f"No billing mirror for subscriber {subscriber_id}")
        return SubscriberMirror(**doc)

    async def get_status(self, subscriber_id: str) -> SubscriberMirror:
        return await self._load(subscriber_id)

    async def find_by_customer(self, customer_ref: str) -> Optional[SubscriberMirror]:
        db = database.get_db()
        doc = await db.subscriber_mirrors.find_one({"customer_ref": customer_ref}, {"_id": 0})
        return SubscriberMirror(**doc) if doc else None

    async def find_by_subscription(self, subscription_ref: str) -> Optional[SubscriberMirror]:
        db = database.get_db()
        doc = await db.subscriber_mirrors.find_one({"subscription_ref": subscription_ref}, {"_id": 0})
        return SubscriberMirror(**doc) if doc else None

    # =========================================================================
    # Writes
    # =========================================================================

    async def _commit(
        self,
        mirror: SubscriberMirror,
        updates: Dict[str, Any],
        events: Optional[List[WebhookEvent]] = None,
    ) -> SubscriberMirror:
        """Single atomic write guarded by the version we read.

        events are appended to the mirror's outbox in the same write, so a
        committed change never loses the events it implies.
        """
        db = database.get_db()
        update: Dict[str, Any] = {"$set": _to_doc(updates), "$inc": {"version": 1}}
        if events:
            update["$push"] = {"pending_events": {"$each": [_event_doc(e) for e in events]}}
        doc = await db.subscriber_mirrors.find_one_and_update(
            {"subscriber_id": mirror.subscriber_id, "version": mirror.version},
            update,
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            logger.warning(
                "MIRROR_CONFLICT subscriber_id=%s expected_version=%s",
                mirror.subscriber_id, mirror.version,
            )
            raise Conflict(f"Mirror for {mirror.subscriber_id} changed concurrently (version {mirror.version})")
        return SubscriberMirror(**doc)

    async def dispatch_events(self, events: List[WebhookEvent]) -> int:
        """Hand outboxed events to the dispatcher, in order; returns how many went out.

        An event leaves the outbox only once the dispatcher has taken it. The
        first failure stops the batch so later events never overtake it; the
        retry sweep flushes what is left.
        """
        db = database.get_db()
        handed_over = 0
        for event in events:
            try:
                await self.dispatcher.trigger(event)
                await db.subscriber_mirrors.update_one(
                    {"subscriber_id": event.subscriber_id},
                    {"$pull": {"pending_events": {"correlation_id": event.correlation_id}}},
                )
            except Exception as e:
                logger.error(
                    "WEBHOOK_DISPATCH_FAILED type=%s correlation_id=%s subscriber_id=%s error=%s",
                    event.type.value, event.correlation_id, event.subscriber_id, e,
                )
                break
            handed_over += 1
        return handed_over

    async def publish_events(self, events: List[WebhookEvent]) -> int:
        """Outbox and dispatch events that accompany no mirror change (notices, payments)."""
        db = database.get_db()
        for event in events:
            await db.subscriber_mirrors.update_one(
                {"subscriber_id": event.subscriber_id},
                {"$push": {"pending_events": _event_doc(event)}},
            )
        return await self.dispatch_events(events)

    async def flush_pending_events(self, limit: int = 500) -> int:
        """Dispatch events still sitting in mirror outboxes. Returns how many went out."""
        db = database.get_db()
        docs = await db.subscriber_mirrors.find(
            {"pending_events": {"$exists": True, "$ne": []}},
            {"_id": 0, "subscriber_id": 1},
        ).limit(limit).to_list(limit)

        flushed = 0
        for doc in docs:
            subscriber_id = doc["subscriber_id"]
            async with subscriber_locks.hold(subscriber_id):
                current = await db.subscriber_mirrors.find_one(
                    {"subscriber_id": subscriber_id},
                    {"_id": 0, "pending_events": 1},
                )
                pending = (current or {}).get("pending_events") or []
                if not pending:
                    continue
                logger.info(f"Flushing {len(pending)} outboxed event(s) for {subscriber_id}")
                flushed += await self.dispatch_events([WebhookEvent(**e) for e in pending])
        return flushed

    async def _audit_transition(
        self,
        subscriber_id: str,
        previous: LifecycleStatus,
        new: LifecycleStatus,
        event_type: WebhookEventType,
        reason: Optional[str],
        actor_role: ActorRole = ActorRole.SYSTEM,
        actor_id: Optional[str] = None,
    ) -> None:
        logger.info(
            "LIFECYCLE_TRANSITION subscriber_id=%s from=%s to=%s event=%s reason=%s",
            subscriber_id, previous.value, new.value, event_type.value, reason,
        )
        await create_audit_log(
            action=AuditAction.LIFECYCLE_TRANSITION,
            actor_role=actor_role,
            actor_id=actor_id,
            subscriber_id=subscriber_id,
            resource_type="subscriber_mirror",
            resource_id=subscriber_id,
            before_state={"status": previous.value},
            after_state={"status": new.value},
            metadata={"event_type": event_type.value},
            reason_code=reason,
            auto_diff=False,
        )

    async def transition(
        self,
        mirror: SubscriberMirror,
        to_status: LifecycleStatus,
        occurred_at,
        reason: Optional[str] = None,
        extra_updates: Optional[Dict[str, Any]] = None,
    ) -> SubscriberMirror:
        """Apply one legal status step, then emit its event.

        Caller holds subscriber_locks for mirror.subscriber_id.
        """
        validate_transition(mirror.status, to_status, mirror.cancel_intent)
        updates: Dict[str, Any] = {"status": to_status, "updated_at": utc_now()}
        if to_status not in CANCEL_INTENT_STATUSES:
            updates["cancel_intent"] = False
        if to_status == LifecycleStatus.CANCELLED:
            updates["cancellation_occurred"] = True
        if to_status != LifecycleStatus.GRACE_PERIOD and mirror.status == LifecycleStatus.GRACE_PERIOD:
            updates["grace_period_ends_at"] = None
        if extra_updates:
            updates.update(extra_updates)

        event_type = TRANSITION_EVENTS[(mirror.status, to_status)]
        event = build_event(
            LifecycleTransition(
                event_type=event_type,
                occurred_at=occurred_at,
                previous_status=mirror.status,
                new_status=to_status,
                reason=reason,
            ),
            mirror.subscriber_id,
            mirror.model_copy(update=updates),
        )
        updated = await self._commit(mirror, updates, [event])
        await self._audit_transition(mirror.subscriber_id, mirror.status, to_status, event_type, reason)
        await self.dispatch_events([event])
        return updated

    # =========================================================================
    # Provisioning
    # =========================================================================

    async def provision(
        self,
        subscriber_id: str,
        customer_ref: Optional[str] = None,
        plan_id: Optional[str] = None,
        trial_days: int = TRIAL_DAYS,
        now=None,
    ) -> SubscriberMirror:
        """Create the TRIAL mirror for a new account. Idempotent."""
        db = database.get_db()
        now = now or utc_now()
        mirror = SubscriberMirror(
            subscriber_id=subscriber_id,
            customer_ref=customer_ref,
            plan_id=plan_id,
            status=LifecycleStatus.TRIAL,
            trial_start=now,
            trial_end=now + timedelta(days=trial_days),
            created_at=now,
            updated_at=now,
        )
        event = build_event(
            LifecycleTransition(
                event_type=WebhookEventType.TRIAL_STARTED,
                occurred_at=mirror.trial_start,
                new_status=LifecycleStatus.TRIAL,
            ),
            subscriber_id,
            mirror,
        )
        doc = mirror.model_dump()
        doc["status"] = mirror.status.value
        doc["pending_events"] = [_event_doc(event)]
        if customer_ref is None:
            # customer_ref is a sparse unique index; absent, not null
            doc.pop("customer_ref")
        try:
            await db.subscriber_mirrors.insert_one(doc)
        except DuplicateKeyError:
            logger.info(f"Subscriber {subscriber_id} already provisioned")
            return await self._load(subscriber_id)

        logger.info(
            "SUBSCRIBER_PROVISIONED subscriber_id=%s trial_end=%s plan=%s",
            subscriber_id, mirror.trial_end.isoformat(), plan_id,
        )
        await create_audit_log(
            action=AuditAction.SUBSCRIBER_PROVISIONED,
            actor_role=ActorRole.SYSTEM,
            subscriber_id=subscriber_id,
            resource_type="subscriber_mirror",
            resource_id=subscriber_id,
            metadata={"trial_days": trial_days, "plan_id": plan_id},
        )
        await self.dispatch_events([event])
        return mirror

    async def link_processor_refs(
        self,
        subscriber_id: str,
        customer_ref: Optional[str],
        subscription_ref: Optional[str],
    ) -> SubscriberMirror:
        """Attach Stripe customer/subscription ids after checkout. Status is left to sync()."""
        async with subscriber_locks.hold(subscriber_id):
            mirror = await self._load(subscriber_id)
            updates: Dict[str, Any] = {}
            if customer_ref and customer_ref != mirror.customer_ref:
                updates["customer_ref"] = customer_ref
            if subscription_ref and subscription_ref != mirror.subscription_ref:
                updates["subscription_ref"] = subscription_ref
            if not updates:
                return mirror
            updates["updated_at"] = utc_now()
            logger.info(f"Linked Stripe refs for {subscriber_id}: {updates}")
            return await self._commit(mirror, updates)

    # =========================================================================
    # Sync
    # =========================================================================

    async def _fetch_canonical(self, mirror: SubscriberMirror) -> Optional[CanonicalSubscription]:
        if mirror.subscription_ref:
            canonical = await self.processor.retrieve_subscription(mirror.subscription_ref)
            if canonical:
                return canonical
            logger.warning(
                f"Subscription {mirror.subscription_ref} missing in Stripe for {mirror.subscriber_id}; "
                f"falling back to customer lookup"
            )
        if mirror.customer_ref:
            subscriptions = await self.processor.list_subscriptions(mirror.customer_ref)
            return select_most_relevant(subscriptions)
        return None

    async def sync(
        self,
        subscriber_id: str,
        actor_role: ActorRole = ActorRole.SYSTEM,
        actor_id: Optional[str] = None,
    ) -> SubscriberMirror:
        """Reconcile one subscriber against Stripe. Returns the updated mirror."""
        async with subscriber_locks.hold(subscriber_id):
            mirror = await self._load(subscriber_id)
            canonical = await self._fetch_canonical(mirror)
            return await self._reconcile(mirror, canonical, actor_role=actor_role, actor_id=actor_id)

    async def reconcile_all(self, concurrency: int = RECONCILE_CONCURRENCY) -> Dict[str, int]:
        """Sync every live subscriber linked to Stripe. Failures are counted, not raised."""
        db = database.get_db()
        live_statuses = [s.value for s in LifecycleStatus if s not in TERMINAL_STATUSES]
        docs = await db.subscriber_mirrors.find(
            {"status": {"$in": live_statuses}, "subscription_ref": {"$ne": None}},
            {"_id": 0, "subscriber_id": 1},
        ).to_list(None)

        result = {"synced": 0, "failed": 0}
        semaphore = asyncio.Semaphore(concurrency)

        async def _one(subscriber_id: str):
            async with semaphore:
                try:
                    await self.sync(subscriber_id)
                    result["synced"] += 1
                except BillingError as e:
                    result["failed"] += 1
                    logger.warning(f"Reconciliation failed for {subscriber_id}: {e}")

        await asyncio.gather(*[_one(doc["subscriber_id"]) for doc in docs])
        return result

    async def _reconcile(
        self,
        mirror: SubscriberMirror,
        canonical: Optional[CanonicalSubscription],
        force_expired: bool = False,
        actor_role: ActorRole = ActorRole.SYSTEM,
        actor_id: Optional[str] = None,
    ) -> SubscriberMirror:
        now = utc_now()

        if canonical is None:
            if mirror.status == LifecycleStatus.TRIAL and not mirror.subscription_ref:
                # Trial never linked to a subscription: nothing to reconcile
                return await self._commit(mirror, {"last_synced_at": now})
            raise NotFound(f"No Stripe subscription found for subscriber {mirror.subscriber_id}")

        intent = mirror.cancel_intent or canonical.cancel_at_period_end
        target = map_processor_status(canonical.status, intent, force_expired=force_expired)

        if mirror.status in TERMINAL_STATUSES:
            if target != mirror.status:
                logger.warning(
                    "TERMINAL_MIRROR_DISCREPANCY subscriber_id=%s mirror_status=%s stripe_status=%s",
                    mirror.subscriber_id, mirror.status.value, canonical.status,
                )
            target = mirror.status
            path: List[LifecycleStatus] = []
        else:
            path = plan_status_path(mirror.status, target, intent)

        updates = self._fields_from_canonical(mirror, canonical, target, now)
        projected = mirror.model_copy(update=updates)
        reason = f"stripe_status:{canonical.status}"

        events: List[WebhookEvent] = []
        previous = mirror.status
        for step in path:
            events.append(build_event(
                LifecycleTransition(
                    event_type=TRANSITION_EVENTS[(previous, step)],
                    occurred_at=now,
                    previous_status=previous,
                    new_status=step,
                    reason=reason,
                ),
                mirror.subscriber_id,
                projected.model_copy(update={"status": step}),
            ))
            previous = step

        renewal = self._renewal_event(mirror, projected)
        if renewal:
            events.append(renewal)

        updated = await self._commit(mirror, updates, events)

        previous = mirror.status
        for step in path:
            await self._audit_transition(
                updated.subscriber_id, previous, step, TRANSITION_EVENTS[(previous, step)],
                reason, actor_role, actor_id,
            )
            previous = step

        before, after = _snapshot(mirror), _snapshot(updated)
        if before != after:
            await create_audit_log(
                action=AuditAction.SUBSCRIPTION_SYNCED,
                actor_role=actor_role,
                actor_id=actor_id,
                subscriber_id=updated.subscriber_id,
                resource_type="subscriber_mirror",
                resource_id=updated.subscriber_id,
                before_state=before,
                after_state=after,
                metadata={"stripe_subscription_id": canonical.id, "stripe_status": canonical.status},
            )

        logger.info(
            "SUBSCRIPTION_SYNCED subscriber_id=%s status=%s stripe_status=%s events=%s",
            updated.subscriber_id, updated.status.value, canonical.status, len(events),
        )
        await self.dispatch_events(events)
        return updated

    def _fields_from_canonical(
        self,
        mirror: SubscriberMirror,
        canonical: CanonicalSubscription,
        status: LifecycleStatus,
        now,
    ) -> Dict[str, Any]:
        """All mirror fields derived from Stripe. Trial window is never overwritten."""
        cancel_intent = status in CANCEL_INTENT_STATUSES and canonical.cancel_at_period_end
        if cancel_intent:
            cancel_effective_at = canonical.cancel_at or canonical.current_period_end
        elif status in TERMINAL_STATUSES:
            cancel_effective_at = canonical.ended_at or canonical.canceled_at or mirror.cancel_effective_at or now
        else:
            cancel_effective_at = None

        if status == LifecycleStatus.GRACE_PERIOD:
            if mirror.status == LifecycleStatus.GRACE_PERIOD and mirror.grace_period_ends_at:
                grace_period_ends_at = mirror.grace_period_ends_at
            else:
                grace_period_ends_at = now + timedelta(days=GRACE_PERIOD_DAYS)
        else:
            grace_period_ends_at = None

        updates = {
            "status": status,
            "processor_status": canonical.status,
            "subscription_ref": canonical.id,
            "plan_id": plan_registry.resolve_plan_id(canonical.price_id) or mirror.plan_id,
            "period_start": canonical.current_period_start,
            "period_end": canonical.current_period_end,
            "cancel_intent": cancel_intent,
            "cancel_effective_at": cancel_effective_at,
            "cancellation_occurred": status in TERMINAL_STATUSES and (
                mirror.cancellation_occurred or canonical.status in ENDED_PROCESSOR_STATUSES
            ),
            "grace_period_ends_at": grace_period_ends_at,
            "last_synced_at": now,
            "updated_at": now,
        }
        customer_ref = canonical.customer or mirror.customer_ref
        if customer_ref:
            # Sparse unique index: never write an explicit null
            updates["customer_ref"] = customer_ref
        return updates

    def _renewal_event(self, before: SubscriberMirror, after: SubscriberMirror) -> Optional[WebhookEvent]:
        """ACTIVE -> ACTIVE with the billing period moved forward."""
        if before.status != LifecycleStatus.ACTIVE or after.status != LifecycleStatus.ACTIVE:
            return None
        if not before.period_end or not after.period_end or after.period_end <= before.period_end:
            return None
        # Keyed on the new period start so repeated syncs yield the same correlation id
        occurred_at = after.period_start or before.period_end
        return build_event(
            LifecycleTransition(
                event_type=WebhookEventType.SUBSCRIPTION_RENEWED,
                occurred_at=occurred_at,
                previous_status=LifecycleStatus.ACTIVE,
                new_status=LifecycleStatus.ACTIVE,
                reason="period_advanced",
            ),
            after.subscriber_id,
            after,
        )

    # =========================================================================
    # Cancel
    # =========================================================================

    async def cancel(
        self,
        subscriber_id: str,
        immediate: bool = False,
        actor_role: ActorRole = ActorRole.SUBSCRIBER,
        actor_id: Optional[str] = None,
    ) -> SubscriberMirror:
        """Cancel at period end (intent) or immediately (forces EXPIRED)."""
        async with subscriber_locks.hold(subscriber_id):
            mirror = await self._load(subscriber_id)
            if mirror.status in TERMINAL_STATUSES:
                raise InvalidTransition(
                    mirror.status,
                    LifecycleStatus.EXPIRED if immediate else LifecycleStatus.CANCELLED,
                    f"Subscription for {subscriber_id} already {mirror.status.value}",
                )
            if not mirror.subscription_ref:
                raise NotFound(f"Subscriber {subscriber_id} has no subscription to cancel")

            if immediate:
                canonical = await self.processor.cancel_now(mirror.subscription_ref)
            else:
                canonical = await self.processor.request_cancel_at_period_end(mirror.subscription_ref)

            logger.info(
                "SUBSCRIPTION_CANCEL_REQUESTED subscriber_id=%s immediate=%s subscription=%s",
                subscriber_id, immediate, mirror.subscription_ref,
            )
            await create_audit_log(
                action=AuditAction.SUBSCRIPTION_CANCEL_REQUESTED,
                actor_role=actor_role,
                actor_id=actor_id,
                subscriber_id=subscriber_id,
                resource_type="subscriber_mirror",
                resource_id=subscriber_id,
                metadata={"immediate": immediate, "stripe_subscription_id": mirror.subscription_ref},
            )
            return await self._reconcile(
                mirror, canonical, force_expired=immediate, actor_role=actor_role, actor_id=actor_id,
            )


# Singleton instance
subscription_reconciler = SubscriptionReconciler()
