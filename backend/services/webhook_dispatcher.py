"""Webhook Dispatcher - fans one event out to every subscribed endpoint.

trigger() persists the event (the unique correlation_id index makes emission
idempotent), creates one PENDING Delivery Attempt per enabled endpoint and
schedules each send as its own task. It never waits for, or reports, delivery
outcomes. Attempts whose task dies with the process are picked up by the retry
sweep because they are persisted PENDING with next_retry_at already due.

The event document carries a `dispatched` flag that is set only once every
attempt exists. Triggering an event that is stored but not yet dispatched
(the fan-out died part way) resumes the fan-out instead of dropping it.
"""
import asyncio
import logging
import os
from typing import List, Optional, Set

from pymongo.errors import DuplicateKeyError

from database import database
from models import DeliveryAttempt, WebhookEvent
from services.delivery_engine import DeliveryEngine, delivery_engine

logger = logging.getLogger(__name__)

MAX_CONCURRENT_DELIVERIES = int(os.getenv("WEBHOOK_MAX_CONCURRENCY", "20"))


class WebhookDispatcher:

    def __init__(self, engine: DeliveryEngine, max_concurrency: int = MAX_CONCURRENT_DELIVERIES):
        self.engine = engine
        self.max_concurrency = max_concurrency
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._tasks: Set[asyncio.Task] = set()

    def _get_semaphore(self) -> asyncio.Semaphore:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrency)
        return self._semaphore

    async def trigger(self, event: WebhookEvent) -> List[str]:
        """Record the event and queue one delivery per subscribed endpoint.

        Returns the attempt ids created by this call; [] when the event was
        already fully dispatched. Errors other than a duplicate attempt
        propagate and leave the event undispatched, so a later trigger resumes it.
        """
        db = database.get_db()

        event_doc = event.model_dump()
        event_doc["type"] = event.type.value
        event_doc["endpoint_count"] = 0
        event_doc["dispatched"] = False
        try:
            await db.webhook_events.insert_one(event_doc)
        except DuplicateKeyError:
            existing = await db.webhook_events.find_one(
                {"correlation_id": event.correlation_id},
                {"_id": 0, "dispatched": 1},
            )
            if existing is None or existing.get("dispatched", True):
                logger.info(
                    "WEBHOOK_EVENT_DUPLICATE correlation_id=%s type=%s subscriber_id=%s",
                    event.correlation_id, event.type.value, event.subscriber_id,
                )
                return []
            logger.warning(
                "WEBHOOK_EVENT_RESUMED correlation_id=%s type=%s subscriber_id=%s",
                event.correlation_id, event.type.value, event.subscriber_id,
            )

        endpoints = await db.webhook_endpoints.find(
            {"enabled": True, "event_types": event.type.value},
            {"_id": 0},
        ).to_list(1000)

        attempt_ids: List[str] = []
        for endpoint in endpoints:
            attempt = DeliveryAttempt(
                event_id=event.event_id,
                correlation_id=event.correlation_id,
                event_type=event.type,
                endpoint_id=endpoint["endpoint_id"],
                account_id=endpoint.get("account_id"),
                subscriber_id=event.subscriber_id,
            )
            try:
                attempt_doc = attempt.model_dump()
                attempt_doc["event_type"] = attempt.event_type.value
                attempt_doc["status"] = attempt.status.value
                await db.webhook_deliveries.insert_one(attempt_doc)
            except DuplicateKeyError:
                logger.info(f"Delivery for event {event.event_id} -> {endpoint['endpoint_id']} already exists")
                continue
            attempt_ids.append(attempt.attempt_id)

        endpoint_count = await db.webhook_deliveries.count_documents({"event_id": event.event_id})
        await db.webhook_events.update_one(
            {"event_id": event.event_id},
            {"$set": {"endpoint_count": endpoint_count, "dispatched": True}},
        )

        logger.info(
            "WEBHOOK_EVENT_DISPATCHED type=%s correlation_id=%s subscriber_id=%s endpoints=%s",
            event.type.value, event.correlation_id, event.subscriber_id, len(attempt_ids),
        )

        for attempt_id in attempt_ids:
            self._schedule(attempt_id)
        return attempt_ids

    def _schedule(self, attempt_id: str) -> None:
        task = asyncio.create_task(self._deliver(attempt_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, attempt_id: str) -> None:
        async with self._get_semaphore():
            try:
                await self.engine.send(attempt_id)
            except Exception as e:
                # Attempt stays PENDING; the retry sweep resubmits it
                logger.exception(f"Immediate delivery of {attempt_id} failed: {e}")

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every scheduled delivery task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


# Singleton instance
webhook_dispatcher = WebhookDispatcher(delivery_engine)
