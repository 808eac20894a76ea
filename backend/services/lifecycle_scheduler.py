"""Lifecycle Scheduler - time-based transitions and advance notices.

Runs periodically over every non-terminal mirror. Never calls Stripe: it only
acts on deadlines already stored on the mirror.

    TRIAL          trial_end passed          -> EXPIRED (trial.expired)
                   trial_end within window   -> trial.expiring (once per trial window)
    GRACE_PERIOD   grace deadline passed     -> EXPIRED (grace_period.ended)
                   deadline within window    -> grace_period.ending (once per deadline)
    ACTIVE+intent  cancellation date passed  -> CANCELLED (subscription.cancelled)
                   date within window        -> subscription.expiring (once per date)

"Once" is enforced by a notice marker in lifecycle_notices (unique notice_key)
inserted before the event is emitted, so repeated or overlapping scans never
send a notice twice.
"""
import asyncio
import logging
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pymongo.errors import DuplicateKeyError

from database import database
from models import (
    LifecycleStatus,
    NoticeType,
    SubscriberMirror,
    TERMINAL_STATUSES,
    WebhookEventType,
    utc_now,
)
from services.billing_errors import Conflict, NotFound
from services.event_builder import LifecycleTransition, build_event, normalize_timestamp
from services.subscription_reconciler import SubscriptionReconciler, subscription_reconciler
from utils.locks import subscriber_locks

logger = logging.getLogger(__name__)

NOTICE_WINDOW_DAYS = int(os.getenv("NOTICE_WINDOW_DAYS", "3"))
SCHEDULER_CONCURRENCY = int(os.getenv("SCHEDULER_CONCURRENCY", "10"))

NOTICE_EVENTS = {
    NoticeType.TRIAL_EXPIRING: WebhookEventType.TRIAL_EXPIRING,
    NoticeType.GRACE_PERIOD_ENDING: WebhookEventType.GRACE_PERIOD_ENDING,
    NoticeType.SUBSCRIPTION_EXPIRING: WebhookEventType.SUBSCRIPTION_EXPIRING,
}


@dataclass
class ScanSummary:
    scanned: int = 0
    transitions: int = 0
    notices: int = 0
    conflicts: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_notice_key(subscriber_id: str, notice_type: NoticeType, window_end: datetime) -> str:
    return f"{subscriber_id}:{notice_type.value}:{normalize_timestamp(window_end).isoformat()}"


class LifecycleScheduler:

    def __init__(
        self,
        reconciler: SubscriptionReconciler = subscription_reconciler,
        concurrency: int = SCHEDULER_CONCURRENCY,
        notice_window_days: int = NOTICE_WINDOW_DAYS,
    ):
        self.reconciler = reconciler
        self.concurrency = concurrency
        self.notice_window = timedelta(days=notice_window_days)

    async def run_scan(self, now: Optional[datetime] = None) -> ScanSummary:
        """Evaluate every non-terminal subscriber once.

        Per-subscriber failures are logged and counted; they never abort the scan.
        """
        db = database.get_db()
        now = now or utc_now()
        summary = ScanSummary()

        live_statuses = [s.value for s in LifecycleStatus if s not in TERMINAL_STATUSES]
        docs = await db.subscriber_mirrors.find(
            {"status": {"$in": live_statuses}},
            {"_id": 0, "subscriber_id": 1},
        ).to_list(None)

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _one(subscriber_id: str):
            async with semaphore:
                await self._process(subscriber_id, now, summary)

        await asyncio.gather(*[_one(doc["subscriber_id"]) for doc in docs])

        logger.info(
            "LIFECYCLE_SCAN_COMPLETED scanned=%s transitions=%s notices=%s conflicts=%s errors=%s",
            summary.scanned, summary.transitions, summary.notices, summary.conflicts, summary.errors,
        )
        return summary

    async def _process(self, subscriber_id: str, now: datetime, summary: ScanSummary) -> None:
        try:
            async with subscriber_locks.hold(subscriber_id):
                # Re-read under the lock: an interim sync may have moved the mirror on
                mirror = await self.reconciler.get_status(subscriber_id)
                summary.scanned += 1
                await self._evaluate(mirror, now, summary)
        except NotFound:
            logger.info(f"Subscriber {subscriber_id} removed during lifecycle scan")
        except Conflict as e:
            summary.conflicts += 1
            logger.warning(f"Lifecycle scan skipped {subscriber_id}: {e}")
        except Exception as e:
            summary.errors += 1
            logger.error(f"Lifecycle scan failed for {subscriber_id}: {e}", exc_info=True)

    async def _evaluate(self, mirror: SubscriberMirror, now: datetime, summary: ScanSummary) -> None:
        if mirror.status == LifecycleStatus.TRIAL and mirror.trial_end:
            await self._deadline(
                mirror, now, summary,
                deadline=mirror.trial_end,
                to_status=LifecycleStatus.EXPIRED,
                reason="trial_ended",
                notice_type=NoticeType.TRIAL_EXPIRING,
            )
        elif mirror.status == LifecycleStatus.GRACE_PERIOD and mirror.grace_period_ends_at:
            await self._deadline(
                mirror, now, summary,
                deadline=mirror.grace_period_ends_at,
                to_status=LifecycleStatus.EXPIRED,
                reason="grace_period_ended",
                notice_type=NoticeType.GRACE_PERIOD_ENDING,
            )
        elif mirror.status == LifecycleStatus.ACTIVE and mirror.cancel_intent:
            effective_at = mirror.cancel_effective_at or mirror.period_end
            if effective_at:
                await self._deadline(
                    mirror, now, summary,
                    deadline=effective_at,
                    to_status=LifecycleStatus.CANCELLED,
                    reason="cancel_at_period_end",
                    notice_type=NoticeType.SUBSCRIPTION_EXPIRING,
                )

    async def _deadline(
        self,
        mirror: SubscriberMirror,
        now: datetime,
        summary: ScanSummary,
        deadline: datetime,
        to_status: LifecycleStatus,
        reason: str,
        notice_type: NoticeType,
    ) -> None:
        if deadline <= now:
            # Event timestamp is the deadline itself, so rescans map to the same correlation id
            await self.reconciler.transition(mirror, to_status, occurred_at=deadline, reason=reason)
            summary.transitions += 1
        elif deadline - now <= self.notice_window:
            if await self._emit_notice(mirror, notice_type, deadline, now):
                summary.notices += 1

    async def _emit_notice(
        self,
        mirror: SubscriberMirror,
        notice_type: NoticeType,
        window_end: datetime,
        now: datetime,
    ) -> bool:
        """Insert the notice marker, then emit. False if already notified."""
        db = database.get_db()
        notice_key = build_notice_key(mirror.subscriber_id, notice_type, window_end)
        try:
            await db.lifecycle_notices.insert_one({
                "notice_key": notice_key,
                "subscriber_id": mirror.subscriber_id,
                "notice_type": notice_type.value,
                "window_end": window_end,
                "created_at": now,
            })
        except DuplicateKeyError:
            return False

        event_type = NOTICE_EVENTS[notice_type]
        event = build_event(
            LifecycleTransition(
                event_type=event_type,
                occurred_at=now,
                previous_status=mirror.status,
                new_status=mirror.status,
                reason="notice_window",
            ),
            mirror.subscriber_id,
            mirror,
        )
        logger.info(
            "LIFECYCLE_NOTICE subscriber_id=%s notice=%s window_end=%s",
            mirror.subscriber_id, notice_type.value, window_end.isoformat(),
        )
        await self.reconciler.publish_events([event])
        return True


# Singleton instance
lifecycle_scheduler = LifecycleScheduler()
