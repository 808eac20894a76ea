"""Delivery Retry Engine - one signed HTTP delivery per call, persisted retry state.

Each Delivery Attempt is a document in webhook_deliveries:
    PENDING --2xx--------------------------------------> DELIVERED (terminal)
    PENDING --network/timeout/5xx/429, attempts < max--> PENDING (next_retry_at in the future)
    PENDING --4xx (not 429) or attempts == max---------> EXHAUSTED (terminal)

Retries are not in-memory timers: retry_failed_webhooks() sweeps due PENDING
attempts, so pending work survives process restarts. A short lease
(locked_until) keeps the immediate dispatch path and the sweep from sending the
same attempt twice.
"""
import aiohttp
import asyncio
import logging
import os
import random
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ReturnDocument

from database import database
from models import (
    AuditAction,
    ActorRole,
    DeliveryOutcome,
    DeliveryStatus,
    utc_now,
)
from services.billing_errors import (
    PermanentDeliveryRejection,
    RetriesExhausted,
    TransientDeliveryFailure,
)
from services.event_builder import SCHEMA_VERSION
from services.webhook_signing import build_signed_headers, serialize_payload
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

# Retry configuration
MAX_ATTEMPTS = int(os.getenv("WEBHOOK_MAX_ATTEMPTS", "5"))
BACKOFF_BASE_SECONDS = float(os.getenv("WEBHOOK_BACKOFF_BASE_SECONDS", "30"))
BACKOFF_MAX_SECONDS = float(os.getenv("WEBHOOK_BACKOFF_MAX_SECONDS", "3600"))
BACKOFF_JITTER = float(os.getenv("WEBHOOK_BACKOFF_JITTER", "0.25"))
REQUEST_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10"))
LEASE_MARGIN_SECONDS = 30
AUTO_DISABLE_AFTER_EXHAUSTED = int(os.getenv("AUTO_DISABLE_AFTER_EXHAUSTED", "5"))
SWEEP_BATCH_SIZE = int(os.getenv("WEBHOOK_RETRY_SWEEP_BATCH", "50"))
SWEEP_CONCURRENCY = int(os.getenv("WEBHOOK_MAX_CONCURRENCY", "20"))
RESPONSE_BODY_LIMIT = 500


def backoff_seconds(
    attempt_no: int,
    base: float = BACKOFF_BASE_SECONDS,
    cap: float = BACKOFF_MAX_SECONDS,
    jitter: float = BACKOFF_JITTER,
    rand=random.random,
) -> float:
    """Delay before retry number attempt_no + 1.

    Jitter stays below 100% of the undelayed value, so the next doubling always
    outgrows it and delays are non-decreasing until they hit the cap.
    """
    jitter = min(max(jitter, 0.0), 0.99)
    raw = base * (2 ** max(0, attempt_no - 1))
    return min(cap, raw * (1 + jitter * rand()))


def classify_status(status_code: int) -> DeliveryOutcome:
    if 200 <= status_code < 300:
        return DeliveryOutcome.SUCCESS
    if status_code == 429:
        return DeliveryOutcome.TRANSIENT_FAILURE
    if 400 <= status_code < 500:
        return DeliveryOutcome.PERMANENT_REJECTION
    return DeliveryOutcome.TRANSIENT_FAILURE


def _truncate(text: Optional[str], limit: int = RESPONSE_BODY_LIMIT) -> Optional[str]:
    if text is None:
        return None
    if len(text) > limit:
        return text[:limit] + "...[truncated]"
    return text


class DeliveryEngine:
    """Performs and records webhook deliveries."""

    def __init__(
        self,
        max_attempts: int = MAX_ATTEMPTS,
        timeout_seconds: float = REQUEST_TIMEOUT_SECONDS,
    ):
        self.max_attempts = max_attempts
        self.timeout_seconds = timeout_seconds
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    # =========================================================================
    # HTTP
    # =========================================================================

    async def _post(self, url: str, body: str, headers: Dict[str, str]) -> Tuple[int, str]:
        """POST the body; network errors and timeouts are transient failures."""
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(url, data=body.encode(), headers=headers) as response:
                    try:
                        response_body = await response.text()
                    except (aiohttp.ClientError, UnicodeDecodeError):
                        response_body = "[Could not read response]"
                    return response.status, response_body
        except asyncio.TimeoutError:
            raise TransientDeliveryFailure(f"Request timed out after {self.timeout_seconds}s")
        except aiohttp.ClientError as e:
            raise TransientDeliveryFailure(f"Connection error: {e}")

    async def _deliver(self, url: str, body: str, headers: Dict[str, str]) -> Tuple[int, str]:
        """One delivery. Returns (status, body) on 2xx, raises otherwise."""
        status_code, response_body = await self._post(url, body, headers)
        outcome = classify_status(status_code)
        if outcome == DeliveryOutcome.SUCCESS:
            return status_code, response_body
        message = f"HTTP {status_code}: {(response_body or '')[:100]}"
        if outcome == DeliveryOutcome.PERMANENT_REJECTION:
            raise PermanentDeliveryRejection(message, status_code=status_code)
        raise TransientDeliveryFailure(message, status_code=status_code)

    # =========================================================================
    # Attempt lifecycle
    # =========================================================================

    async def _claim(self, attempt_id: str, now) -> Optional[Dict[str, Any]]:
        """Atomically lease a PENDING attempt. None if terminal or leased elsewhere."""
        db = database.get_db()
        lease_until = now + timedelta(seconds=self.timeout_seconds + LEASE_MARGIN_SECONDS)
        return await db.webhook_deliveries.find_one_and_update(
            {
                "attempt_id": attempt_id,
                "status": DeliveryStatus.PENDING.value,
                "$or": [
                    {"locked_until": None},
                    {"locked_until": {"$lt": now}},
                ],
            },
            {"$set": {"locked_until": lease_until}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )

    async def send(self, attempt_id: str, now=None) -> Optional[DeliveryOutcome]:
        """Perform one HTTP delivery for a PENDING attempt and record the result.

        Returns the outcome of this attempt, or None if the attempt could not be
        claimed (already terminal, or another worker holds its lease).
        """
        result = await self._send_attempt(attempt_id, now=now)
        return result[0] if result else None

    async def _send_attempt(
        self, attempt_id: str, now=None
    ) -> Optional[Tuple[DeliveryOutcome, DeliveryStatus]]:
        db = database.get_db()
        now = now or utc_now()

        attempt = await self._claim(attempt_id, now)
        if not attempt:
            logger.debug(f"Delivery {attempt_id} not claimable (terminal or leased)")
            return None

        attempt_no = attempt.get("attempt_count", 0) + 1
        endpoint = await db.webhook_endpoints.find_one({"endpoint_id": attempt["endpoint_id"]}, {"_id": 0})
        event = await db.webhook_events.find_one({"event_id": attempt["event_id"]}, {"_id": 0})

        status_code = None
        error_message = None
        started = time.monotonic()

        if not endpoint or not endpoint.get("enabled", False):
            outcome = DeliveryOutcome.PERMANENT_REJECTION
            error_message = "Endpoint disabled or removed"
        elif not event:
            outcome = DeliveryOutcome.PERMANENT_REJECTION
            error_message = f"Event {attempt['event_id']} not found"
        else:
            try:
                body = serialize_payload(event["payload"])
                headers = build_signed_headers(
                    body,
                    endpoint["secret"],
                    event_type=attempt["event_type"],
                    delivery_id=attempt["correlation_id"],
                    attempt=attempt_no,
                )
                status_code, _ = await self._deliver(endpoint["url"], body, headers)
                outcome = DeliveryOutcome.SUCCESS
            except PermanentDeliveryRejection as e:
                outcome = DeliveryOutcome.PERMANENT_REJECTION
                status_code = e.status_code
                error_message = str(e)
            except TransientDeliveryFailure as e:
                outcome = DeliveryOutcome.TRANSIENT_FAILURE
                status_code = e.status_code
                error_message = str(e)
            except Exception as e:
                # Malformed endpoint or event document; retrying cannot fix it
                logger.exception(f"Delivery {attempt_id} could not be prepared or sent: {e}")
                outcome = DeliveryOutcome.PERMANENT_REJECTION
                error_message = f"Delivery failed unexpectedly: {type(e).__name__}: {e}"

        duration_ms = int((time.monotonic() - started) * 1000)
        history_entry = {
            "attempt": attempt_no,
            "at": now,
            "outcome": outcome.value,
            "status_code": status_code,
            "error": _truncate(error_message),
            "duration_ms": duration_ms,
        }

        update_set: Dict[str, Any] = {
            "attempt_count": attempt_no,
            "last_outcome": outcome.value,
            "last_status_code": status_code,
            "last_error": _truncate(error_message),
            "locked_until": None,
            "updated_at": now,
        }

        if outcome == DeliveryOutcome.SUCCESS:
            new_status = DeliveryStatus.DELIVERED
            update_set.update({"status": new_status.value, "delivered_at": now, "next_retry_at": None})
            logger.info(
                "WEBHOOK_DELIVERED attempt_id=%s endpoint_id=%s event_type=%s attempt=%s status=%s",
                attempt_id, attempt["endpoint_id"], attempt["event_type"], attempt_no, status_code,
            )
        elif outcome == DeliveryOutcome.TRANSIENT_FAILURE and attempt_no < self.max_attempts:
            new_status = DeliveryStatus.PENDING
            delay = backoff_seconds(attempt_no)
            update_set.update({"status": new_status.value, "next_retry_at": now + timedelta(seconds=delay)})
            logger.info(
                "WEBHOOK_RETRY_SCHEDULED attempt_id=%s endpoint_id=%s attempt=%s delay_s=%.1f error=%s",
                attempt_id, attempt["endpoint_id"], attempt_no, delay, error_message,
            )
        else:
            new_status = DeliveryStatus.EXHAUSTED
            update_set.update({"status": new_status.value, "exhausted_at": now, "next_retry_at": None})

        await db.webhook_deliveries.update_one(
            {"attempt_id": attempt_id},
            {"$set": update_set, "$push": {"history": history_entry}},
        )

        await self._record_endpoint_stats(endpoint, outcome, new_status, status_code, error_message, now)

        if new_status == DeliveryStatus.EXHAUSTED:
            if outcome == DeliveryOutcome.PERMANENT_REJECTION:
                await self._report_rejection(attempt, endpoint, status_code, error_message)
            else:
                await self._report_exhausted(attempt, endpoint, attempt_no, error_message)

        return outcome, new_status

    # =========================================================================
    # Terminal failure reporting
    # =========================================================================

    async def _report_rejection(self, attempt, endpoint, status_code, error_message) -> None:
        """Permanent rejection: surfaced to the account that configured the endpoint."""
        logger.warning(
            "WEBHOOK_REJECTED attempt_id=%s endpoint_id=%s status=%s error=%s",
            attempt["attempt_id"], attempt["endpoint_id"], status_code, error_message,
        )
        await create_audit_log(
            action=AuditAction.WEBHOOK_REJECTED,
            actor_role=ActorRole.SYSTEM,
            subscriber_id=attempt.get("subscriber_id"),
            account_id=(endpoint or {}).get("account_id") or attempt.get("account_id"),
            resource_type="webhook_delivery",
            resource_id=attempt["attempt_id"],
            metadata={
                "endpoint_id": attempt["endpoint_id"],
                "event_type": attempt["event_type"],
                "correlation_id": attempt["correlation_id"],
                "response_code": status_code,
                "error": error_message,
            },
        )

    async def _report_exhausted(self, attempt, endpoint, attempts: int, error_message) -> None:
        """Retries exhausted: surfaced for operator alerting."""
        exhausted = RetriesExhausted(attempt["attempt_id"], attempts, error_message)
        logger.error("WEBHOOK_RETRIES_EXHAUSTED endpoint_id=%s %s", attempt["endpoint_id"], exhausted)
        await create_audit_log(
            action=AuditAction.WEBHOOK_RETRIES_EXHAUSTED,
            actor_role=ActorRole.SYSTEM,
            subscriber_id=attempt.get("subscriber_id"),
            account_id=(endpoint or {}).get("account_id") or attempt.get("account_id"),
            resource_type="webhook_delivery",
            resource_id=attempt["attempt_id"],
            metadata={
                "endpoint_id": attempt["endpoint_id"],
                "event_type": attempt["event_type"],
                "correlation_id": attempt["correlation_id"],
                "attempts": attempts,
                "error": error_message,
            },
        )

    async def _record_endpoint_stats(self, endpoint, outcome, new_status, status_code, error_message, now) -> None:
        if not endpoint:
            return
        db = database.get_db()
        endpoint_id = endpoint["endpoint_id"]
        update: Dict[str, Any] = {
            "$set": {
                "last_triggered_at": now,
                "last_status": status_code,
                "last_error": _truncate(error_message) if outcome != DeliveryOutcome.SUCCESS else None,
            },
            "$inc": {"total_deliveries": 1},
        }
        if outcome == DeliveryOutcome.SUCCESS:
            update["$set"]["consecutive_failures"] = 0
            update["$inc"]["successful_deliveries"] = 1
        elif new_status == DeliveryStatus.EXHAUSTED:
            update["$inc"]["consecutive_failures"] = 1

        try:
            updated = await db.webhook_endpoints.find_one_and_update(
                {"endpoint_id": endpoint_id},
                update,
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
        except Exception as e:
            logger.error(f"Failed to update webhook endpoint stats: {e}")
            return

        # Disable endpoint after repeated terminal failures
        if (
            updated
            and updated.get("enabled")
            and AUTO_DISABLE_AFTER_EXHAUSTED > 0
            and updated.get("consecutive_failures", 0) >= AUTO_DISABLE_AFTER_EXHAUSTED
        ):
            await db.webhook_endpoints.update_one(
                {"endpoint_id": endpoint_id},
                {"$set": {"enabled": False, "disabled_reason": "REPEATED_DELIVERY_FAILURES", "disabled_at": now}},
            )
            logger.warning(f"Webhook endpoint {endpoint_id} disabled due to repeated failures")
            await create_audit_log(
                action=AuditAction.WEBHOOK_ENDPOINT_DISABLED,
                actor_role=ActorRole.SYSTEM,
                account_id=updated.get("account_id"),
                resource_type="webhook_endpoint",
                resource_id=endpoint_id,
                metadata={"consecutive_failures": updated.get("consecutive_failures")},
            )

    # =========================================================================
    # Sweep
    # =========================================================================

    async def retry_failed_webhooks(self, now=None, limit: int = SWEEP_BATCH_SIZE) -> Dict[str, int]:
        """Resubmit every non-terminal attempt whose next_retry_at has elapsed."""
        db = database.get_db()
        now = now or utc_now()

        due = await db.webhook_deliveries.find(
            {
                "status": DeliveryStatus.PENDING.value,
                "next_retry_at": {"$lte": now},
                "$or": [
                    {"locked_until": None},
                    {"locked_until": {"$lt": now}},
                ],
            },
            {"_id": 0, "attempt_id": 1},
        ).sort("next_retry_at", 1).limit(limit).to_list(limit)

        stats = {"processed": 0, "delivered": 0, "rescheduled": 0, "exhausted": 0, "skipped": 0}
        semaphore = asyncio.Semaphore(SWEEP_CONCURRENCY)

        async def _one(attempt_id: str):
            async with semaphore:
                return await self._send_attempt(attempt_id, now=now)

        results = await asyncio.gather(
            *[_one(doc["attempt_id"]) for doc in due],
            return_exceptions=True,
        )

        for doc, result in zip(due, results):
            if isinstance(result, BaseException):
                logger.error(f"Retry sweep failed for delivery {doc['attempt_id']}: {result}")
                stats["skipped"] += 1
                continue
            if result is None:
                stats["skipped"] += 1
                continue
            stats["processed"] += 1
            _, status = result
            if status == DeliveryStatus.DELIVERED:
                stats["delivered"] += 1
            elif status == DeliveryStatus.PENDING:
                stats["rescheduled"] += 1
            else:
                stats["exhausted"] += 1

        logger.info(f"Webhook retry sweep completed: {stats}")
        return stats

    # =========================================================================
    # Reporting
    # =========================================================================

    async def get_endpoint_stats(self, account_id: str) -> Dict[str, Any]:
        """Delivery statistics across an account's endpoints."""
        db = database.get_db()

        endpoints = await db.webhook_endpoints.find(
            {"account_id": account_id},
            {"_id": 0, "secret": 0}
        ).to_list(100)

        total_deliveries = sum(e.get("total_deliveries", 0) for e in endpoints)
        successful_deliveries = sum(e.get("successful_deliveries", 0) for e in endpoints)

        return {
            "total_endpoints": len(endpoints),
            "enabled_endpoints": sum(1 for e in endpoints if e.get("enabled")),
            "total_deliveries": total_deliveries,
            "successful_deliveries": successful_deliveries,
            "success_rate": (successful_deliveries / total_deliveries * 100) if total_deliveries > 0 else 0,
            "endpoints": [
                {
                    "endpoint_id": e["endpoint_id"],
                    "url": e.get("url"),
                    "enabled": e.get("enabled", False),
                    "consecutive_failures": e.get("consecutive_failures", 0),
                    "last_status": e.get("last_status"),
                    "last_error": e.get("last_error"),
                    "last_triggered_at": e.get("last_triggered_at"),
                }
                for e in endpoints
            ],
        }

    async def list_deliveries(
        self,
        endpoint_id: str,
        account_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """Most recent delivery attempts for an endpoint, newest first."""
        db = database.get_db()
        query: Dict[str, Any] = {"endpoint_id": endpoint_id}
        if account_id:
            query["account_id"] = account_id
        if status:
            query["status"] = status
        return await db.webhook_deliveries.find(query, {"_id": 0}).sort(
            "created_at", -1
        ).limit(limit).to_list(limit)

    # =========================================================================
    # Test delivery
    # =========================================================================

    async def send_test(self, endpoint_id: str, account_id: Optional[str] = None) -> Dict[str, Any]:
        """Single-shot signed delivery of a test payload. No retries, no attempt record."""
        db = database.get_db()
        query = {"endpoint_id": endpoint_id}
        if account_id:
            query["account_id"] = account_id
        endpoint = await db.webhook_endpoints.find_one(query, {"_id": 0})
        if not endpoint:
            return {"success": False, "error": "Webhook endpoint not found"}

        now = utc_now()
        payload = {
            "type": "webhook.test",
            "correlationId": f"test_{endpoint_id}_{int(now.timestamp())}",
            "subscriberId": None,
            "occurredAt": now.isoformat(),
            "schemaVersion": SCHEMA_VERSION,
            "data": {"test": True, "configuredEvents": endpoint.get("event_types", [])},
        }
        body = serialize_payload(payload)
        headers = build_signed_headers(body, endpoint["secret"], "webhook.test", payload["correlationId"], 1)
        try:
            status_code, response_body = await self._deliver(endpoint["url"], body, headers)
            return {"success": True, "status_code": status_code, "response_preview": _truncate(response_body, 200)}
        except (PermanentDeliveryRejection, TransientDeliveryFailure) as e:
            return {"success": False, "status_code": e.status_code, "error": str(e)}


# Singleton instance
delivery_engine = DeliveryEngine()
