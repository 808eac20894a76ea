"""
Shared job runner for scheduled background jobs.
Used by server (scheduler) and admin (manual run).
Each run_* returns a dict with "message" (and optionally "count") for admin toast.
"""
import logging

logger = logging.getLogger(__name__)


async def run_lifecycle_scan():
    """Time-based lifecycle transitions and advance notices."""
    try:
        from services.lifecycle_scheduler import lifecycle_scheduler
        summary = await lifecycle_scheduler.run_scan()
        logger.info(f"Lifecycle scan job completed: {summary.to_dict()}")
        return {
            "message": (
                f"Lifecycle scan: {summary.scanned} scanned, {summary.transitions} transitions, "
                f"{summary.notices} notices, {summary.errors} errors"
            ),
            "count": summary.transitions + summary.notices,
            **summary.to_dict(),
        }
    except Exception as e:
        logger.error(f"Lifecycle scan job failed: {e}")
        raise


async def run_webhook_retry_sweep():
    """Flush outboxed lifecycle events, then resubmit deliveries whose retry time has elapsed."""
    try:
        from services.delivery_engine import delivery_engine
        from services.subscription_reconciler import subscription_reconciler
        flushed = await subscription_reconciler.flush_pending_events()
        stats = await delivery_engine.retry_failed_webhooks()
        stats["flushed"] = flushed
        if stats["processed"] or flushed:
            return {
                "message": (
                    f"Webhook retries: {flushed} outboxed events dispatched, "
                    f"{stats['processed']} processed, {stats['delivered']} delivered, "
                    f"{stats['rescheduled']} rescheduled, {stats['exhausted']} exhausted"
                ),
                "count": stats["processed"] + flushed,
                **stats,
            }
        return {"message": "Webhook retries: nothing due", "count": 0, **stats}
    except Exception as e:
        logger.error(f"Webhook retry sweep failed: {e}")
        raise


async def run_subscription_reconciliation():
    """Full sync of every live subscriber that has a Stripe subscription."""
    try:
        from services.subscription_reconciler import subscription_reconciler
        result = await subscription_reconciler.reconcile_all()
        logger.info(f"Subscription reconciliation job completed: {result}")
        return {
            "message": f"Subscription reconciliation: {result['synced']} synced, {result['failed']} failed",
            "count": result["synced"],
            **result,
        }
    except Exception as e:
        logger.error(f"Subscription reconciliation job failed: {e}")
        raise


# Map scheduler job id -> run function (for admin manual run)
JOB_RUNNERS = {
    "lifecycle_scan": run_lifecycle_scan,
    "webhook_retry_sweep": run_webhook_retry_sweep,
    "subscription_reconciliation": run_subscription_reconciliation,
}
