"""Admin Routes - operator controls for the billing engine.

Endpoints:
- GET /api/admin/jobs - Registered background jobs
- POST /api/admin/jobs/{job_name}/run - Run a job now (lifecycle scan, retry sweep, reconciliation)
- POST /api/admin/subscribers - Provision a TRIAL mirror
- GET /api/admin/subscribers/{subscriber_id} - Mirror for any subscriber
- POST /api/admin/subscribers/{subscriber_id}/sync - Force a sync
- GET /api/admin/subscribers/{subscriber_id}/audit - Lifecycle and delivery audit trail
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel
from typing import Optional
from middleware import admin_route_guard
from models import ActorRole, AuditAction
from routes.billing import billing_error_to_http
from services.billing_errors import BillingError
from services.subscription_reconciler import TRIAL_DAYS, subscription_reconciler
from utils.audit import create_audit_log, get_subscriber_timeline
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(admin_route_guard)])


class ProvisionRequest(BaseModel):
    subscriber_id: str
    customer_ref: Optional[str] = None
    plan_id: Optional[str] = None
    trial_days: int = TRIAL_DAYS


@router.get("/jobs")
async def list_jobs(request: Request):
    from job_runner import JOB_RUNNERS
    return {"jobs": sorted(JOB_RUNNERS.keys())}


@router.post("/jobs/{job_name}/run")
async def run_job_now(job_name: str, user: dict = Depends(admin_route_guard)):
    """Run a single background job by id (admin only)."""
    from job_runner import JOB_RUNNERS

    job_id = (job_name or "").strip()
    if not job_id or job_id not in JOB_RUNNERS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid job. Use one of: {', '.join(sorted(JOB_RUNNERS.keys()))}"
        )
    try:
        result = await JOB_RUNNERS[job_id]()
        message = (result.get("message") if result else None) or f"Job {job_id} completed"
        await create_audit_log(
            action=AuditAction.ADMIN_ACTION,
            actor_role=ActorRole.ADMIN,
            actor_id=user["actor_id"],
            metadata={
                "action": "manual_job_run",
                "job_id": job_id,
            },
        )
        return {"success": True, "job": job_id, "message": message, "result": result}
    except Exception as e:
        logger.error(f"Manual job run error ({job_id}): {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to run job: {job_id}"
        )


@router.post("/subscribers")
async def provision_subscriber(request: Request, body: ProvisionRequest):
    """Create the TRIAL mirror for an account. Idempotent."""
    mirror = await subscription_reconciler.provision(
        body.subscriber_id,
        customer_ref=body.customer_ref,
        plan_id=body.plan_id,
        trial_days=body.trial_days,
    )
    return mirror.model_dump(mode="json")


@router.get("/subscribers/{subscriber_id}")
async def get_subscriber(request: Request, subscriber_id: str):
    try:
        mirror = await subscription_reconciler.get_status(subscriber_id)
    except BillingError as e:
        raise billing_error_to_http(e)
    return mirror.model_dump(mode="json")


@router.post("/subscribers/{subscriber_id}/sync")
async def sync_subscriber(subscriber_id: str, user: dict = Depends(admin_route_guard)):
    try:
        mirror = await subscription_reconciler.sync(
            subscriber_id,
            actor_role=ActorRole.ADMIN,
            actor_id=user["actor_id"],
        )
    except BillingError as e:
        logger.warning(f"Admin sync failed for {subscriber_id}: {e}")
        raise billing_error_to_http(e)
    return {"success": True, "subscription": mirror.model_dump(mode="json")}


@router.get("/subscribers/{subscriber_id}/audit")
async def get_subscriber_audit(request: Request, subscriber_id: str, limit: int = 50):
    """Lifecycle audit trail for a subscriber, newest first."""
    logs = await get_subscriber_timeline(subscriber_id, limit=max(1, min(limit, 200)))
    return {"subscriber_id": subscriber_id, "logs": logs, "count": len(logs)}
