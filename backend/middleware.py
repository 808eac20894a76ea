from fastapi import Request, HTTPException, status
from typing import Optional
import hmac
import logging
import os

logger = logging.getLogger(__name__)

SUBSCRIBER_HEADER = "X-Subscriber-Id"
ADMIN_TOKEN_HEADER = "X-Admin-Token"


async def get_current_subscriber(request: Request) -> Optional[str]:
    """Caller identity as established by the upstream auth layer.

    Prefers request.state (set by an auth middleware in front of us), then the
    trusted X-Subscriber-Id header forwarded by the gateway.
    """
    subscriber_id = getattr(request.state, "subscriber_id", None)
    if subscriber_id:
        return subscriber_id
    header = (request.headers.get(SUBSCRIBER_HEADER) or "").strip()
    return header or None


async def subscriber_route_guard(request: Request) -> str:
    """Require an authenticated subscriber."""
    subscriber_id = await get_current_subscriber(request)
    if not subscriber_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return subscriber_id


async def admin_route_guard(request: Request) -> dict:
    """Require the operator token."""
    expected = (os.getenv("ADMIN_API_TOKEN") or "").strip()
    if not expected:
        logger.error("ADMIN_API_TOKEN is not set; admin routes are disabled")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access not configured"
        )
    provided = (request.headers.get(ADMIN_TOKEN_HEADER) or "").strip()
    if not provided or not hmac.compare_digest(provided, expected):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )
    return {"role": "ADMIN", "actor_id": request.headers.get("X-Admin-Actor") or "admin"}
