"""Audit trail for lifecycle and delivery milestones.

Every entry lands in audit_logs. Writing an entry never fails the operation
that produced it: errors are logged and swallowed here.
"""
from database import database
from models import AuditLog, AuditAction, ActorRole
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)

# Bookkeeping fields that change on every write and say nothing about the transition
IGNORED_DIFF_FIELDS = frozenset({"updated_at", "last_synced_at", "version"})


def diff_states(before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Field-level changes between two mirror snapshots.

    Returns {field: {"from": old, "to": new}} for every field whose value
    differs, skipping bookkeeping fields. A field missing on one side is
    reported with None on that side.
    """
    before = before or {}
    after = after or {}
    changes: Dict[str, Dict[str, Any]] = {}
    for key in sorted(set(before) | set(after)):
        if key in IGNORED_DIFF_FIELDS:
            continue
        old, new = before.get(key), after.get(key)
        if old != new:
            changes[key] = {"from": old, "to": new}
    return changes


async def create_audit_log(
    action: AuditAction,
    actor_role: Optional[ActorRole] = None,
    actor_id: Optional[str] = None,
    subscriber_id: Optional[str] = None,
    account_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    reason_code: Optional[str] = None,
    auto_diff: bool = True
) -> str:
    """Record one audit entry; returns its id, or "" if the write failed.

    Args:
        action: What happened
        actor_role: SUBSCRIBER, ADMIN or SYSTEM (scheduler, sweep, processor event)
        subscriber_id: Subscriber whose lifecycle is affected
        account_id: Owner of the affected resource (webhook endpoint owner for deliveries)
        resource_type: 'subscriber_mirror', 'webhook_delivery' or 'webhook_endpoint'
        before_state / after_state: Snapshots; with auto_diff the changed fields go into metadata
    """
    try:
        db = database.get_db()

        enriched_metadata = dict(metadata or {})
        if auto_diff and before_state is not None and after_state is not None:
            changes = diff_states(before_state, after_state)
            if changes:
                enriched_metadata["changes"] = changes
                enriched_metadata["changed_fields"] = list(changes)

        audit_log = AuditLog(
            action=action,
            actor_role=actor_role,
            actor_id=actor_id,
            subscriber_id=subscriber_id,
            account_id=account_id,
            resource_type=resource_type,
            resource_id=resource_id,
            before_state=before_state,
            after_state=after_state,
            metadata=enriched_metadata or None,
            reason_code=reason_code,
        )

        doc = audit_log.model_dump(mode="json")
        # Keep the timestamp as a real date so timeline queries sort and range correctly
        doc["timestamp"] = audit_log.timestamp

        await db.audit_logs.insert_one(doc)
        logger.debug(f"Audit log created: {action.value} subscriber_id={subscriber_id} resource={resource_type}:{resource_id}")
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log ({action.value}): {e}")
        return ""


async def get_subscriber_timeline(
    subscriber_id: str,
    actions: Optional[List[str]] = None,
    limit: int = 50
) -> List[Dict[str, Any]]:
    """Audit entries touching one subscriber (mirror changes and their deliveries), newest first."""
    query: Dict[str, Any] = {"subscriber_id": subscriber_id}
    if actions:
        query["action"] = {"$in": actions}
    try:
        db = database.get_db()
        return await db.audit_logs.find(query, {"_id": 0}).sort("timestamp", -1).limit(limit).to_list(limit)
    except Exception as e:
        logger.error(f"Failed to read audit timeline for {subscriber_id}: {e}")
        return []
