"""
Audit trail: field diffs, failure tolerance, subscriber timeline.
"""
from datetime import timedelta
from unittest.mock import patch

import pytest

from conftest import NOW
from models import ActorRole, AuditAction
from utils.audit import create_audit_log, diff_states, get_subscriber_timeline

pytestmark = pytest.mark.asyncio


async def test_diff_skips_bookkeeping_fields():
    before = {"status": "TRIAL", "plan_id": None, "version": 1, "updated_at": "a"}
    after = {"status": "ACTIVE", "plan_id": "PROFESSIONAL", "version": 2, "updated_at": "b"}
    assert diff_states(before, after) == {
        "plan_id": {"from": None, "to": "PROFESSIONAL"},
        "status": {"from": "TRIAL", "to": "ACTIVE"},
    }


async def test_diff_of_identical_states_is_empty():
    assert diff_states({"status": "ACTIVE"}, {"status": "ACTIVE"}) == {}


async def test_changes_recorded_in_metadata(fake_db):
    audit_id = await create_audit_log(
        action=AuditAction.SUBSCRIPTION_SYNCED,
        actor_role=ActorRole.SYSTEM,
        subscriber_id="sub-user-1",
        resource_type="subscriber_mirror",
        resource_id="sub-user-1",
        before_state={"status": "ACTIVE", "cancel_intent": False},
        after_state={"status": "ACTIVE", "cancel_intent": True},
        metadata={"stripe_status": "active"},
    )

    doc = await fake_db.audit_logs.find_one({"audit_id": audit_id})
    assert doc["action"] == "SUBSCRIPTION_SYNCED"
    assert doc["metadata"]["changed_fields"] == ["cancel_intent"]
    assert doc["metadata"]["stripe_status"] == "active"


async def test_write_failure_never_raises(fake_db):
    with patch.object(fake_db.audit_logs, "insert_one", side_effect=RuntimeError("mongo down")):
        assert await create_audit_log(action=AuditAction.ADMIN_ACTION) == ""


async def test_timeline_is_per_subscriber_newest_first(fake_db):
    for action, subscriber_id, hours in (
        ("SUBSCRIBER_PROVISIONED", "sub-user-1", 0),
        ("LIFECYCLE_TRANSITION", "sub-user-1", 2),
        ("LIFECYCLE_TRANSITION", "sub-other", 3),
    ):
        await fake_db.audit_logs.insert_one({
            "action": action, "subscriber_id": subscriber_id, "timestamp": NOW + timedelta(hours=hours),
        })

    timeline = await get_subscriber_timeline("sub-user-1")
    assert [entry["action"] for entry in timeline] == ["LIFECYCLE_TRANSITION", "SUBSCRIBER_PROVISIONED"]

    only_transitions = await get_subscriber_timeline("sub-user-1", actions=["LIFECYCLE_TRANSITION"])
    assert len(only_transitions) == 1
