"""
HTTP surface: auth guards, error mapping, Stripe webhook receiver, admin job runs.
"""
import hmac
from unittest.mock import AsyncMock, patch

import pytest

from models import LifecycleStatus, SubscriberMirror, WebhookEventType
from services.billing_errors import Conflict, InvalidTransition, NotFound, ProcessorUnavailable
from services.delivery_engine import delivery_engine
from services.stripe_webhook_service import stripe_webhook_service
from services.subscription_reconciler import subscription_reconciler

SUBSCRIBER_HEADERS = {"X-Subscriber-Id": "sub-user-1"}
ADMIN_TOKEN = "admin-secret"


def _mirror(**overrides):
    fields = dict(subscriber_id="sub-user-1", status=LifecycleStatus.ACTIVE, version=4)
    fields.update(overrides)
    return SubscriberMirror(**fields)


@pytest.fixture
def admin_headers(monkeypatch):
    monkeypatch.setenv("ADMIN_API_TOKEN", ADMIN_TOKEN)
    return {"X-Admin-Token": ADMIN_TOKEN, "X-Admin-Actor": "ops@example.com"}


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestBillingRoutes:

    def test_requires_subscriber(self, client):
        assert client.get("/api/billing/status").status_code == 401
        assert client.post("/api/billing/sync").status_code == 401

    def test_status_from_mirror(self, client):
        with patch.object(subscription_reconciler, "get_status", AsyncMock(return_value=_mirror())):
            response = client.get("/api/billing/status", headers=SUBSCRIBER_HEADERS)
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ACTIVE"
        assert "version" not in body

    def test_status_not_found(self, client):
        with patch.object(subscription_reconciler, "get_status", AsyncMock(side_effect=NotFound("none"))):
            response = client.get("/api/billing/status", headers=SUBSCRIBER_HEADERS)
        assert response.status_code == 404

    @pytest.mark.parametrize("error,code", [
        (Conflict("changed"), 409),
        (ProcessorUnavailable("timeout"), 502),
        (NotFound("no subscription"), 404),
    ])
    def test_sync_error_mapping(self, client, error, code):
        with patch.object(subscription_reconciler, "sync", AsyncMock(side_effect=error)):
            response = client.post("/api/billing/sync", headers=SUBSCRIBER_HEADERS)
        assert response.status_code == code

    def test_sync_passes_caller_as_actor(self, client):
        sync = AsyncMock(return_value=_mirror())
        with patch.object(subscription_reconciler, "sync", sync):
            response = client.post("/api/billing/sync", headers=SUBSCRIBER_HEADERS)
        assert response.status_code == 200
        assert sync.await_args.kwargs["actor_id"] == "sub-user-1"

    def test_cancel_immediately(self, client):
        cancel = AsyncMock(return_value=_mirror(status=LifecycleStatus.EXPIRED))
        with patch.object(subscription_reconciler, "cancel", cancel):
            response = client.post("/api/billing/cancel", json={"immediate": True}, headers=SUBSCRIBER_HEADERS)
        assert response.status_code == 200
        assert response.json()["subscription"]["status"] == "EXPIRED"
        assert cancel.await_args.kwargs["immediate"] is True

    def test_cancel_defaults_to_period_end(self, client):
        cancel = AsyncMock(return_value=_mirror(cancel_intent=True))
        with patch.object(subscription_reconciler, "cancel", cancel):
            response = client.post("/api/billing/cancel", json={}, headers=SUBSCRIBER_HEADERS)
        assert response.status_code == 200
        assert "end of the current billing period" in response.json()["message"]
        assert cancel.await_args.kwargs["immediate"] is False

    def test_cancel_terminal_conflict(self, client):
        error = InvalidTransition(LifecycleStatus.CANCELLED, LifecycleStatus.CANCELLED)
        with patch.object(subscription_reconciler, "cancel", AsyncMock(side_effect=error)):
            response = client.post("/api/billing/cancel", json={}, headers=SUBSCRIBER_HEADERS)
        assert response.status_code == 409


class TestStripeWebhookRoute:

    def test_always_acknowledges(self, client):
        result = (False, "Invalid signature", {"error": "bad"})
        with patch.object(stripe_webhook_service, "process_webhook", AsyncMock(return_value=result)):
            response = client.post("/api/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "x"})
        assert response.status_code == 200
        assert response.json() == {"status": "error", "message": "Invalid signature"}

    def test_passes_raw_body_and_signature(self, client):
        process = AsyncMock(return_value=(True, "Processed", {"handled": True}))
        with patch.object(stripe_webhook_service, "process_webhook", process):
            response = client.post("/api/webhooks/stripe", content=b'{"id":"evt_1"}', headers={"Stripe-Signature": "sig"})
        assert response.json()["status"] == "received"
        assert process.await_args.kwargs == {"payload": b'{"id":"evt_1"}', "signature": "sig"}


class TestWebhookDeliveryRoutes:

    def test_event_catalog(self, client):
        response = client.get("/api/webhooks/events", headers=SUBSCRIBER_HEADERS)
        assert response.status_code == 200
        types = {e["type"] for e in response.json()["events"]}
        assert types == {t.value for t in WebhookEventType}

    def test_test_delivery_unknown_endpoint(self, client):
        result = {"success": False, "error": "Webhook endpoint not found"}
        with patch.object(delivery_engine, "send_test", AsyncMock(return_value=result)):
            response = client.post("/api/webhooks/ep-x/test", headers=SUBSCRIBER_HEADERS)
        assert response.status_code == 404

    def test_deliveries_rejects_unknown_status(self, client):
        response = client.get(
            "/api/webhooks/ep-1/deliveries", params={"status_filter": "lost"}, headers=SUBSCRIBER_HEADERS,
        )
        assert response.status_code == 400


class TestAdminRoutes:

    def test_forbidden_without_configured_token(self, client, monkeypatch):
        monkeypatch.delenv("ADMIN_API_TOKEN", raising=False)
        assert client.get("/api/admin/jobs", headers={"X-Admin-Token": "anything"}).status_code == 403

    def test_forbidden_with_wrong_token(self, client, admin_headers):
        assert client.get("/api/admin/jobs", headers={"X-Admin-Token": "wrong"}).status_code == 403

    def test_lists_jobs(self, client, admin_headers):
        response = client.get("/api/admin/jobs", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["jobs"] == ["lifecycle_scan", "subscription_reconciliation", "webhook_retry_sweep"]

    def test_unknown_job(self, client, admin_headers):
        assert client.post("/api/admin/jobs/nope/run", headers=admin_headers).status_code == 400

    def test_run_job_records_audit(self, client, admin_headers, fake_db):
        runner = AsyncMock(return_value={"message": "Lifecycle scan: 0 scanned", "count": 0})
        with patch.dict("job_runner.JOB_RUNNERS", {"lifecycle_scan": runner}):
            response = client.post("/api/admin/jobs/lifecycle_scan/run", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["message"] == "Lifecycle scan: 0 scanned"
        audit = fake_db.audit_logs.docs[0]
        assert audit["actor_id"] == "ops@example.com"
        assert audit["metadata"]["job_id"] == "lifecycle_scan"

    def test_guard_runs_once_per_request(self, client, admin_headers, fake_db):
        runner = AsyncMock(return_value={"message": "done", "count": 0})
        with patch("middleware.hmac.compare_digest", wraps=hmac.compare_digest) as compare, \
                patch.dict("job_runner.JOB_RUNNERS", {"lifecycle_scan": runner}):
            response = client.post("/api/admin/jobs/lifecycle_scan/run", headers=admin_headers)
        assert response.status_code == 200
        assert compare.call_count == 1

        with patch("middleware.hmac.compare_digest", wraps=hmac.compare_digest) as compare, \
                patch.object(subscription_reconciler, "sync", AsyncMock(return_value=_mirror())) as sync:
            response = client.post("/api/admin/subscribers/sub-user-1/sync", headers=admin_headers)
        assert response.status_code == 200
        assert compare.call_count == 1
        assert sync.await_args.kwargs["actor_id"] == "ops@example.com"

    def test_admin_sync_maps_errors(self, client, admin_headers):
        with patch.object(subscription_reconciler, "sync", AsyncMock(side_effect=NotFound("none"))):
            response = client.post("/api/admin/subscribers/sub-user-1/sync", headers=admin_headers)
        assert response.status_code == 404

    def test_provision(self, client, admin_headers):
        provision = AsyncMock(return_value=_mirror(status=LifecycleStatus.TRIAL))
        with patch.object(subscription_reconciler, "provision", provision):
            response = client.post(
                "/api/admin/subscribers",
                json={"subscriber_id": "sub-user-1", "plan_id": "PROFESSIONAL"},
                headers=admin_headers,
            )
        assert response.status_code == 200
        assert response.json()["status"] == "TRIAL"
        assert provision.await_args.kwargs["plan_id"] == "PROFESSIONAL"
