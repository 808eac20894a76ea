"""
Stripe processor client: normalization, missing resources, error and timeout mapping.
"""
import time
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
import stripe

from conftest import NOW, canonical
from services.billing_errors import NotConfigured, ProcessorUnavailable
from services.plan_registry import plan_registry
from services.processor_client import (
    CanonicalSubscription,
    StripeProcessorClient,
    select_most_relevant,
)

pytestmark = pytest.mark.asyncio

STRIPE_SUBSCRIPTION = {
    "id": "sub_123",
    "object": "subscription",
    "customer": {"id": "cus_123", "object": "customer"},
    "status": "active",
    "cancel_at_period_end": True,
    "cancel_at": int(NOW.timestamp()) + 86400,
    "created": int(NOW.timestamp()) - 86400 * 40,
    "latest_invoice": "in_1",
    "items": {
        "object": "list",
        "data": [{
            "id": "si_1",
            "price": {"id": "price_pro", "object": "price"},
            "current_period_start": int(NOW.timestamp()),
            "current_period_end": int(NOW.timestamp()) + 86400 * 30,
        }],
    },
}


class TestNormalization:

    async def test_from_stripe_reads_item_period_and_expanded_ids(self):
        sub = CanonicalSubscription.from_stripe(STRIPE_SUBSCRIPTION)
        assert sub.customer == "cus_123"
        assert sub.price_id == "price_pro"
        assert sub.current_period_start == NOW
        assert sub.cancel_at_period_end is True
        assert sub.latest_invoice == "in_1"

    async def test_most_relevant_prefers_active(self):
        chosen = select_most_relevant([
            canonical(id="sub_trial", status="trialing", created=NOW),
            canonical(id="sub_active", status="active", created=NOW - timedelta(days=30)),
            canonical(id="sub_old", status="canceled", created=NOW + timedelta(days=1)),
        ])
        assert chosen.id == "sub_active"

    async def test_most_relevant_falls_back_to_newest(self):
        chosen = select_most_relevant([
            canonical(id="sub_a", status="canceled", created=NOW - timedelta(days=10)),
            canonical(id="sub_b", status="past_due", created=NOW),
        ])
        assert chosen.id == "sub_b"
        assert select_most_relevant([]) is None


class TestStripeCalls:

    async def test_retrieve(self):
        client = StripeProcessorClient()
        with patch.object(stripe.Subscription, "retrieve", MagicMock(return_value=STRIPE_SUBSCRIPTION)) as retrieve:
            sub = await client.retrieve_subscription("sub_123")
        assert sub.id == "sub_123"
        retrieve.assert_called_once_with("sub_123", expand=["items.data.price"])

    async def test_retrieve_missing_is_none(self):
        client = StripeProcessorClient()
        error = stripe.InvalidRequestError("No such subscription", "id", code="resource_missing")
        with patch.object(stripe.Subscription, "retrieve", MagicMock(side_effect=error)):
            assert await client.retrieve_subscription("sub_gone") is None

    async def test_api_error_is_unavailable(self):
        client = StripeProcessorClient()
        with patch.object(stripe.Subscription, "retrieve", MagicMock(side_effect=stripe.APIConnectionError("down"))):
            with pytest.raises(ProcessorUnavailable):
                await client.retrieve_subscription("sub_123")

    async def test_slow_call_times_out(self):
        client = StripeProcessorClient(timeout_seconds=0.01)

        def slow(*args, **kwargs):
            time.sleep(0.2)
            return STRIPE_SUBSCRIPTION

        with patch.object(stripe.Subscription, "cancel", MagicMock(side_effect=slow)):
            with pytest.raises(ProcessorUnavailable):
                await client.cancel_now("sub_123")

    async def test_list_by_customer(self):
        client = StripeProcessorClient()
        with patch.object(stripe.Subscription, "list", MagicMock(return_value={"data": [STRIPE_SUBSCRIPTION]})) as list_:
            subs = await client.list_subscriptions("cus_123")
        assert [s.id for s in subs] == ["sub_123"]
        assert list_.call_args.kwargs["status"] == "all"

    async def test_cancel_at_period_end(self):
        client = StripeProcessorClient()
        with patch.object(stripe.Subscription, "modify", MagicMock(return_value=STRIPE_SUBSCRIPTION)) as modify:
            sub = await client.request_cancel_at_period_end("sub_123")
        modify.assert_called_once_with("sub_123", cancel_at_period_end=True)
        assert sub.cancel_at_period_end is True

    async def test_missing_credentials_fail_at_startup(self, monkeypatch):
        monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
        monkeypatch.delenv("STRIPE_API_KEY", raising=False)
        with pytest.raises(NotConfigured):
            StripeProcessorClient().ensure_configured()


class TestPlanRegistry:

    async def test_known_price_maps_to_plan(self, monkeypatch):
        monkeypatch.setenv("STRIPE_PROFESSIONAL_PRICE_ID", "price_pro")
        assert plan_registry.resolve_plan_id("price_pro") == "PROFESSIONAL"

    async def test_unknown_price_kept_verbatim(self, monkeypatch):
        monkeypatch.delenv("STRIPE_PROFESSIONAL_PRICE_ID", raising=False)
        assert plan_registry.resolve_plan_id("price_mystery") == "price_mystery"
        assert plan_registry.resolve_plan_id(None) is None
