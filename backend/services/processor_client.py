"""External Processor Client - read/write access to the canonical billing record.

The Stripe SDK is synchronous; every call runs in the default executor and is
bounded by PROCESSOR_TIMEOUT_SECONDS. Cancelling the awaiting task abandons the
call immediately, so callers never apply a half-finished result.

Key Principles:
- Canonical records are normalized to CanonicalSubscription before leaving this module
- Stripe API errors surface as ProcessorUnavailable; "resource missing" is not an error
- Credentials are checked once at startup (ensure_configured), not per call
"""
import asyncio
import functools
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import stripe
from pydantic import BaseModel, ConfigDict

from services.billing_errors import NotConfigured, ProcessorUnavailable

logger = logging.getLogger(__name__)

PROCESSOR_TIMEOUT_SECONDS = float(os.getenv("PROCESSOR_TIMEOUT_SECONDS", "20"))


def _api_key() -> str:
    return (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()


# Initialize Stripe (no placeholder default; missing key is caught by ensure_configured at startup)
stripe.api_key = _api_key()


def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _ts(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class CanonicalSubscription(BaseModel):
    """Normalized view of a Stripe Subscription."""
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    customer: Optional[str] = None
    status: str
    cancel_at_period_end: bool = False
    cancel_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    price_id: Optional[str] = None
    created: Optional[datetime] = None
    latest_invoice: Optional[str] = None

    @classmethod
    def from_stripe(cls, subscription: Any) -> "CanonicalSubscription":
        sub = _as_dict(subscription)
        items = (_as_dict(sub.get("items")).get("data") or [])
        first_item = _as_dict(items[0]) if items else {}
        price = first_item.get("price")
        price_id = price if isinstance(price, str) else _as_dict(price).get("id")
        customer = sub.get("customer")
        if not isinstance(customer, str):
            customer = _as_dict(customer).get("id")
        latest_invoice = sub.get("latest_invoice")
        if latest_invoice is not None and not isinstance(latest_invoice, str):
            latest_invoice = _as_dict(latest_invoice).get("id")
        # Newer API versions moved the billing period onto subscription items
        period_start = sub.get("current_period_start") or first_item.get("current_period_start")
        period_end = sub.get("current_period_end") or first_item.get("current_period_end")
        return cls(
            id=sub["id"],
            customer=customer,
            status=sub.get("status") or "",
            cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
            cancel_at=_ts(sub.get("cancel_at")),
            canceled_at=_ts(sub.get("canceled_at")),
            ended_at=_ts(sub.get("ended_at")),
            current_period_start=_ts(period_start),
            current_period_end=_ts(period_end),
            trial_start=_ts(sub.get("trial_start")),
            trial_end=_ts(sub.get("trial_end")),
            price_id=price_id,
            created=_ts(sub.get("created")),
            latest_invoice=latest_invoice,
        )


class StripeProcessorClient:
    """Thin async facade over the Stripe Subscription API."""

    def __init__(self, timeout_seconds: float = PROCESSOR_TIMEOUT_SECONDS):
        self.timeout_seconds = timeout_seconds

    def ensure_configured(self) -> None:
        """Fail fast at startup when no processor credentials are present."""
        key = _api_key()
        if not key:
            raise NotConfigured("STRIPE_SECRET_KEY or STRIPE_API_KEY is not set. Configure env and restart.")
        if not key.startswith(("sk_test_", "sk_live_", "rk_test_", "rk_live_")):
            logger.warning("STRIPE_SECRET_KEY does not look like a Stripe secret key")
        stripe.api_key = key

    async def _call(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        call = functools.partial(fn, *args, **kwargs)
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, call),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise ProcessorUnavailable(
                f"Stripe call {getattr(fn, '__qualname__', fn)} timed out after {self.timeout_seconds}s"
            )

    async def retrieve_subscription(self, subscription_id: str) -> Optional[CanonicalSubscription]:
        """Return the subscription, or None when Stripe reports it missing."""
        try:
            sub = await self._call(
                stripe.Subscription.retrieve,
                subscription_id,
                expand=["items.data.price"],
            )
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                logger.info(f"Stripe subscription {subscription_id} not found")
                return None
            raise ProcessorUnavailable(f"Stripe retrieve failed for {subscription_id}: {e}")
        except stripe.StripeError as e:
            raise ProcessorUnavailable(f"Stripe retrieve failed for {subscription_id}: {e}")
        return CanonicalSubscription.from_stripe(sub)

    async def list_subscriptions(self, customer_id: str, limit: int = 10) -> List[CanonicalSubscription]:
        try:
            result = await self._call(
                stripe.Subscription.list,
                customer=customer_id,
                status="all",
                limit=limit,
                expand=["data.items.data.price"],
            )
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                return []
            raise ProcessorUnavailable(f"Stripe list failed for customer {customer_id}: {e}")
        except stripe.StripeError as e:
            raise ProcessorUnavailable(f"Stripe list failed for customer {customer_id}: {e}")
        data = _as_dict(result).get("data") or []
        return [CanonicalSubscription.from_stripe(s) for s in data]

    async def request_cancel_at_period_end(self, subscription_id: str) -> CanonicalSubscription:
        try:
            sub = await self._call(
                stripe.Subscription.modify,
                subscription_id,
                cancel_at_period_end=True,
            )
        except stripe.StripeError as e:
            raise ProcessorUnavailable(f"Stripe cancel-at-period-end failed for {subscription_id}: {e}")
        return CanonicalSubscription.from_stripe(sub)

    async def cancel_now(self, subscription_id: str) -> CanonicalSubscription:
        try:
            sub = await self._call(stripe.Subscription.cancel, subscription_id)
        except stripe.StripeError as e:
            raise ProcessorUnavailable(f"Stripe cancel failed for {subscription_id}: {e}")
        return CanonicalSubscription.from_stripe(sub)


def select_most_relevant(subscriptions: List[CanonicalSubscription]) -> Optional[CanonicalSubscription]:
    """Tie-break order: active > trialing > most recently created."""
    if not subscriptions:
        return None
    for wanted in ("active", "trialing"):
        matches = [s for s in subscriptions if s.status == wanted]
        if matches:
            return max(matches, key=lambda s: s.created or datetime.min.replace(tzinfo=timezone.utc))
    return max(subscriptions, key=lambda s: s.created or datetime.min.replace(tzinfo=timezone.utc))


# Singleton instance
processor_client = StripeProcessorClient()
