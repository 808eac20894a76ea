"""
Pytest configuration and shared test helpers for backend tests.
"""
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock

# Skip heavy server startup (MongoDB, Stripe check, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))
TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

import pytest

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app

from database import database
from fake_mongo import FakeDatabase

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)


@pytest.fixture
def fake_db():
    """Swap the process-wide database for an in-memory one."""
    previous = database.db
    db = FakeDatabase()
    database.db = db
    yield db
    database.db = previous


def make_processor(**methods):
    """Processor client double; unset methods raise if called."""
    processor = AsyncMock()
    for name in ("retrieve_subscription", "list_subscriptions", "request_cancel_at_period_end", "cancel_now"):
        setattr(processor, name, AsyncMock(side_effect=AssertionError(f"unexpected {name} call")))
    for name, value in methods.items():
        setattr(processor, name, value)
    return processor


def canonical(**overrides):
    """CanonicalSubscription with sensible active defaults."""
    from services.processor_client import CanonicalSubscription
    fields = {
        "id": "sub_123",
        "customer": "cus_123",
        "status": "active",
        "cancel_at_period_end": False,
        "current_period_start": NOW - timedelta(days=5),
        "current_period_end": NOW + timedelta(days=25),
        "price_id": "price_pro",
        "created": NOW - timedelta(days=40),
    }
    fields.update(overrides)
    return CanonicalSubscription(**fields)


async def insert_mirror(db, **fields):
    """Insert a subscriber mirror document; returns the stored dict."""
    doc = {
        "subscriber_id": "sub-user-1",
        "status": "TRIAL",
        "trial_start": NOW - timedelta(days=10),
        "trial_end": NOW + timedelta(days=20),
        "cancel_intent": False,
        "cancellation_occurred": False,
        "version": 0,
        "created_at": NOW - timedelta(days=10),
        "updated_at": NOW - timedelta(days=10),
    }
    doc.update(fields)
    await db.subscriber_mirrors.insert_one(doc)
    return doc


async def insert_endpoint(db, endpoint_id="ep-1", event_types=None, **fields):
    doc = {
        "endpoint_id": endpoint_id,
        "account_id": "acct-1",
        "url": f"https://hooks.example.com/{endpoint_id}",
        "secret": f"whsec_{endpoint_id}",
        "event_types": event_types if event_types is not None else ["subscription.activated"],
        "enabled": True,
    }
    doc.update(fields)
    await db.webhook_endpoints.insert_one(doc)
    return doc
