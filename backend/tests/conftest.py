"""
Shared fixtures for the metering tests.

The store is mongomock-motor: a Motor-compatible in-memory MongoDB, so the
ledger's conditional writes run against real query semantics without a server.
"""
import os

# database.py validates these on import
os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "metering_test")
os.environ["ENVIRONMENT"] = "test"
os.environ.setdefault("IDENTITY_TOKEN_SECRET", "test-identity-secret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")

import asyncio
import hashlib
import hmac
import json
import time

import pytest
from mongomock_motor import AsyncMongoMockClient

from metering.completion import ProviderRegistry, SimulatedProvider
from metering.config import MODEL_CATALOG


@pytest.fixture
def db():
    return AsyncMongoMockClient()["metering_test"]


@pytest.fixture
def registry():
    registry = ProviderRegistry()
    for model_id in MODEL_CATALOG:
        registry.register(SimulatedProvider(model_id))
    return registry


@pytest.fixture
def make_account(db):
    """Insert an account document directly, bypassing provisioning."""
    async def _make(account_id="acct_1", balance=1000, tier="free", **extra):
        doc = {
            "account_id": account_id,
            "email": f"{account_id}@example.com",
            "display_name": "",
            "balance": balance,
            "tier": tier,
            "status": "active",
            "api_keys": [],
            "api_key_count": 0,
            "api_key_last_created_at": None,
            "applied_payment_events": [],
            "pending_charges": {},
            **extra
        }
        await db.accounts.insert_one(dict(doc))
        return doc

    return _make


@pytest.fixture
def sign_payload():
    """Build a Stripe-Signature header the way Stripe does."""
    def _sign(payload: str, secret: str = None, timestamp: int = None) -> str:
        secret = secret or os.environ["STRIPE_WEBHOOK_SECRET"]
        timestamp = timestamp or int(time.time())
        signature = hmac.new(
            secret.encode("utf-8"),
            f"{timestamp}.{payload}".encode("utf-8"),
            hashlib.sha256
        ).hexdigest()
        return f"t={timestamp},v1={signature}"

    return _sign


def payment_event(event_id="evt_1", plan="basic", account_id="acct_1", amount=None,
                  event_type="payment_intent.succeeded"):
    """A Stripe event body for a plan purchase."""
    from metering.config import SUBSCRIPTION_PLANS

    return {
        "id": event_id,
        "type": event_type,
        "data": {
            "object": {
                "id": f"pi_{event_id}",
                "amount": SUBSCRIPTION_PLANS[plan]["price"] if amount is None else amount,
                "amount_received": SUBSCRIPTION_PLANS[plan]["price"] if amount is None else amount,
                "metadata": {"account_id": account_id, "plan": plan}
            }
        }
    }


@pytest.fixture
def event_factory():
    return payment_event


@pytest.fixture
def event_body():
    """Serialize an event exactly once so the signed bytes are the sent bytes."""
    return lambda event: json.dumps(event)


class InterleavingCollection:
    """Yields to the event loop around every call so concurrent writers interleave."""

    YIELDING = {"find_one", "find_one_and_update", "update_one"}

    def __init__(self, inner):
        self._inner = inner

    def __getattr__(self, name):
        attr = getattr(self._inner, name)
        if name not in self.YIELDING:
            return attr

        async def interleaved(*args, **kwargs):
            await asyncio.sleep(0)
            result = await attr(*args, **kwargs)
            await asyncio.sleep(0)
            return result

        return interleaved


class DbProxy:
    """Database wrapper that swaps in a custom `accounts` collection."""

    def __init__(self, db, accounts):
        self._db = db
        self.accounts = accounts

    def __getattr__(self, name):
        return getattr(self._db, name)


@pytest.fixture
def interleaved_db(db):
    return DbProxy(db, InterleavingCollection(db.accounts))
