"""
Metered Gateway Tests

Tests for:
- Price -> debit -> invoke -> record on a successful call
- Insufficient funds: no charge, no invocation, no record
- Refund-on-failure when the model fails or times out after the debit
- Refund when the usage record cannot be written
- Charge kept and usage recorded when the client cancels mid-call
- Default provider registry with and without simulated completions
"""
import asyncio
import os
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from pymongo.errors import AutoReconnect

from metering.completion import (
    CompletionProvider,
    OpenAICompatibleProvider,
    ProviderRegistry,
    SimulatedProvider,
    build_default_registry,
)
from metering.errors import InsufficientFunds, Internal, InvalidRequest, UpstreamUnavailable
from metering.gateway import MeteredGateway
from metering.ledger import TokenLedger
from metering.models import ChatRequest
from metering.usage import UsageRecorder


class FailingProvider(CompletionProvider):
    async def complete(self, messages):
        raise RuntimeError("upstream returned 502")


class SlowProvider(CompletionProvider):
    async def complete(self, messages):
        await asyncio.sleep(5)
        return "too late"


def chat_request(content="x" * 16000, model="deepseek"):
    return ChatRequest(model=model, messages=[{"role": "user", "content": content}])


class TestSuccessfulCall:

    @pytest.mark.asyncio
    async def test_scenario_a(self, db, registry, make_account):
        """balance 50, deepseek, 4000 units -> cost 16, 34 left, one record of 16"""
        account = await make_account(balance=50)
        gateway = MeteredGateway(db, registry=registry)

        result = await gateway.chat(account, chat_request())

        assert result.to_response() == {
            "model": "deepseek",
            "response": "DeepSeek response simulation",
            "tokensUsed": 16,
            "remainingTokens": 34
        }
        stored = await db.accounts.find_one({"account_id": "acct_1"}, {"_id": 0})
        assert stored["balance"] == 34
        assert stored["pending_charges"] == {}

        records = await db.usage_records.find({}, {"_id": 0}).to_list(length=None)
        assert len(records) == 1
        assert records[0]["tokens_used"] == 16
        assert records[0]["units"] == 4000
        assert records[0]["request_id"] == result.request_id

    @pytest.mark.asyncio
    async def test_default_model(self, db, registry, make_account):
        account = await make_account(balance=50)

        result = await MeteredGateway(db, registry=registry).chat(
            account, ChatRequest(messages=[{"content": "hello"}])
        )

        assert result.model == "deepseek"
        assert result.tokens_used == 1

    @pytest.mark.asyncio
    async def test_unlimited_tier_is_not_charged(self, db, registry, make_account):
        account = await make_account(balance=0, tier="unlimited")

        result = await MeteredGateway(db, registry=registry).chat(account, chat_request(model="gpt4"))

        assert result.tokens_used == 0
        assert result.remaining_tokens == 0
        assert await db.usage_records.count_documents({}) == 1


class TestRejectedBeforeDebit:

    @pytest.mark.asyncio
    async def test_scenario_b(self, db, make_account):
        """balance 5, cost 16 -> 402, balance still 5, no record, model never called"""
        account = await make_account(balance=5)
        provider = CompletionProvider("deepseek")
        provider.complete = AsyncMock(return_value="unused")
        registry = ProviderRegistry()
        registry.register(provider)

        with pytest.raises(InsufficientFunds) as exc_info:
            await MeteredGateway(db, registry=registry).chat(account, chat_request())

        assert exc_info.value.status_code == 402
        assert exc_info.value.to_dict() == {"error": "Insufficient tokens", "required": 16, "available": 5}
        provider.complete.assert_not_awaited()
        assert await TokenLedger(db).get_balance("acct_1") == 5
        assert await db.usage_records.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_unknown_model(self, db, registry, make_account):
        account = await make_account(balance=50)

        with pytest.raises(InvalidRequest):
            await MeteredGateway(db, registry=registry).chat(account, chat_request(model="gpt-5"))

        assert await TokenLedger(db).get_balance("acct_1") == 50

    @pytest.mark.asyncio
    async def test_model_without_provider(self, db, make_account):
        account = await make_account(balance=50)

        with pytest.raises(InvalidRequest):
            await MeteredGateway(db, registry=ProviderRegistry()).chat(account, chat_request())

        assert await TokenLedger(db).get_balance("acct_1") == 50


class TestRefundOnFailure:

    @pytest.mark.asyncio
    async def test_upstream_failure_refunds(self, db, make_account):
        account = await make_account(balance=50)
        registry = ProviderRegistry()
        registry.register(FailingProvider("deepseek"))

        with pytest.raises(UpstreamUnavailable) as exc_info:
            await MeteredGateway(db, registry=registry).chat(account, chat_request())

        assert exc_info.value.status_code == 503
        stored = await db.accounts.find_one({"account_id": "acct_1"}, {"_id": 0})
        assert stored["balance"] == 50
        assert stored["pending_charges"] == {}
        assert await db.usage_records.count_documents({}) == 0
        kinds = sorted(e["kind"] for e in await TokenLedger(db).get_ledger("acct_1"))
        assert kinds == ["debit", "refund"]

    @pytest.mark.asyncio
    async def test_timeout_refunds(self, db, make_account):
        account = await make_account(balance=50)
        registry = ProviderRegistry()
        registry.register(SlowProvider("deepseek"))

        with pytest.raises(UpstreamUnavailable):
            await MeteredGateway(db, registry=registry, timeout=0.01).chat(account, chat_request())

        assert await TokenLedger(db).get_balance("acct_1") == 50

    @pytest.mark.asyncio
    async def test_every_failure_is_refunded(self, db, make_account):
        account = await make_account(balance=50)
        registry = ProviderRegistry()
        registry.register(FailingProvider("deepseek"))
        gateway = MeteredGateway(db, registry=registry)

        for _ in range(3):
            with pytest.raises(UpstreamUnavailable):
                await gateway.chat(account, chat_request())

        assert await TokenLedger(db).get_balance("acct_1") == 50

    @pytest.mark.asyncio
    async def test_usage_record_failure_refunds(self, db, registry, make_account):
        account = await make_account(balance=50)
        recorder = UsageRecorder(db)
        recorder.record = AsyncMock(side_effect=AutoReconnect("primary stepped down"))

        with pytest.raises(Internal):
            await MeteredGateway(db, registry=registry, recorder=recorder).chat(account, chat_request())

        assert recorder.record.await_count == 2
        stored = await db.accounts.find_one({"account_id": "acct_1"}, {"_id": 0})
        assert stored["balance"] == 50
        assert stored["pending_charges"] == {}

    @pytest.mark.asyncio
    async def test_usage_record_retry_succeeds(self, db, registry, make_account):
        account = await make_account(balance=50)
        recorder = UsageRecorder(db)
        recorder.record = AsyncMock(side_effect=[AutoReconnect("blip"), None])

        result = await MeteredGateway(db, registry=registry, recorder=recorder).chat(account, chat_request())

        assert result.tokens_used == 16
        assert recorder.record.await_count == 2
        stored = await db.accounts.find_one({"account_id": "acct_1"}, {"_id": 0})
        assert stored["balance"] == 34
        assert stored["pending_charges"] == {}


class HangingProvider(CompletionProvider):
    """Signals once invoked, then never answers"""

    def __init__(self, model_id):
        super().__init__(model_id)
        self.invoked = asyncio.Event()

    async def complete(self, messages):
        self.invoked.set()
        await asyncio.Event().wait()


class TestClientCancellation:

    @pytest.mark.asyncio
    async def test_cancelled_call_keeps_charge_and_records_usage(self, db, make_account):
        account = await make_account(balance=50)
        provider = HangingProvider("deepseek")
        registry = ProviderRegistry()
        registry.register(provider)

        task = asyncio.create_task(MeteredGateway(db, registry=registry).chat(account, chat_request()))
        await provider.invoked.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        stored = await db.accounts.find_one({"account_id": "acct_1"}, {"_id": 0})
        assert stored["balance"] == 34
        assert stored["pending_charges"] == {}
        records = await db.usage_records.find({}, {"_id": 0}).to_list(length=None)
        assert len(records) == 1
        assert records[0]["tokens_used"] == 16
        assert records[0]["response_excerpt"] == ""

    @pytest.mark.asyncio
    async def test_cancelled_call_not_refunded_by_sweep(self, db, make_account):
        account = await make_account(balance=50)
        provider = HangingProvider("deepseek")
        registry = ProviderRegistry()
        registry.register(provider)

        task = asyncio.create_task(MeteredGateway(db, registry=registry).chat(account, chat_request()))
        await provider.invoked.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        ledger = TokenLedger(db)
        result = await ledger.reconcile_pending_charges(UsageRecorder(db).exists, timedelta(0))

        assert result == {"settled": 0, "refunded": 0}
        assert await ledger.get_balance("acct_1") == 34


class TestDefaultRegistry:

    PROVIDER_KEYS = ["OPENAI_API_KEY", "GEMINI_API_KEY", "ANTHROPIC_API_KEY", "DEEPSEEK_API_KEY"]

    def _env(self, **keys):
        env = {name: "" for name in self.PROVIDER_KEYS}
        env.update(keys)
        return env

    def test_missing_keys_simulated_outside_production(self):
        with patch.dict(os.environ, self._env(DEEPSEEK_API_KEY="sk-test")):
            registry = build_default_registry()

        assert registry.model_ids() == ["claude", "deepseek", "gemini", "gpt4"]
        assert isinstance(registry.get("deepseek"), OpenAICompatibleProvider)
        assert isinstance(registry.get("gpt4"), SimulatedProvider)

    def test_missing_keys_not_served_in_production(self):
        with patch.dict(os.environ, self._env(DEEPSEEK_API_KEY="sk-test")), \
                patch("metering.completion.allow_mock_data", return_value=False):
            registry = build_default_registry()

        assert registry.model_ids() == ["deepseek"]
        assert "gpt4" not in registry
