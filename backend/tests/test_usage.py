"""
Usage Recorder Tests
"""
from datetime import datetime, timedelta, timezone

import pytest

from metering.usage import UsageRecorder


async def record(recorder, request_id, account_id="acct_1", model="deepseek", cost=16, text="hello"):
    return await recorder.record(
        request_id=request_id,
        account_id=account_id,
        credential="sk-abcdefg",
        model=model,
        units=4000,
        cost=cost,
        request_text=text,
        response_text="DeepSeek response simulation",
        latency_ms=12
    )


class TestRecord:

    @pytest.mark.asyncio
    async def test_write_is_idempotent(self, db):
        recorder = UsageRecorder(db)

        await record(recorder, "req_1")
        await record(recorder, "req_1", cost=99)

        records = await db.usage_records.find({}, {"_id": 0}).to_list(length=None)
        assert len(records) == 1
        assert records[0]["tokens_used"] == 16
        assert await recorder.exists("req_1")
        assert not await recorder.exists("req_2")

    @pytest.mark.asyncio
    async def test_stored_excerpt_is_capped(self, db):
        recorder = UsageRecorder(db)

        stored = await record(recorder, "req_1", text="y" * 5000)

        assert len(stored["request_excerpt"]) == 2003


class TestReporting:

    @pytest.mark.asyncio
    async def test_usage_newest_first_with_short_request(self, db):
        recorder = UsageRecorder(db)
        await record(recorder, "req_1", text="a" * 150)
        await record(recorder, "req_2", model="gpt4", cost=32)
        await record(recorder, "req_other", account_id="acct_2")
        earlier = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
        await db.usage_records.update_one({"request_id": "req_1"}, {"$set": {"timestamp": earlier}})

        usage = await recorder.get_usage("acct_1", days=7)

        assert [u["id"] for u in usage] == ["req_2", "req_1"]
        assert usage[0]["tokensUsed"] == 32
        assert usage[1]["request"] == "a" * 100 + "..."

    @pytest.mark.asyncio
    async def test_usage_window(self, db):
        recorder = UsageRecorder(db)
        await record(recorder, "req_new")
        old = (datetime.now(timezone.utc) - timedelta(days=10)).isoformat()
        await db.usage_records.update_one({"request_id": "req_new"}, {"$set": {"timestamp": old}})

        assert await recorder.get_usage("acct_1", days=7) == []
        assert len(await recorder.get_usage("acct_1", days=30)) == 1

    @pytest.mark.asyncio
    async def test_summarize_per_account(self, db):
        recorder = UsageRecorder(db)
        await record(recorder, "req_1", cost=16)
        await record(recorder, "req_2", model="gpt4", cost=32)
        await record(recorder, "req_3", account_id="acct_2", cost=4)

        summary = await recorder.summarize(datetime.now(timezone.utc) - timedelta(days=1))

        assert summary["acct_1"] == {
            "total_tokens": 48,
            "request_count": 2,
            "model_usage": {"deepseek": 16, "gpt4": 32}
        }
        assert summary["acct_2"]["total_tokens"] == 4
