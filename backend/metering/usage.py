"""
Usage Recorder

Append-only audit trail of metered calls. Records are written once per
request id and never updated; reporting reads them, control decisions never do.
"""

import logging
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any, List

from .config import EXCERPT_LENGTH, STORED_EXCERPT_LENGTH
from .models import UsageRecord

logger = logging.getLogger(__name__)


def _excerpt(text: Optional[str], length: int = EXCERPT_LENGTH) -> str:
    text = text or ""
    if len(text) <= length:
        return text
    return text[:length] + "..."


class UsageRecorder:
    """Writes and reads `usage_records`."""

    def __init__(self, db):
        self.db = db

    async def record(
        self,
        request_id: str,
        account_id: str,
        credential: Optional[str],
        model: str,
        units: int,
        cost: int,
        request_text: str,
        response_text: str,
        latency_ms: int
    ) -> Dict[str, Any]:
        """
        Append one immutable usage record.

        Idempotent on `request_id`: a retried write after a lost acknowledgement
        leaves exactly one record. Store errors propagate to the caller.
        """
        record = UsageRecord(
            request_id=request_id,
            account_id=account_id,
            credential=credential,
            model=model,
            units=units,
            tokens_used=cost,
            request_excerpt=_excerpt(request_text, STORED_EXCERPT_LENGTH),
            response_excerpt=_excerpt(response_text, STORED_EXCERPT_LENGTH),
            timestamp=datetime.now(timezone.utc).isoformat(),
            latency_ms=latency_ms
        ).model_dump()

        await self.db.usage_records.update_one(
            {"request_id": request_id},
            {"$setOnInsert": record},
            upsert=True
        )
        return record

    async def exists(self, request_id: str) -> bool:
        record = await self.db.usage_records.find_one({"request_id": request_id}, {"_id": 0, "request_id": 1})
        return record is not None

    async def get_usage(self, account_id: str, days: int) -> List[Dict[str, Any]]:
        """Usage for the last `days` days, newest first, with truncated request text."""
        since = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()

        records = await self.db.usage_records.find(
            {"account_id": account_id, "timestamp": {"$gte": since}},
            {"_id": 0}
        ).sort("timestamp", -1).to_list(length=None)

        return [
            {
                "id": record["request_id"],
                "model": record["model"],
                "tokensUsed": record["tokens_used"],
                "timestamp": record["timestamp"],
                "request": _excerpt(record.get("request_excerpt"))
            }
            for record in records
        ]

    async def summarize(self, since: datetime) -> Dict[str, Dict[str, Any]]:
        """
        Per-account roll-up of usage since `since`.

        Returns:
            {account_id: {total_tokens, request_count, model_usage: {model: tokens}}}
        """
        records = await self.db.usage_records.find(
            {"timestamp": {"$gte": since.isoformat()}},
            {"_id": 0, "account_id": 1, "model": 1, "tokens_used": 1}
        ).to_list(length=None)

        summary: Dict[str, Dict[str, Any]] = {}
        for record in records:
            entry = summary.setdefault(record["account_id"], {
                "total_tokens": 0,
                "request_count": 0,
                "model_usage": {}
            })
            entry["total_tokens"] += record["tokens_used"]
            entry["request_count"] += 1
            entry["model_usage"][record["model"]] = (
                entry["model_usage"].get(record["model"], 0) + record["tokens_used"]
            )

        return summary
