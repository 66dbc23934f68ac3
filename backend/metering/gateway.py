"""
Metered Gateway - Single entry point for metered model calls

Per request:
    Authenticating -> Pricing -> Debiting -> Invoking -> Recording -> Responding

Authentication happens in the route dependency (utils.auth); this service
takes over from Pricing. Every stage can end the request:
- InvalidRequest (400) and InsufficientFunds (402) leave no trace at all
- UpstreamUnavailable (503): the completion failed after the debit; the
  debit is refunded before the error is returned (refund-on-failure policy)
- Internal (500): the usage record could not be written; the debit is
  refunded so there is never a charge without a usage record
- Cancelled by the client while invoking: the charge stands and a usage
  record with an empty response is written before the cancellation propagates

IMPORTANT: This is the ONLY place where model calls are billed.
"""

import time
import uuid
import asyncio
import logging
from typing import Dict, Any

from pymongo.errors import PyMongoError

from .config import (
    DEFAULT_MODEL,
    UNLIMITED_TIER,
    COMPLETION_TIMEOUT_SECONDS,
    ERROR_MESSAGES,
)
from .completion import ProviderRegistry, get_completion_registry
from .errors import InvalidRequest, UpstreamUnavailable, Internal
from .ledger import TokenLedger
from .models import ChatRequest, ChatResult
from .rate_table import cost, estimate_units, is_known_model
from .usage import UsageRecorder

logger = logging.getLogger(__name__)


class MeteredGateway:
    """
    Prices, debits, invokes and records one chat request.

    Usage:
        gateway = MeteredGateway(db)
        result = await gateway.chat(account, ChatRequest(messages=[...]))
    """

    def __init__(
        self,
        db,
        registry: ProviderRegistry = None,
        ledger: TokenLedger = None,
        recorder: UsageRecorder = None,
        timeout: float = COMPLETION_TIMEOUT_SECONDS
    ):
        self.db = db
        self.registry = registry or get_completion_registry()
        self.ledger = ledger or TokenLedger(db)
        self.recorder = recorder or UsageRecorder(db)
        self.timeout = timeout

    def price(self, account: Dict[str, Any], model_id: str, units: int) -> int:
        """Token cost of a request for this account; unlimited-tier accounts pay nothing."""
        if account.get("tier") == UNLIMITED_TIER:
            return 0
        return cost(model_id, units)

    async def chat(self, account: Dict[str, Any], request: ChatRequest) -> ChatResult:
        account_id = account["account_id"]
        request_id = uuid.uuid4().hex

        # Validate
        model_id = request.model or DEFAULT_MODEL
        if not is_known_model(model_id) or model_id not in self.registry:
            raise InvalidRequest(ERROR_MESSAGES["INVALID_MODEL"])
        provider = self.registry.get(model_id)

        messages = [message.model_dump() for message in request.messages]

        # Price
        units = estimate_units(messages)
        token_cost = self.price(account, model_id, units)

        # Debit (raises InsufficientFunds without side effects)
        remaining = await self.ledger.debit(account_id, token_cost, request_id, model_id)

        # Invoke
        started = time.monotonic()
        try:
            response_text = await asyncio.wait_for(provider.complete(messages), timeout=self.timeout)
        except asyncio.CancelledError:
            # Client went away; the attempt is still billed
            latency_ms = int((time.monotonic() - started) * 1000)
            logger.warning(f"Request {request_id} cancelled during completion; keeping charge of {token_cost} tokens")
            await self._keep_cancelled_charge(
                request_id=request_id,
                account_id=account_id,
                credential=account.get("credential"),
                model=model_id,
                units=units,
                cost=token_cost,
                request_text=messages[-1]["content"],
                response_text="",
                latency_ms=latency_ms
            )
            raise
        except Exception as e:
            reason = "timeout" if isinstance(e, asyncio.TimeoutError) else f"{type(e).__name__}: {e}"
            logger.error(f"Completion failed for {account_id} on '{model_id}' (request={request_id}): {reason}")
            await self._refund(account_id, request_id, f"completion failed: {reason}")
            raise UpstreamUnavailable(details=f"Model '{model_id}' did not respond") from e
        latency_ms = int((time.monotonic() - started) * 1000)

        # Record
        try:
            await self._record(
                request_id=request_id,
                account_id=account_id,
                credential=account.get("credential"),
                model=model_id,
                units=units,
                cost=token_cost,
                request_text=messages[-1]["content"],
                response_text=response_text,
                latency_ms=latency_ms
            )
        except PyMongoError as e:
            logger.error(
                f"RECONCILIATION_REQUIRED | usage record not written | "
                f"account={account_id} request={request_id} cost={token_cost} | {e}"
            )
            await self._refund(account_id, request_id, "usage record not written")
            raise Internal(ERROR_MESSAGES["USAGE_RECORDING_FAILED"]) from e

        # Settle; a failure here only leaves the charge for the reconciliation sweep
        try:
            await self.ledger.settle(account_id, request_id)
        except PyMongoError as e:
            logger.warning(f"Pending charge {request_id} for {account_id} left for reconciliation: {e}")

        logger.info(
            f"Metered call: account={account_id} model={model_id} units={units} "
            f"tokens={token_cost} remaining={remaining} latency_ms={latency_ms}"
        )

        return ChatResult(
            model=model_id,
            response=response_text,
            tokens_used=token_cost,
            remaining_tokens=remaining,
            request_id=request_id
        )

    async def _record(self, **record):
        """Write the usage record, retrying once (the write is idempotent on request id)."""
        try:
            await self.recorder.record(**record)
        except PyMongoError as e:
            logger.warning(f"Usage record write failed for request {record['request_id']}, retrying: {e}")
            await self.recorder.record(**record)

    async def _refund(self, account_id: str, request_id: str, reason: str):
        """Refund a pending charge; if that fails too, the reconciliation sweep refunds it later."""
        try:
            await self.ledger.refund(account_id, request_id, reason)
        except PyMongoError as e:
            logger.error(
                f"RECONCILIATION_REQUIRED | refund failed | "
                f"account={account_id} request={request_id} reason={reason} | {e}"
            )

    async def _keep_cancelled_charge(self, **record):
        """Record and settle a cancelled request; on failure the sweep refunds it instead."""
        try:
            await self._record(**record)
            await self.ledger.settle(record["account_id"], record["request_id"])
        except PyMongoError as e:
            logger.error(
                f"Cancelled request {record['request_id']} for {record['account_id']} "
                f"not recorded, left for reconciliation: {e}"
            )
