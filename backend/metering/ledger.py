"""
Token Ledger

Core balance operations including:
- Lazy account provisioning with a seeded free balance
- Balance queries
- Debits, refunds and credits (atomic, concurrency-safe)
- Idempotent payment application
- Pending charge reconciliation
- Ledger entries

CRITICAL: Every balance mutation is a single conditional update against the
account document. The filter carries the precondition (balance covers the
debit, request id unused, event not yet applied) and the update uses `$inc`,
so concurrent writers never see each other's work as a conflict and the store
alone decides which ones fit. Application code never reads a balance and
writes it back, so negative balances and double credits are impossible under
any concurrency scenario.
"""

import logging
from datetime import datetime, timezone, timedelta
from typing import Optional, Tuple, Dict, Any, Callable, Awaitable

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .config import (
    INITIAL_FREE_TOKENS,
    MAX_BALANCE,
    SUBSCRIPTION_PLANS,
    TIERS,
    ERROR_MESSAGES,
)
from .errors import InsufficientFunds, InvalidRequest, NotFound
from .models import Account, LedgerEntry, PendingCharge

logger = logging.getLogger(__name__)

OVERFLOW_MESSAGE = "Credit would exceed the maximum balance"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class TokenLedger:
    """Owns account balances. The only writer of `accounts.balance`."""

    def __init__(self, db):
        self.db = db

    # ==================== ACCOUNTS ====================

    async def provision(
        self,
        account_id: str,
        email: Optional[str] = None,
        display_name: str = ""
    ) -> Dict[str, Any]:
        """
        Get existing account or create one lazily.

        Called with the identity provider's subject the first time a verified
        identity is seen; the new account is seeded with INITIAL_FREE_TOKENS.
        """
        account = await self.db.accounts.find_one({"account_id": account_id}, {"_id": 0})
        if account:
            return account

        now = _now_iso()
        account_doc = Account(
            account_id=account_id,
            email=email,
            display_name=display_name or "",
            balance=INITIAL_FREE_TOKENS,
            created_at=now,
            updated_at=now
        ).model_dump()

        # Use upsert to handle concurrent first requests for the same identity
        try:
            result = await self.db.accounts.update_one(
                {"account_id": account_id},
                {"$setOnInsert": account_doc},
                upsert=True
            )
        except DuplicateKeyError:
            result = None

        if result is not None and result.upserted_id is not None:
            logger.info(f"Created new account {account_id} with {INITIAL_FREE_TOKENS} tokens")
            await self._write_ledger_entry(
                account_id=account_id,
                kind="seed",
                amount=INITIAL_FREE_TOKENS,
                reference=account_id,
                details={"type": "signup"}
            )

        return await self.get_account(account_id)

    async def get_account(self, account_id: str) -> Dict[str, Any]:
        account = await self.db.accounts.find_one({"account_id": account_id}, {"_id": 0})
        if not account:
            raise NotFound(ERROR_MESSAGES["ACCOUNT_NOT_FOUND"])
        return account

    async def get_balance(self, account_id: str) -> int:
        """
        Display-only balance read.

        Never use this to gate a debit; debit() re-checks inside its own write.
        """
        account = await self.get_account(account_id)
        return account.get("balance", 0)

    # ==================== BALANCE MUTATIONS ====================

    async def debit(self, account_id: str, amount: int, request_id: str, model: str) -> int:
        """
        Atomically take `amount` tokens from the account.

        The charge is parked in `pending_charges[request_id]` by the same write,
        so it can later be settled (usage recorded) or refunded exactly once.

        Returns:
            The balance after the debit

        Raises:
            InsufficientFunds: amount exceeds the balance (nothing is written)
        """
        if amount < 0:
            raise ValueError("Debit amount must be non-negative")

        now = _now_iso()
        charge = PendingCharge(amount=amount, model=model, created_at=now)

        # Atomic deduction with conditional update: only matches while the
        # balance still covers the amount and the request id is unused
        account = await self.db.accounts.find_one_and_update(
            {
                "account_id": account_id,
                "balance": {"$gte": amount},
                f"pending_charges.{request_id}": {"$exists": False}
            },
            {
                "$inc": {"balance": -amount},
                "$set": {f"pending_charges.{request_id}": charge.model_dump(), "updated_at": now}
            },
            projection={"_id": 0, "balance": 1},
            return_document=ReturnDocument.AFTER
        )

        if account is None:
            # Missed: tell a duplicate request id apart from a short balance
            current = await self.get_account(account_id)
            if request_id in (current.get("pending_charges") or {}):
                raise InvalidRequest(f"Duplicate request id {request_id}")
            raise InsufficientFunds(available=current.get("balance", 0), required=amount)

        new_balance = account["balance"]

        await self._write_ledger_entry(
            account_id=account_id,
            kind="debit",
            amount=-amount,
            reference=request_id,
            details={"model": model}
        )

        logger.debug(f"Debited {amount} tokens from {account_id} (request={request_id}, balance={new_balance})")
        return new_balance

    async def settle(self, account_id: str, request_id: str) -> bool:
        """Clear a pending charge once its usage record is durable."""
        result = await self.db.accounts.update_one(
            {"account_id": account_id, f"pending_charges.{request_id}": {"$exists": True}},
            {
                "$unset": {f"pending_charges.{request_id}": ""},
                "$set": {"updated_at": _now_iso()}
            }
        )
        return result.modified_count > 0

    async def refund(self, account_id: str, request_id: str, reason: str) -> bool:
        """
        Return a pending charge to the balance.

        Restores the exact amount debited for `request_id` and clears the
        pending entry in one write. A second refund for the same request is a
        no-op and returns False.
        """
        account = await self.get_account(account_id)
        charge = (account.get("pending_charges") or {}).get(request_id)
        if not charge:
            return False

        amount = charge["amount"]

        # A pending charge never changes once parked, so the amount read above
        # is still the one to restore if the entry is still there
        result = await self.db.accounts.update_one(
            {"account_id": account_id, f"pending_charges.{request_id}.amount": amount},
            {
                "$inc": {"balance": amount},
                "$unset": {f"pending_charges.{request_id}": ""},
                "$set": {"updated_at": _now_iso()}
            }
        )
        if result.modified_count == 0:
            # Settled or refunded concurrently
            return False

        await self._write_ledger_entry(
            account_id=account_id,
            kind="refund",
            amount=amount,
            reference=request_id,
            details={"reason": reason}
        )

        logger.info(f"Refunded {amount} tokens to {account_id} (request={request_id}, reason={reason})")
        return True

    async def credit(
        self,
        account_id: str,
        amount: int,
        reference: str,
        details: Optional[Dict] = None
    ) -> int:
        """
        Add tokens to the account.

        Returns:
            The balance after the credit
        """
        if amount <= 0:
            raise InvalidRequest("Invalid token amount")

        account = await self.db.accounts.find_one_and_update(
            {"account_id": account_id, "balance": {"$lte": MAX_BALANCE - amount}},
            {"$inc": {"balance": amount}, "$set": {"updated_at": _now_iso()}},
            projection={"_id": 0, "balance": 1},
            return_document=ReturnDocument.AFTER
        )
        if account is None:
            await self.get_account(account_id)
            raise InvalidRequest(OVERFLOW_MESSAGE)

        await self._write_ledger_entry(
            account_id=account_id,
            kind="credit",
            amount=amount,
            reference=reference,
            details=details or {}
        )

        logger.info(f"Credited {amount} tokens to {account_id} (reference={reference})")
        return account["balance"]

    async def apply_payment(self, account_id: str, event_id: str, plan_id: str) -> Tuple[bool, int]:
        """
        Credit a plan purchase exactly once per processor event.

        The event id is appended to `applied_payment_events` in the same write
        that adds the grant and sets the tier, and that write only matches while
        the id is absent, so two deliveries of one event can never both apply.

        Returns:
            (applied, balance) - applied is False when the event was already credited
        """
        plan = SUBSCRIPTION_PLANS.get(plan_id)
        if not plan:
            raise NotFound(f"Unknown plan: {plan_id}")

        grant = plan["tokens"] or 0
        now = _now_iso()

        query = {"account_id": account_id, "applied_payment_events": {"$ne": event_id}}
        update = {
            "$set": {"tier": plan_id, "subscription_updated_at": now, "updated_at": now},
            "$push": {"applied_payment_events": event_id}
        }
        if grant:
            query["balance"] = {"$lte": MAX_BALANCE - grant}
            update["$inc"] = {"balance": grant}

        account = await self.db.accounts.find_one_and_update(
            query,
            update,
            projection={"_id": 0, "balance": 1},
            return_document=ReturnDocument.AFTER
        )

        if account is None:
            current = await self.get_account(account_id)
            if event_id in (current.get("applied_payment_events") or []):
                logger.info(f"Payment event {event_id} already applied to {account_id}, skipping")
                return False, current.get("balance", 0)
            raise InvalidRequest(OVERFLOW_MESSAGE)

        if grant:
            await self._write_ledger_entry(
                account_id=account_id,
                kind="credit",
                amount=grant,
                reference=event_id,
                details={"plan": plan_id}
            )

        logger.info(f"Applied plan '{plan_id}' to {account_id}: +{grant} tokens (event={event_id})")
        return True, account["balance"]

    async def set_tier(self, account_id: str, tier: str) -> None:
        if tier not in TIERS:
            raise InvalidRequest(ERROR_MESSAGES["INVALID_PLAN"])

        now = _now_iso()
        result = await self.db.accounts.update_one(
            {"account_id": account_id},
            {"$set": {"tier": tier, "subscription_updated_at": now, "updated_at": now}}
        )
        if result.matched_count == 0:
            raise NotFound(ERROR_MESSAGES["ACCOUNT_NOT_FOUND"])

        logger.info(f"Account {account_id} moved to tier '{tier}'")

    # ==================== RECONCILIATION ====================

    async def reconcile_pending_charges(
        self,
        usage_exists: Callable[[str], Awaitable[bool]],
        older_than: timedelta
    ) -> Dict[str, int]:
        """
        Resolve pending charges left behind by interrupted requests.

        A charge older than `older_than` is settled when its usage record
        exists and refunded when it does not, so no charge is left
        standing without a usage record.
        """
        cutoff = (datetime.now(timezone.utc) - older_than).isoformat()
        summary = {"settled": 0, "refunded": 0}

        accounts = await self.db.accounts.find(
            {"pending_charges": {"$exists": True, "$ne": {}}},
            {"_id": 0, "account_id": 1, "pending_charges": 1}
        ).to_list(length=None)

        for account in accounts:
            account_id = account["account_id"]
            for request_id, charge in (account.get("pending_charges") or {}).items():
                if charge.get("created_at", "") > cutoff:
                    continue

                if await usage_exists(request_id):
                    if await self.settle(account_id, request_id):
                        summary["settled"] += 1
                elif await self.refund(account_id, request_id, reason="reconciliation: no usage record"):
                    summary["refunded"] += 1

        if summary["settled"] or summary["refunded"]:
            logger.warning(
                f"Pending charge reconciliation: settled={summary['settled']} refunded={summary['refunded']}"
            )
        return summary

    # ==================== LEDGER LOG ====================

    async def get_ledger(self, account_id: str, limit: int = 50) -> list:
        """Get recent ledger entries for an account."""
        cursor = self.db.token_ledger.find(
            {"account_id": account_id},
            {"_id": 0}
        ).sort("timestamp", -1).limit(limit)

        return await cursor.to_list(length=limit)

    async def _write_ledger_entry(
        self,
        account_id: str,
        kind: str,
        amount: int,
        reference: str,
        details: Optional[Dict] = None
    ):
        """Write an immutable ledger entry (idempotent on kind + reference)."""
        entry = LedgerEntry(
            entry_id=f"{kind}:{reference}",
            account_id=account_id,
            kind=kind,
            amount=amount,
            reference=reference,
            timestamp=_now_iso(),
            details=details or {}
        )

        # The account document is authoritative; a lost log line is reported, not raised
        try:
            await self.db.token_ledger.update_one(
                {"entry_id": entry.entry_id},
                {"$setOnInsert": entry.model_dump()},
                upsert=True
            )
        except PyMongoError as e:
            logger.error(
                f"RECONCILIATION_REQUIRED | ledger entry not written | "
                f"account={account_id} kind={kind} amount={amount} reference={reference} | {e}"
            )
