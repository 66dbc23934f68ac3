"""
Payment Reconciler - Stripe payment intents and webhook crediting

Features:
- Payment intent creation with account/plan metadata
- Webhook signature verification over the raw request body
- Exactly-once crediting per Stripe event id
- Audit log of every succeeded, failed, rejected or ignored event

Required Environment Variables:
- STRIPE_SECRET_KEY
- STRIPE_WEBHOOK_SECRET

Webhook outcome policy:
- Bad signature: SignatureInvalid (400), permanent, never processed
- Permanent data problems (unknown plan/account, amount mismatch): logged as
  'rejected' and acknowledged, since redelivery cannot fix them
- Store failures: propagate, so Stripe redelivers (safe, crediting is idempotent)
"""

import os
import json
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

import stripe

from .config import (
    SUBSCRIPTION_PLANS,
    PURCHASABLE_PLANS,
    PAYMENT_CURRENCY,
    PAYMENT_SUCCEEDED_EVENT,
    PAYMENT_FAILED_EVENT,
    PAYMENT_HISTORY_LIMIT,
    ERROR_MESSAGES,
)
from .errors import InvalidRequest, SignatureInvalid, UpstreamUnavailable, Internal, NotFound
from .ledger import TokenLedger
from .models import PaymentEvent, ReconcileOutcome

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300


def plan_catalog() -> Dict[str, Dict[str, Any]]:
    """Purchasable plans keyed by plan id."""
    return {plan_id: SUBSCRIPTION_PLANS[plan_id] for plan_id in PURCHASABLE_PLANS}


class PaymentReconciler:
    """Stripe integration for plan purchases."""

    def __init__(self, db, ledger: TokenLedger = None):
        self.db = db
        self.ledger = ledger or TokenLedger(db)

    @property
    def api_key(self) -> str:
        return os.environ.get("STRIPE_SECRET_KEY", "")

    @property
    def webhook_secret(self) -> str:
        return os.environ.get("STRIPE_WEBHOOK_SECRET", "")

    # ==================== CHECKOUT ====================

    async def create_payment_intent(self, account_id: str, plan_id: str) -> str:
        """
        Create a Stripe payment intent for a plan purchase.

        Returns:
            The intent's client secret for the checkout UI
        """
        if plan_id not in PURCHASABLE_PLANS:
            raise InvalidRequest(ERROR_MESSAGES["INVALID_PLAN"])

        plan = SUBSCRIPTION_PLANS[plan_id]

        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                api_key=self.api_key,
                amount=plan["price"],
                currency=PAYMENT_CURRENCY,
                metadata={"account_id": account_id, "plan": plan_id}
            )
        except stripe.StripeError as e:
            logger.error(f"Payment intent creation error for {account_id}: {e}")
            raise UpstreamUnavailable("Error creating payment intent")

        logger.info(f"Created payment intent {intent['id']} for {account_id} (plan={plan_id})")
        return intent["client_secret"]

    # ==================== WEBHOOK ====================

    def verify_event(self, payload: bytes, sig_header: Optional[str]) -> Optional[Dict[str, Any]]:
        """
        Verify the Stripe-Signature header over the raw body and parse the event.

        Only a bad signature is an error. A signed body that is not a usable
        event is logged and None is returned, so it is acknowledged rather
        than redelivered forever.
        """
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET not configured")
            raise Internal("Stripe webhook not configured")

        if not sig_header:
            raise SignatureInvalid(details="Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body, sig_header, self.webhook_secret, tolerance=SIGNATURE_TOLERANCE_SECONDS
            )
        except (UnicodeDecodeError, stripe.SignatureVerificationError) as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise SignatureInvalid(details=str(e))

        try:
            event = json.loads(body)
        except ValueError as e:
            logger.error(f"Rejected webhook payload: not JSON ({e})")
            return None

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            logger.error("Rejected webhook payload: missing event id or type")
            return None
        return event

    async def handle_event(self, event: Dict[str, Any]) -> ReconcileOutcome:
        """Route a verified event to its handler."""
        event_id = event["id"]
        event_type = event["type"]
        data = (event.get("data") or {}).get("object") or {}

        handlers = {
            PAYMENT_SUCCEEDED_EVENT: self._handle_payment_succeeded,
            PAYMENT_FAILED_EVENT: self._handle_payment_failed,
        }

        handler = handlers.get(event_type)
        if handler:
            outcome = await handler(event_id, event_type, data)
        else:
            logger.info(f"Unhandled event type {event_type}")
            outcome = ReconcileOutcome(event_id=event_id, event_type=event_type, status="ignored")

        logger.info(f"Webhook {event_type} ({event_id}): {outcome.status} {outcome.message}".rstrip())
        return outcome

    async def _handle_payment_succeeded(self, event_id: str, event_type: str, intent: Dict) -> ReconcileOutcome:
        metadata = intent.get("metadata") or {}
        account_id = metadata.get("account_id")
        plan_id = metadata.get("plan")
        amount = intent.get("amount_received") or intent.get("amount")

        def reject(reason: str) -> ReconcileOutcome:
            logger.error(f"Rejected payment event {event_id}: {reason}")
            return ReconcileOutcome(event_id=event_id, event_type=event_type, status="rejected", message=reason)

        problem = None
        if not account_id:
            problem = "Missing account_id metadata"
        elif plan_id not in PURCHASABLE_PLANS:
            problem = f"Unknown plan: {plan_id}"
        elif amount != SUBSCRIPTION_PLANS[plan_id]["price"]:
            problem = f"Amount mismatch: {amount} != {SUBSCRIPTION_PLANS[plan_id]['price']}"

        if problem:
            await self._log_event(event_id, event_type, "rejected", intent, account_id, plan_id, problem)
            return reject(problem)

        try:
            applied, balance = await self.ledger.apply_payment(account_id, event_id, plan_id)
        except (NotFound, InvalidRequest) as e:
            problem = f"Account not found: {account_id}" if isinstance(e, NotFound) else e.message
            await self._log_event(event_id, event_type, "rejected", intent, account_id, plan_id, problem)
            return reject(problem)

        # Written after the credit; upsert keeps redeliveries from duplicating it
        await self._log_event(event_id, event_type, "succeeded", intent, account_id, plan_id)

        if not applied:
            return ReconcileOutcome(
                event_id=event_id, event_type=event_type, status="already_applied",
                message="Event already processed"
            )

        return ReconcileOutcome(
            event_id=event_id, event_type=event_type, status="credited",
            message=f"Applied plan {plan_id} (balance={balance})"
        )

    async def _handle_payment_failed(self, event_id: str, event_type: str, intent: Dict) -> ReconcileOutcome:
        """Failed payments are logged for audit only; the balance is untouched."""
        metadata = intent.get("metadata") or {}
        error = (intent.get("last_payment_error") or {}).get("message")

        await self._log_event(
            event_id, event_type, "failed", intent,
            metadata.get("account_id"), metadata.get("plan"), error
        )
        logger.warning(f"Payment failed for account {metadata.get('account_id')}: {error}")

        return ReconcileOutcome(event_id=event_id, event_type=event_type, status="failed_logged", message=error or "")

    async def _log_event(
        self,
        event_id: str,
        event_type: str,
        status: str,
        intent: Dict,
        account_id: Optional[str],
        plan_id: Optional[str],
        error: Optional[str] = None
    ):
        """Write the audit record for an event (first write wins)."""
        record = PaymentEvent(
            event_id=event_id,
            event_type=event_type,
            status=status,
            account_id=account_id,
            plan=plan_id,
            amount=intent.get("amount_received") or intent.get("amount"),
            payment_intent_id=intent.get("id"),
            error=error,
            timestamp=datetime.now(timezone.utc).isoformat()
        ).model_dump()

        await self.db.payment_events.update_one(
            {"event_id": event_id},
            {"$setOnInsert": record},
            upsert=True
        )

    # ==================== SUBSCRIPTION ====================

    async def get_history(self, account_id: str, limit: int = PAYMENT_HISTORY_LIMIT) -> List[Dict[str, Any]]:
        """Most recent payment events for the account."""
        events = await self.db.payment_events.find(
            {"account_id": account_id},
            {"_id": 0}
        ).sort("timestamp", -1).limit(limit).to_list(length=limit)

        return [
            {
                "id": event["event_id"],
                "plan": event.get("plan"),
                "amount": event.get("amount"),
                "status": event["status"],
                "timestamp": event["timestamp"]
            }
            for event in events
        ]

    async def cancel_subscription(self, account_id: str) -> None:
        """Move the account back to the free tier; the remaining balance is kept."""
        await self.ledger.set_tier(account_id, "free")
