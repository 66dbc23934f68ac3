"""
Payment Routes - Stripe checkout and webhook

Endpoints:
- POST /payment/create-payment-intent - Start a plan purchase
- POST /payment/webhook - Stripe webhook (signature-verified, no auth)
- GET /payment/plans - Purchasable plans (public)
- GET /payment/history - Recent payment events
- POST /payment/cancel-subscription - Back to the free tier
"""
import logging

from fastapi import APIRouter, Depends, Request, Header
from typing import Optional

from database import get_database
from metering.models import PaymentIntentRequest
from metering.payments import PaymentReconciler, plan_catalog
from utils.auth import get_current_account

logger = logging.getLogger(__name__)

payment_router = APIRouter(prefix="/payment", tags=["Payment"])


@payment_router.post("/create-payment-intent")
async def create_payment_intent(
    body: PaymentIntentRequest,
    account: dict = Depends(get_current_account),
    db=Depends(get_database)
):
    client_secret = await PaymentReconciler(db).create_payment_intent(account["account_id"], body.plan)
    return {"clientSecret": client_secret}


@payment_router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    db=Depends(get_database)
):
    """
    Stripe webhook handler.

    The signature is verified over the raw body before anything is parsed.
    Any non-2xx response makes Stripe redeliver, which is safe because
    crediting is idempotent on the event id.
    """
    payload = await request.body()

    reconciler = PaymentReconciler(db)
    event = reconciler.verify_event(payload, stripe_signature)
    if event is not None:
        await reconciler.handle_event(event)

    return {"received": True}


@payment_router.get("/plans")
async def get_plans():
    return {"plans": plan_catalog()}


@payment_router.get("/history")
async def get_payment_history(account: dict = Depends(get_current_account), db=Depends(get_database)):
    history = await PaymentReconciler(db).get_history(account["account_id"])
    return {"history": history}


@payment_router.post("/cancel-subscription")
async def cancel_subscription(account: dict = Depends(get_current_account), db=Depends(get_database)):
    """Cancel the plan; the remaining balance stays usable"""
    await PaymentReconciler(db).cancel_subscription(account["account_id"])
    return {"message": "Subscription cancelled successfully"}
