"""
Token Routes - Balance, usage and API key management

All endpoints require a bearer identity token except /tokens/pricing.
"""
from fastapi import APIRouter, Depends, Query

from database import get_database
from metering.config import DEFAULT_USAGE_DAYS
from metering.credentials import CredentialResolver
from metering.ledger import TokenLedger
from metering.rate_table import model_catalog
from metering.usage import UsageRecorder
from utils.auth import get_current_account

tokens_router = APIRouter(prefix="/tokens", tags=["Tokens"])


@tokens_router.get("/balance")
async def get_balance(account: dict = Depends(get_current_account), db=Depends(get_database)):
    """Current token balance"""
    balance = await TokenLedger(db).get_balance(account["account_id"])
    return {"balance": balance}


@tokens_router.get("/usage")
async def get_usage(
    days: int = Query(DEFAULT_USAGE_DAYS, ge=1, le=365),
    account: dict = Depends(get_current_account),
    db=Depends(get_database)
):
    """Usage records for the last `days` days, newest first"""
    usage = await UsageRecorder(db).get_usage(account["account_id"], days)
    return {"usage": usage}


@tokens_router.post("/api-key")
async def create_api_key(account: dict = Depends(get_current_account), db=Depends(get_database)):
    """
    Issue a new API key.

    The raw key is only returned here; store it now.
    """
    raw_key = await CredentialResolver(db).create_api_key(account["account_id"])
    return {"apiKey": raw_key}


@tokens_router.delete("/api-key/{key}")
async def revoke_api_key(key: str, account: dict = Depends(get_current_account), db=Depends(get_database)):
    await CredentialResolver(db).revoke_api_key(account["account_id"], key)
    return {"message": "API key revoked successfully"}


@tokens_router.get("/api-keys")
async def list_api_keys(account: dict = Depends(get_current_account), db=Depends(get_database)):
    """Prefixes and creation times of the account's keys"""
    keys = await CredentialResolver(db).list_api_keys(account["account_id"])
    return {"apiKeys": keys, "count": len(keys)}


@tokens_router.get("/ledger")
async def get_ledger(
    limit: int = Query(50, ge=1, le=200),
    account: dict = Depends(get_current_account),
    db=Depends(get_database)
):
    """Balance movements: seed, debits, refunds and credits"""
    entries = await TokenLedger(db).get_ledger(account["account_id"], limit)
    return {"entries": entries, "count": len(entries)}


@tokens_router.get("/pricing")
async def get_pricing():
    """Per-model rates (public)"""
    return {"pricing": model_catalog()}
