"""
Credential Resolver

Maps an inbound credential to its account:
- API keys (x-api-key) are looked up through the `api_keys` index collection,
  keyed by the SHA-256 of the raw key. Raw keys are shown once and never stored.
- Bearer identity tokens are HS256 JWTs issued by the identity provider; the
  `sub` claim is the account id. The first verified token for a subject
  provisions the account.

Also owns the API key lifecycle (create, revoke, list).
"""

import os
import hashlib
import logging
import secrets
from datetime import datetime, timezone, timedelta
from typing import Dict, Any, List

import jwt
from pymongo.errors import PyMongoError

from .config import (
    API_KEY_PREFIX,
    API_KEY_CREATE_INTERVAL_SECONDS,
    MAX_API_KEYS,
    UNLIMITED_TIER,
    ERROR_MESSAGES,
)
from .errors import (
    Unauthenticated,
    InvalidCredential,
    InvalidRequest,
    InsufficientFunds,
    RateLimited,
    NotFound,
)
from .ledger import TokenLedger
from .models import ApiKeyEntry

logger = logging.getLogger(__name__)

IDENTITY_TOKEN_ALGORITHM = "HS256"
KEY_PREFIX_LENGTH = 10


def identity_token_secret() -> str:
    return os.environ.get('IDENTITY_TOKEN_SECRET', 'metering-identity-secret-change-in-production')


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode('utf-8')).hexdigest()


def decode_identity_token(token: str) -> Dict[str, Any]:
    """
    Verify an identity provider token and return its claims.

    Raises:
        InvalidCredential: bad signature, expired, wrong audience/issuer, no subject
    """
    try:
        claims = jwt.decode(
            token,
            identity_token_secret(),
            algorithms=[IDENTITY_TOKEN_ALGORITHM],
            audience=os.environ.get('IDENTITY_TOKEN_AUDIENCE') or None,
            issuer=os.environ.get('IDENTITY_TOKEN_ISSUER') or None,
            options={"require": ["sub", "exp"]}
        )
    except jwt.ExpiredSignatureError:
        raise InvalidCredential("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Identity token rejected: {e}")
        raise InvalidCredential(ERROR_MESSAGES["INVALID_BEARER"])

    if not claims.get("sub"):
        raise InvalidCredential(ERROR_MESSAGES["INVALID_BEARER"])
    return claims


class CredentialResolver:
    """Resolves API keys and identity tokens to account documents."""

    def __init__(self, db, ledger: TokenLedger = None):
        self.db = db
        self.ledger = ledger or TokenLedger(db)

    async def resolve_api_key(self, raw_key: str) -> Dict[str, Any]:
        """
        Resolve an API key to its account.

        Only a balance <= 0 is rejected here (fast path); the real funds check
        happens atomically inside the debit.

        Raises:
            Unauthenticated: no key supplied
            InvalidCredential: unknown or revoked key
            InsufficientFunds: balance exhausted
        """
        if not raw_key:
            raise Unauthenticated(ERROR_MESSAGES["UNAUTHENTICATED"])

        key_hash = hash_api_key(raw_key)
        index = await self.db.api_keys.find_one({"key_hash": key_hash}, {"_id": 0})
        if not index:
            raise InvalidCredential(ERROR_MESSAGES["INVALID_API_KEY"])

        # The key must still be in the account's own set (guards half-finished revokes)
        account = await self.db.accounts.find_one(
            {"account_id": index["account_id"], "api_keys.key_hash": key_hash},
            {"_id": 0}
        )
        if not account or account.get("status", "active") != "active":
            raise InvalidCredential(ERROR_MESSAGES["INVALID_API_KEY"])

        balance = account.get("balance", 0)
        if account.get("tier") != UNLIMITED_TIER and balance <= 0:
            raise InsufficientFunds(available=balance)

        account["credential"] = index["key_prefix"]
        return account

    async def resolve_bearer(self, token: str) -> Dict[str, Any]:
        """Verify an identity token and load (or provision) the subject's account."""
        if not token:
            raise Unauthenticated(ERROR_MESSAGES["BEARER_REQUIRED"])

        claims = decode_identity_token(token)
        return await self.ledger.provision(
            account_id=claims["sub"],
            email=claims.get("email"),
            display_name=claims.get("name", "")
        )

    # ==================== API KEY LIFECYCLE ====================

    async def create_api_key(self, account_id: str) -> str:
        """
        Issue a new API key for the account.

        The cap and creation-rate checks ride on the same conditional write
        that adds the key to the account's set; the index entry is written
        next and the account write is undone if that fails.

        Returns:
            The raw key (only time it is ever visible)
        """
        await self.ledger.get_account(account_id)

        raw_key = API_KEY_PREFIX + secrets.token_urlsafe(32)
        key_hash = hash_api_key(raw_key)
        now = datetime.now(timezone.utc)
        cutoff = (now - timedelta(seconds=API_KEY_CREATE_INTERVAL_SECONDS)).isoformat()

        entry = ApiKeyEntry(
            key_hash=key_hash,
            key_prefix=raw_key[:KEY_PREFIX_LENGTH],
            created_at=now.isoformat()
        ).model_dump()

        result = await self.db.accounts.update_one(
            {
                "account_id": account_id,
                "api_key_count": {"$lt": MAX_API_KEYS},
                "$or": [
                    {"api_key_last_created_at": None},
                    {"api_key_last_created_at": {"$lte": cutoff}}
                ]
            },
            {
                "$push": {"api_keys": entry},
                "$inc": {"api_key_count": 1},
                "$set": {"api_key_last_created_at": now.isoformat(), "updated_at": now.isoformat()}
            }
        )

        if result.modified_count == 0:
            account = await self.ledger.get_account(account_id)
            if account.get("api_key_count", 0) >= MAX_API_KEYS:
                raise InvalidRequest(ERROR_MESSAGES["MAX_API_KEYS"])
            raise RateLimited()

        try:
            await self.db.api_keys.insert_one({"account_id": account_id, **entry})
        except PyMongoError:
            logger.error(f"API key index write failed for {account_id}, rolling back key")
            await self.db.accounts.update_one(
                {"account_id": account_id},
                {"$pull": {"api_keys": {"key_hash": key_hash}}, "$inc": {"api_key_count": -1}}
            )
            raise

        logger.info(f"Created API key {entry['key_prefix']}... for account {account_id}")
        return raw_key

    async def revoke_api_key(self, account_id: str, raw_key: str) -> None:
        """
        Revoke one of the account's API keys.

        The index entry goes first so the key stops resolving immediately.
        """
        key_hash = hash_api_key(raw_key)

        index_result = await self.db.api_keys.delete_one({"key_hash": key_hash, "account_id": account_id})
        account_result = await self.db.accounts.update_one(
            {"account_id": account_id, "api_keys.key_hash": key_hash},
            {
                "$pull": {"api_keys": {"key_hash": key_hash}},
                "$inc": {"api_key_count": -1},
                "$set": {"updated_at": datetime.now(timezone.utc).isoformat()}
            }
        )

        if index_result.deleted_count == 0 and account_result.modified_count == 0:
            raise NotFound(ERROR_MESSAGES["API_KEY_NOT_FOUND"])

        logger.info(f"Revoked API key {raw_key[:KEY_PREFIX_LENGTH]}... for account {account_id}")

    async def list_api_keys(self, account_id: str) -> List[Dict[str, Any]]:
        account = await self.ledger.get_account(account_id)
        return [
            {"prefix": key["key_prefix"], "createdAt": key["created_at"]}
            for key in account.get("api_keys", [])
        ]
