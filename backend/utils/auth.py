"""
Authentication utilities

Two credentials reach the API:
- Authorization: Bearer <identity token>   (account management)
- x-api-key: <api key>                     (metered model calls)
"""
from fastapi import Depends, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional
import jwt
from datetime import datetime, timezone, timedelta

from database import get_database
from metering.credentials import CredentialResolver, identity_token_secret, IDENTITY_TOKEN_ALGORITHM

security = HTTPBearer(auto_error=False)


def create_identity_token(
    subject: str,
    email: Optional[str] = None,
    name: str = "",
    expires_in: timedelta = timedelta(days=7)
) -> str:
    """Issue an identity token the way the identity provider does (tests and local tooling)."""
    payload = {
        "sub": subject,
        "email": email,
        "name": name,
        "exp": datetime.now(timezone.utc) + expires_in
    }
    return jwt.encode(payload, identity_token_secret(), algorithm=IDENTITY_TOKEN_ALGORITHM)


async def get_current_account(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db=Depends(get_database)
):
    """Verify the bearer identity token and return the caller's account"""
    token = credentials.credentials if credentials else None
    return await CredentialResolver(db).resolve_bearer(token)


async def get_api_key_account(
    x_api_key: Optional[str] = Header(None),
    db=Depends(get_database)
):
    """Resolve the x-api-key header to its account"""
    return await CredentialResolver(db).resolve_api_key(x_api_key)
