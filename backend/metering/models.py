"""
Metering Data Models

Pydantic models for metering operations.
These define the structure of documents stored in MongoDB collections
and the request bodies accepted by the API.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Literal


# ==================== ACCOUNT MODELS ====================

class ApiKeyEntry(BaseModel):
    """An API key as held in the account's key set (hash only)"""
    key_hash: str
    key_prefix: str
    created_at: str


class PendingCharge(BaseModel):
    """A committed debit whose usage record has not been confirmed yet"""
    amount: int
    model: str
    created_at: str


class Account(BaseModel):
    """Billable identity holding a token balance"""
    account_id: str
    email: Optional[str] = None
    display_name: str = ""
    balance: int = 0
    tier: Literal["free", "basic", "pro", "unlimited"] = "free"
    status: str = "active"
    api_keys: List[ApiKeyEntry] = Field(default_factory=list)
    api_key_count: int = 0
    api_key_last_created_at: Optional[str] = None
    applied_payment_events: List[str] = Field(default_factory=list)
    pending_charges: Dict[str, PendingCharge] = Field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    subscription_updated_at: Optional[str] = None


# ==================== AUDIT MODELS ====================

class UsageRecord(BaseModel):
    """Immutable audit entry for one metered call"""
    request_id: str
    account_id: str
    credential: Optional[str] = None  # API key prefix
    model: str
    units: int
    tokens_used: int
    request_excerpt: str
    response_excerpt: str
    timestamp: str  # ISO datetime string
    latency_ms: int


class LedgerEntry(BaseModel):
    """Immutable balance movement"""
    entry_id: str
    account_id: str
    kind: Literal["seed", "debit", "refund", "credit"]
    amount: int
    reference: str
    timestamp: str
    details: Optional[dict] = None


class PaymentEvent(BaseModel):
    """Stripe webhook event record"""
    event_id: str
    event_type: str
    status: Literal["succeeded", "failed", "rejected", "ignored"]
    account_id: Optional[str] = None
    plan: Optional[str] = None
    amount: Optional[int] = None
    payment_intent_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: str


# ==================== REQUEST MODELS ====================

class ChatMessage(BaseModel):
    """One chat message; extra fields (role, name, ...) are passed through"""
    model_config = ConfigDict(extra="allow")

    content: str
    role: str = "user"


class ChatRequest(BaseModel):
    """Body of POST /ai/chat"""
    model: Optional[str] = None
    messages: List[ChatMessage] = Field(..., min_length=1)


class PaymentIntentRequest(BaseModel):
    """Body of POST /payment/create-payment-intent"""
    plan: str = Field(..., description="Plan ID: basic, pro, or unlimited")


# ==================== RESULT MODELS ====================

class ChatResult(BaseModel):
    """Outcome of a metered chat call"""
    model: str
    response: str
    tokens_used: int
    remaining_tokens: int
    request_id: str

    def to_response(self) -> dict:
        return {
            "model": self.model,
            "response": self.response,
            "tokensUsed": self.tokens_used,
            "remainingTokens": self.remaining_tokens
        }


class ReconcileOutcome(BaseModel):
    """Result of processing one webhook delivery"""
    event_id: str
    event_type: str
    status: Literal["credited", "already_applied", "failed_logged", "rejected", "ignored"]
    message: str = ""
