"""
AI Routes - Metered model access

Endpoints:
- GET /ai/models - Model catalog with per-1000-unit rates (public)
- POST /ai/chat - Metered chat completion (x-api-key)
"""
from fastapi import APIRouter, Depends

from database import get_database
from metering.completion import ProviderRegistry, get_completion_registry
from metering.gateway import MeteredGateway
from metering.models import ChatRequest
from metering.rate_table import model_catalog
from utils.auth import get_api_key_account

ai_router = APIRouter(prefix="/ai", tags=["AI"])


@ai_router.get("/models")
async def get_models():
    """Available models and what they cost per 1000 units"""
    return {"models": model_catalog()}


@ai_router.post("/chat")
async def chat(
    request: ChatRequest,
    account: dict = Depends(get_api_key_account),
    db=Depends(get_database),
    registry: ProviderRegistry = Depends(get_completion_registry)
):
    """
    Metered chat completion.

    The request is priced from its message text, the cost is debited before
    the model is called, and one usage record is written per billed call.
    """
    gateway = MeteredGateway(db, registry=registry)
    result = await gateway.chat(account, request)
    return result.to_response()
