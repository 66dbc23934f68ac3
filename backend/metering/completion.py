"""
Completion Providers

One CompletionProvider per model id, looked up from a registry. Adding a
model is a registration, not a new code path in the gateway.

All hosted models are reached through their OpenAI-compatible chat
completions endpoints with the OpenAI SDK. When a provider key is missing
and the environment allows it, a simulated provider stands in.
"""

import os
import logging
from typing import Optional, Dict, Any, List

from openai import AsyncOpenAI

from .config import MODEL_CATALOG, PROVIDER_ENDPOINTS, COMPLETION_MAX_TOKENS
from utils.environment import allow_mock_data

logger = logging.getLogger(__name__)


class CompletionProvider:
    """Turns a list of chat messages into response text for one model."""

    def __init__(self, model_id: str):
        self.model_id = model_id

    async def complete(self, messages: List[Dict[str, Any]]) -> str:
        raise NotImplementedError


class OpenAICompatibleProvider(CompletionProvider):
    """Chat completions against an OpenAI-compatible endpoint."""

    def __init__(
        self,
        model_id: str,
        upstream_model: str,
        api_key: str,
        base_url: Optional[str] = None,
        max_tokens: int = COMPLETION_MAX_TOKENS
    ):
        super().__init__(model_id)
        self.upstream_model = upstream_model
        self.max_tokens = max_tokens
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def complete(self, messages: List[Dict[str, Any]]) -> str:
        response = await self.client.chat.completions.create(
            model=self.upstream_model,
            messages=[
                {"role": message.get("role") or "user", "content": message["content"]}
                for message in messages
            ],
            max_tokens=self.max_tokens
        )
        return response.choices[0].message.content or ""


class SimulatedProvider(CompletionProvider):
    """Canned response for development and tests."""

    async def complete(self, messages: List[Dict[str, Any]]) -> str:
        name = MODEL_CATALOG.get(self.model_id, {}).get("name", self.model_id)
        return f"{name} response simulation"


class ProviderRegistry:
    """model id -> CompletionProvider"""

    def __init__(self):
        self._providers: Dict[str, CompletionProvider] = {}

    def register(self, provider: CompletionProvider):
        self._providers[provider.model_id] = provider

    def get(self, model_id: str) -> Optional[CompletionProvider]:
        return self._providers.get(model_id)

    def model_ids(self) -> List[str]:
        return sorted(self._providers)

    def __contains__(self, model_id: str) -> bool:
        return model_id in self._providers


def build_default_registry() -> ProviderRegistry:
    """Register a provider for every model that has credentials (or may be simulated)."""
    registry = ProviderRegistry()

    for model_id, endpoint in PROVIDER_ENDPOINTS.items():
        api_key = os.environ.get(endpoint["api_key_env"])
        if api_key:
            registry.register(OpenAICompatibleProvider(
                model_id=model_id,
                upstream_model=endpoint["upstream_model"],
                api_key=api_key,
                base_url=endpoint["base_url"]
            ))
        elif allow_mock_data():
            logger.warning(f"{endpoint['api_key_env']} not set - serving '{model_id}' with simulated completions")
            registry.register(SimulatedProvider(model_id))
        else:
            logger.warning(f"{endpoint['api_key_env']} not set - model '{model_id}' is not available")

    logger.info(f"Completion providers registered: {registry.model_ids()}")
    return registry


# Singleton-like access for easy import
_registry_instance = None


def get_completion_registry() -> ProviderRegistry:
    """Get or create the process-wide provider registry."""
    global _registry_instance
    if _registry_instance is None:
        _registry_instance = build_default_registry()
    return _registry_instance
