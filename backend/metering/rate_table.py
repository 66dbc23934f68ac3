"""
Rate Table - Per-model token pricing

Pure functions over MODEL_CATALOG. Pricing is always defined: unknown model
ids are billed at the cheapest configured rate.
"""
from typing import Dict, Any, Iterable

from .config import MODEL_CATALOG, CHARS_PER_UNIT


def rate_per_thousand(model_id: str) -> int:
    """Tokens charged per 1000 units for a model, falling back to the cheapest rate."""
    model = MODEL_CATALOG.get(model_id)
    if model:
        return model["cost_per_1000"]
    return min(m["cost_per_1000"] for m in MODEL_CATALOG.values())


def cost(model_id: str, unit_count: int) -> int:
    """
    Token cost of `unit_count` units on `model_id`.

    ceil(unit_count * rate / 1000), computed in integers so large counts
    never pick up float rounding.
    """
    if unit_count <= 0:
        return 0
    return -(-unit_count * rate_per_thousand(model_id) // 1000)


def estimate_units(messages: Iterable[Dict[str, Any]]) -> int:
    """Estimate the input size of a chat request: ceil(len(content) / 4) per message."""
    return sum(
        -(-len(message.get("content") or "") // CHARS_PER_UNIT)
        for message in messages
    )


def is_known_model(model_id: str) -> bool:
    return model_id in MODEL_CATALOG


def model_catalog() -> Dict[str, Dict[str, Any]]:
    """Public pricing catalog keyed by model id."""
    return {
        model_id: {
            "name": info["name"],
            "costPer1000Tokens": info["cost_per_1000"],
            "description": info["description"]
        }
        for model_id, info in MODEL_CATALOG.items()
    }
