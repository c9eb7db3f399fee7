"""Token cost estimation.

Prices are USD per million tokens. Entries under ``pricing.models`` in
~/.flowengine/configuration.json override or extend the built-in table::

    {"pricing": {"models": {"my-model": {"input_per_million": 1.0, "output_per_million": 2.0}}}}
"""

import logging
from functools import lru_cache

from flowengine.config import get_flowengine_config

logger = logging.getLogger(__name__)

# model -> (input_per_million, output_per_million)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o": (2.50, 10.00),
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4.1": (2.00, 8.00),
    "gpt-4.1-mini": (0.40, 1.60),
    "claude-sonnet-4": (3.00, 15.00),
    "claude-haiku-4": (1.00, 5.00),
    "claude-opus-4": (15.00, 75.00),
    "deepseek-chat": (0.27, 1.10),
    "deepseek-reasoner": (0.55, 2.19),
    "qwen-plus": (0.40, 1.20),
    "qwen-max": (1.60, 6.40),
}

DEFAULT_PRICING = (1.00, 3.00)


@lru_cache(maxsize=1)
def _configured_pricing() -> dict[str, tuple[float, float]]:
    models = get_flowengine_config().get("pricing", {}).get("models", {})
    table = {}
    for model, entry in models.items():
        try:
            table[model] = (float(entry["input_per_million"]), float(entry["output_per_million"]))
        except (KeyError, TypeError, ValueError):
            logger.warning(f"Ignoring malformed pricing entry for '{model}'")
    return table


def model_pricing(model: str) -> tuple[float, float]:
    """Per-million prices for ``model``. Versioned names match their family prefix."""
    table = {**MODEL_PRICING, **_configured_pricing()}
    if model in table:
        return table[model]
    # Longest prefix wins: "gpt-4o-mini-2024-07-18" -> "gpt-4o-mini"
    for known in sorted(table, key=len, reverse=True):
        if model.startswith(known):
            return table[known]
    return DEFAULT_PRICING


def estimate_cost_usd(model: str | None, prompt_tokens: int, completion_tokens: int) -> float:
    if not model:
        return 0.0
    input_price, output_price = model_pricing(model)
    return prompt_tokens / 1_000_000 * input_price + completion_tokens / 1_000_000 * output_price
