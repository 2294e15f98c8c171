"""
Per-model context windows and list prices.

Both tables are matched by substring against the model identifier, so dated
or provider-prefixed ids ("anthropic/claude-3-5-sonnet-20241022") resolve to
their family. Order matters: the first key found in the id wins, which is why
the more specific families come first.
"""

from __future__ import annotations

MODEL_TOKEN_LIMITS: dict[str, int] = {
    "gpt-4": 128_000,
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "claude-3-5-sonnet": 200_000,
    "claude-3-opus": 200_000,
    "claude-sonnet-4": 200_000,
    "gemini-2.0-flash": 1_000_000,
    "gemini-1.5-pro": 2_000_000,
}
DEFAULT_TOKEN_LIMIT = 32_000

# USD per 1M tokens: (input, output)
MODEL_PRICES: dict[str, tuple[float, float]] = {
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o": (2.50, 10.00),
    "claude-3-5-sonnet": (3.00, 15.00),
    "claude-sonnet-4": (3.00, 15.00),
    "claude-3-opus": (15.00, 75.00),
    "claude-3-haiku": (0.25, 1.25),
    "gemini-2.0-flash": (0.10, 0.40),
    "gemini-1.5-pro": (1.25, 5.00),
}


def _lookup(table: dict, model_id: str | None):
    lowered = (model_id or "").lower()
    for key, value in table.items():
        if key in lowered:
            return value
    return None


def max_tokens_for_model(model_id: str | None) -> int:
    return _lookup(MODEL_TOKEN_LIMITS, model_id) or DEFAULT_TOKEN_LIMIT


def has_price(model_id: str | None) -> bool:
    return _lookup(MODEL_PRICES, model_id) is not None


def call_cost_usd(model_id: str | None, prompt_tokens: int, completion_tokens: int) -> float:
    """List-price cost of one call; 0.0 for models without a known price."""
    prices = _lookup(MODEL_PRICES, model_id)
    if prices is None:
        return 0.0
    input_per_million, output_per_million = prices
    return (max(prompt_tokens, 0) * input_per_million + max(completion_tokens, 0) * output_per_million) / 1_000_000
