"""Per-model pricing used for budget estimates and spend attribution."""

import logging
import math

logger = logging.getLogger(__name__)

# Pricing per 1M tokens: (input, output)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    # Anthropic
    "claude-haiku-4-5-20251001": (1.0, 5.0),
    "claude-sonnet-4-5-20250929": (3.0, 15.0),
    "claude-opus-4-5-20251101": (5.0, 25.0),
    "claude-3-5-haiku-20241022": (0.80, 4.0),
    # OpenAI
    "gpt-4o": (2.50, 10.0),
    "gpt-4o-mini": (0.15, 0.60),
    # OpenAI embeddings
    "text-embedding-3-small": (0.02, 0.0),
    "text-embedding-3-large": (0.13, 0.0),
    "text-embedding-ada-002": (0.10, 0.0),
}

# Rough English average; only used before a call, never for recorded spend.
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    return max(1, math.ceil(len(text) / CHARS_PER_TOKEN))


def cost_usd(model: str, tokens_input: int, tokens_output: int = 0) -> float:
    """Cost in USD for a call, from the pricing table.

    Falls back to a prefix match for dated model variants; unknown
    models cost $0 (with a warning) so they never block on pricing alone.
    """
    pricing = MODEL_PRICING.get(model)
    if not pricing:
        # Longest key first so "gpt-4o-mini-..." never resolves to "gpt-4o".
        for key in sorted(MODEL_PRICING, key=len, reverse=True):
            if model and (model.startswith(key) or key.startswith(model)):
                pricing = MODEL_PRICING[key]
                break
    if not pricing:
        logger.warning("No pricing found for model '%s', using $0", model)
        return 0.0

    input_rate, output_rate = pricing
    cost = (tokens_input * input_rate / 1_000_000) + (tokens_output * output_rate / 1_000_000)
    return round(cost, 8)


def estimate_completion_cost(model: str, prompt: str, max_tokens: int) -> float:
    """Upper-bound estimate for a completion: full prompt plus max output."""
    return cost_usd(model, estimate_tokens(prompt), max_tokens)


def estimate_embedding_cost(model: str, text: str) -> float:
    return cost_usd(model, estimate_tokens(text))
