# =============================================================================
# Provider Pricing Registry — Cost Accounting for Usage Records
# =============================================================================
#
# Maps (provider, model_name) → USD per 1M tokens, input and output.
#
#   cost = input_tokens / 1e6 * input_rate + output_tokens / 1e6 * output_rate
#
# Unknown (provider, model) pairs fall back to DEFAULT_PRICING
# (1.0 / 1.0 USD per 1M tokens), so every usage record carries a cost.
#
# Update this dict when prices change.
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelPricing:
    """Per-1M-token costs for a model."""

    input_per_million: float    # USD per 1M input tokens
    output_per_million: float   # USD per 1M output tokens


DEFAULT_PRICING = ModelPricing(1.0, 1.0)


# ---------------------------------------------------------------------------
# Pricing Registry
# ---------------------------------------------------------------------------
# Keys are (provider, model_name) tuples; provider is a ModelProvider value.
# ---------------------------------------------------------------------------

PRICING_REGISTRY: dict[tuple[str, str], ModelPricing] = {
    # --- OpenAI ---
    ("openai", "gpt-4"): ModelPricing(30.0, 60.0),
    ("openai", "gpt-4-turbo"): ModelPricing(10.0, 30.0),
    ("openai", "gpt-3.5-turbo"): ModelPricing(0.5, 1.5),
    ("openai", "gpt-4o"): ModelPricing(2.5, 10.0),
    ("openai", "gpt-4o-mini"): ModelPricing(0.15, 0.6),

    # --- Google ---
    ("gemini", "gemini-pro"): ModelPricing(0.5, 1.5),
    ("gemini", "gemini-1.5-pro"): ModelPricing(1.25, 5.0),
    ("gemini", "gemini-1.5-flash"): ModelPricing(0.075, 0.3),

    # --- Mistral ---
    ("mistral", "mistral-large"): ModelPricing(8.0, 24.0),
    ("mistral", "mistral-large-latest"): ModelPricing(2.0, 6.0),
    ("mistral", "mistral-small-latest"): ModelPricing(0.2, 0.6),

    # --- Anthropic ---
    ("claude", "claude-3-opus"): ModelPricing(15.0, 75.0),
    ("claude", "claude-3-5-sonnet"): ModelPricing(3.0, 15.0),
    ("claude", "claude-3-5-haiku"): ModelPricing(0.8, 4.0),
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def get_pricing(provider: str, model: str) -> ModelPricing:
    """Look up pricing, falling back to DEFAULT_PRICING for unknown pairs."""
    return PRICING_REGISTRY.get((provider, model), DEFAULT_PRICING)


def calculate_cost(
    provider: str,
    model: str,
    input_tokens: int,
    output_tokens: int,
) -> float:
    """
    Cost in USD for a generation.

    Args:
        provider: ModelProvider value ("openai", "claude", ...).
        model: Agent's configured model name.
        input_tokens: Prompt tokens, summed over every tool-loop iteration.
        output_tokens: Completion tokens, summed likewise.
    """
    pricing = get_pricing(provider, model)
    return (
        input_tokens / 1_000_000 * pricing.input_per_million
        + output_tokens / 1_000_000 * pricing.output_per_million
    )
