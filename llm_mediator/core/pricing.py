"""
Pricing calculations and rate management.

Resolves model names to per-token prices and estimates request costs.
"""

import math
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, Optional


class FallbackMode(Enum):
    """How to price a model that has no table entry."""
    MINI = "mini"                  # Cheapest known entry
    CONSERVATIVE = "conservative"  # Most expensive known entry
    ERROR = "error"                # Refuse to estimate


class UnknownModelError(ValueError):
    """Raised when a model has no pricing and the fallback mode is ERROR."""

    def __init__(self, model: str):
        super().__init__(f"Unknown OpenAI model for pricing: {model}")
        self.model = model


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_cost_per_1k: Decimal  # Cost per 1K prompt tokens
    output_cost_per_1k: Decimal  # Cost per 1K completion tokens

    @property
    def combined_per_1k(self) -> Decimal:
        return self.input_cost_per_1k + self.output_cost_per_1k


@dataclass(frozen=True)
class PricingTable:
    """Pricing keyed by model name or model name prefix."""
    prices: Dict[str, ModelPricing]

    def __post_init__(self):
        if not self.prices:
            raise ValueError("pricing table cannot be empty")

    def lookup(self, model: str) -> Optional[ModelPricing]:
        """Find pricing by exact name, else by the longest matching prefix.

        Args:
            model: Model identifier, e.g. ``gpt-4o-mini-2025-01``

        Returns:
            ModelPricing, or None when nothing matches
        """
        if model in self.prices:
            return self.prices[model]
        best = None
        for prefix in self.prices:
            if model.startswith(prefix) and (best is None or len(prefix) > len(best)):
                best = prefix
        return self.prices[best] if best is not None else None

    def cheapest(self) -> ModelPricing:
        # min() keeps the first entry on ties, so table order breaks them
        return min(self.prices.values(), key=lambda p: p.combined_per_1k)

    def most_expensive(self) -> ModelPricing:
        return max(self.prices.values(), key=lambda p: p.combined_per_1k)


# Pricing snapshot in USD per 1K tokens. Update as provider pricing changes.
PRICING_TABLE = PricingTable({
    "gpt-4o": ModelPricing(
        input_cost_per_1k=Decimal("0.005"),
        output_cost_per_1k=Decimal("0.015")
    ),
    "gpt-4o-mini": ModelPricing(
        input_cost_per_1k=Decimal("0.0006"),
        output_cost_per_1k=Decimal("0.0024")
    ),
    "gpt-4.1": ModelPricing(
        input_cost_per_1k=Decimal("0.002"),
        output_cost_per_1k=Decimal("0.008")
    ),
    "gpt-4.1-mini": ModelPricing(
        input_cost_per_1k=Decimal("0.0004"),
        output_cost_per_1k=Decimal("0.0016")
    ),
    "gpt-4-turbo": ModelPricing(
        input_cost_per_1k=Decimal("0.01"),
        output_cost_per_1k=Decimal("0.03")
    ),
    "gpt-3.5-turbo": ModelPricing(
        input_cost_per_1k=Decimal("0.0005"),
        output_cost_per_1k=Decimal("0.0015")
    ),
})

_SIX_PLACES = Decimal("0.000001")


def _validate_tokens(name: str, value) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number, got {type(value).__name__}")
    if not math.isfinite(value) or value < 0:
        raise ValueError(f"{name} must be finite and non-negative, got {value}")


class PricingResolver:
    """Estimates request cost from a pricing table and a fallback policy."""

    def __init__(
        self,
        table: PricingTable = PRICING_TABLE,
        fallback: FallbackMode = FallbackMode.MINI
    ):
        self.table = table
        self.fallback = fallback

    def resolve(self, model: str) -> ModelPricing:
        """Get pricing for a model, applying the fallback policy if unknown.

        Raises:
            UnknownModelError: If the model is unknown and fallback is ERROR
        """
        pricing = self.table.lookup(model)
        if pricing is not None:
            return pricing
        if self.fallback is FallbackMode.CONSERVATIVE:
            return self.table.most_expensive()
        if self.fallback is FallbackMode.ERROR:
            raise UnknownModelError(model)
        return self.table.cheapest()

    def estimate_cost_usd(self, model: str, prompt_tokens, completion_tokens) -> float:
        """Estimate the USD cost of a request.

        Args:
            model: Model identifier
            prompt_tokens: Prompt (input) token count
            completion_tokens: Completion (output) token count

        Returns:
            Cost rounded to 6 decimal places

        Raises:
            ValueError: If a token count is negative, infinite or not a number
            UnknownModelError: If the model is unknown and fallback is ERROR
        """
        _validate_tokens("prompt_tokens", prompt_tokens)
        _validate_tokens("completion_tokens", completion_tokens)
        pricing = self.resolve(model)

        prompt_cost = (Decimal(str(prompt_tokens)) / Decimal("1000")) * pricing.input_cost_per_1k
        completion_cost = (Decimal(str(completion_tokens)) / Decimal("1000")) * pricing.output_cost_per_1k

        total_cost = prompt_cost + completion_cost
        return float(total_cost.quantize(_SIX_PLACES, rounding=ROUND_HALF_UP))


def estimate_cost_usd(
    model: str,
    prompt_tokens,
    completion_tokens,
    fallback: FallbackMode = FallbackMode.MINI
) -> float:
    """Estimate cost against the default pricing table."""
    return PricingResolver(PRICING_TABLE, fallback).estimate_cost_usd(
        model, prompt_tokens, completion_tokens
    )
