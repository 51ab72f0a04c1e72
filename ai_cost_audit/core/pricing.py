"""
Pricing calculations and rate management.

Handles cost computations for model usage under each billing mode.
"""

import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Mapping, Optional

from .token_counter import TokenCounts

BILLING_MODE_API = "api"
BILLING_MODE_MAX = "max"

_ONE_MILLION = Decimal("1000000")
_DATE_SUFFIX = re.compile(r"-\d{8}$")


@dataclass(frozen=True)
class ModelPricing:
    """Published API rates for one model, in USD per million tokens."""
    input_per_million: Decimal
    output_per_million: Decimal
    cache_read_per_million: Decimal
    cache_write_per_million: Decimal

    def __post_init__(self):
        """Validate rates are not negative."""
        for name in ("input_per_million", "output_per_million",
                     "cache_read_per_million", "cache_write_per_million"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")


@dataclass(frozen=True)
class PricingTable:
    """Pricing lookup keyed by full model id.

    Lookups accept the full dated id, the id without its date suffix
    (``claude-opus-4-5``) or a short alias (``opus-4.5``).
    """
    prices: Dict[str, ModelPricing]
    aliases: Dict[str, str] = field(default_factory=dict)

    def lookup(self, model: str) -> Optional[ModelPricing]:
        """Find pricing for a model, or None when it is not known."""
        if not model:
            return None
        if model in self.prices:
            return self.prices[model]
        aliased = self.aliases.get(model)
        if aliased is not None and aliased in self.prices:
            return self.prices[aliased]
        for model_id, pricing in self.prices.items():
            if _DATE_SUFFIX.sub("", model_id) == model:
                return pricing
        return None

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Args:
            model: Model identifier or alias

        Returns:
            ModelPricing for the model

        Raises:
            ValueError: If model is not supported
        """
        pricing = self.lookup(model)
        if pricing is None:
            raise ValueError(f"Unsupported model: {model}")
        return pricing

    def with_overrides(self, overrides: Mapping[str, ModelPricing]) -> "PricingTable":
        """Return a new table with the given models added or replaced."""
        prices = dict(self.prices)
        prices.update(overrides)
        return PricingTable(prices=prices, aliases=dict(self.aliases))


def _rates(inp: str, out: str, read: str, write: str) -> ModelPricing:
    return ModelPricing(
        input_per_million=Decimal(inp),
        output_per_million=Decimal(out),
        cache_read_per_million=Decimal(read),
        cache_write_per_million=Decimal(write),
    )


# Default published rates; deployments may override entries via configuration.
PRICING_TABLE = PricingTable(
    prices={
        "claude-opus-4-6-20260115": _rates("5", "25", "0.50", "6.25"),
        "claude-opus-4-5-20251101": _rates("5", "25", "0.50", "6.25"),
        "claude-opus-4-1-20250319": _rates("15", "75", "1.50", "18.75"),
        "claude-opus-4-20250514": _rates("15", "75", "1.50", "18.75"),
        "claude-sonnet-4-5-20250929": _rates("3", "15", "0.30", "3.75"),
        "claude-sonnet-4-20250514": _rates("3", "15", "0.30", "3.75"),
        "claude-haiku-4-5-20251001": _rates("1", "5", "0.10", "1.25"),
        "claude-haiku-3-5-20241022": _rates("0.80", "4", "0.08", "1"),
        "claude-3-haiku-20240307": _rates("0.25", "1.25", "0.03", "0.30"),
    },
    aliases={
        "opus": "claude-opus-4-6-20260115",
        "sonnet": "claude-sonnet-4-5-20250929",
        "haiku": "claude-haiku-4-5-20251001",
        "opus-4.6": "claude-opus-4-6-20260115",
        "opus-4.5": "claude-opus-4-5-20251101",
        "opus-4.1": "claude-opus-4-1-20250319",
        "opus-4": "claude-opus-4-20250514",
        "sonnet-4.5": "claude-sonnet-4-5-20250929",
        "sonnet-4": "claude-sonnet-4-20250514",
        "haiku-4.5": "claude-haiku-4-5-20251001",
        "haiku-3.5": "claude-haiku-3-5-20241022",
        "haiku-3": "claude-3-haiku-20240307",
    },
)


def _per_million(tokens: int, rate: Decimal) -> Decimal:
    return (Decimal(tokens) / _ONE_MILLION) * rate


def calculate_cost(
    model: str,
    usage: TokenCounts,
    billing_mode: str = BILLING_MODE_API,
    table: PricingTable = PRICING_TABLE,
) -> float:
    """Calculate the cost of model usage under a billing mode.

    Under ``max`` billing cache traffic is not metered, so only input and
    output tokens are charged.

    Args:
        model: Model identifier
        usage: Token usage data
        billing_mode: ``api`` or ``max``
        table: Pricing lookup to use

    Returns:
        Total cost rounded to 6 decimal places

    Raises:
        ValueError: If model or billing mode is not supported
    """
    if billing_mode not in (BILLING_MODE_API, BILLING_MODE_MAX):
        raise ValueError(f"Unsupported billing mode: {billing_mode}")
    pricing = table.get_pricing(model)

    total = (
        _per_million(usage.input_tokens, pricing.input_per_million)
        + _per_million(usage.output_tokens, pricing.output_per_million)
    )
    if billing_mode == BILLING_MODE_API:
        total += _per_million(usage.cache_read_tokens, pricing.cache_read_per_million)
        total += _per_million(usage.cache_write_tokens, pricing.cache_write_per_million)

    return float(total.quantize(Decimal("0.000001"), rounding=ROUND_HALF_UP))


def calculate_cache_savings(
    model: str,
    cache_read_tokens: int,
    cache_write_tokens: int,
    table: PricingTable = PRICING_TABLE,
) -> float:
    """What cache traffic would have cost at the model's API cache rates.

    Args:
        model: Model identifier
        cache_read_tokens: Cache read token count
        cache_write_tokens: Cache creation token count
        table: Pricing lookup to use

    Returns:
        Savings in USD; 0.0 for models the table does not know
    """
    pricing = table.lookup(model)
    if pricing is None:
        return 0.0
    savings = (
        _per_million(cache_read_tokens, pricing.cache_read_per_million)
        + _per_million(cache_write_tokens, pricing.cache_write_per_million)
    )
    return float(savings)
