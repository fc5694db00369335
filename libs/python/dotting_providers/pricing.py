"""Static pricing tables and helpers for estimating provider cost."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping


@dataclass(frozen=True)
class _TokenPricing:
    """Per-model pricing expressed as USD per one million tokens."""

    input_per_million: float
    output_per_million: float


_OPENAI_PRICING: Mapping[str, _TokenPricing] = {
    "gpt-4o": _TokenPricing(input_per_million=2.5, output_per_million=10.0),
    "gpt-4o-mini": _TokenPricing(input_per_million=0.15, output_per_million=0.6),
    "gpt-4.1": _TokenPricing(input_per_million=2.0, output_per_million=8.0),
    "gpt-4.1-mini": _TokenPricing(input_per_million=0.4, output_per_million=1.6),
    "gpt-5": _TokenPricing(input_per_million=1.25, output_per_million=10.0),
    "gpt-5-mini": _TokenPricing(input_per_million=0.25, output_per_million=2.0),
}

_PROVIDER_PRICING: Dict[str, Mapping[str, _TokenPricing]] = {
    "openai": _OPENAI_PRICING,
}


def _lookup(table: Mapping[str, _TokenPricing], model_key: str) -> _TokenPricing | None:
    pricing = table.get(model_key)
    if pricing is not None:
        return pricing
    # Dated snapshots such as "gpt-4o-2024-08-06" bill like their base model.
    candidates = [name for name in table if model_key.startswith(f"{name}-")]
    if not candidates:
        return None
    return table[max(candidates, key=len)]


def estimate_cost(
    provider: str,
    model: str,
    prompt_tokens: int | float | None,
    completion_tokens: int | float | None,
) -> float | None:
    """Approximate cost in USD for a provider response.

    Args:
        provider: Provider identifier ("openai", "mock", etc.).
        model: Concrete model name, used to select the right pricing row.
        prompt_tokens: Number of prompt/input tokens billed for the request.
        completion_tokens: Number of completion/output tokens billed.

    Returns:
        Estimated USD cost, or ``None`` when pricing is unknown.
    """

    provider_key = (provider or "").lower()
    if provider_key == "mock":
        return 0.0

    table = _PROVIDER_PRICING.get(provider_key)
    if not table:
        return None

    pricing = _lookup(table, (model or "").lower())
    if pricing is None:
        return None

    prompt_value = max(float(prompt_tokens or 0.0), 0.0)
    completion_value = max(float(completion_tokens or 0.0), 0.0)

    cost = (
        (prompt_value * pricing.input_per_million)
        + (completion_value * pricing.output_per_million)
    ) / 1_000_000.0

    return round(cost, 6)


__all__ = ["estimate_cost"]
