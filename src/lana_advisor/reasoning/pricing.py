"""Token cost estimation for completion calls."""

from __future__ import annotations

import os
from dataclasses import dataclass

PRICING_ENV = "LANA_ADVISOR_LLM_PRICING"
DEFAULT_PRICING = "*:0.02:0.08"
DEFAULT_EXCHANGE_RATE = 270.0


@dataclass(slots=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float


def estimate_cost_usd(
    *,
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
    pricing: str | None = None,
) -> float:
    """Estimate the USD cost of one call; unknown models cost nothing."""

    model_pricing = lookup_pricing(model=model, pricing=pricing)
    if model_pricing is None:
        return 0.0
    return (prompt_tokens / 1_000_000) * model_pricing.input_per_1m + (
        completion_tokens / 1_000_000
    ) * model_pricing.output_per_1m


def cost_in_lana(cost_usd: float, exchange_rate: float | None) -> float:
    """Convert USD to LANA with the rate frozen on the task."""

    rate = exchange_rate if exchange_rate and exchange_rate > 0 else DEFAULT_EXCHANGE_RATE
    return cost_usd * rate


def lookup_pricing(*, model: str, pricing: str | None = None) -> ModelPricing | None:
    raw = pricing if pricing is not None else os.getenv(PRICING_ENV, "")
    mapping = parse_pricing_mapping(raw or DEFAULT_PRICING)
    direct = mapping.get(model.strip())
    if direct is not None:
        return direct
    return mapping.get("*")


def parse_pricing_mapping(raw: str) -> dict[str, ModelPricing]:
    """Parse a pricing mapping.

    Format:
    - `model:input_per_1m:output_per_1m`
    - multiple entries separated by `,`
    - `*` as model matches any model without its own entry
    """

    parsed: dict[str, ModelPricing] = {}
    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.split(":")]
        if len(parts) != 3:
            continue
        model, input_price, output_price = parts
        try:
            input_per_1m = float(input_price)
            output_per_1m = float(output_price)
        except ValueError:
            continue
        parsed[model] = ModelPricing(input_per_1m=input_per_1m, output_per_1m=output_per_1m)
    return parsed
