"""Token cost estimation when the agent does not report cost."""

from __future__ import annotations

import os
from dataclasses import dataclass

PRICING_ENV = "AGENT_CONTROLLER_PRICING"


@dataclass(slots=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float


def estimate_cost_usd(
    *,
    model: str | None,
    input_tokens: int,
    output_tokens: int,
) -> float | None:
    """Estimate attempt cost in USD from token usage and configured pricing."""

    pricing = _lookup_pricing(model=model or "*")
    if pricing is None:
        return None
    return (input_tokens / 1_000_000) * pricing.input_per_1m + (
        output_tokens / 1_000_000
    ) * pricing.output_per_1m


def _lookup_pricing(*, model: str) -> ModelPricing | None:
    mapping = parse_pricing_mapping(os.getenv(PRICING_ENV, ""))
    direct = mapping.get(model.strip())
    if direct is not None:
        return direct
    return mapping.get("*")


def parse_pricing_mapping(raw: str) -> dict[str, ModelPricing]:
    """Parse `AGENT_CONTROLLER_PRICING` mapping.

    Format:
    - `model:input_per_1m:output_per_1m`
    - multiple entries separated by `,`
    - `*` as model matches anything without a direct entry
    """

    parsed: dict[str, ModelPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.rsplit(":", 2)]
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
