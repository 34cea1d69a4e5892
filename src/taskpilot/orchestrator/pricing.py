"""Token cost estimation helpers for task runs."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

logger = logging.getLogger(__name__)

PRICING_ENV = "TASKPILOT_PRICING"


@dataclass(slots=True, frozen=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float


DEFAULT_RATES: dict[str, ModelPricing] = {
    "claude-sonnet": ModelPricing(3.0, 15.0),
    "claude-opus": ModelPricing(15.0, 75.0),
    "claude-haiku": ModelPricing(0.25, 1.25),
    "gpt-4o-mini": ModelPricing(0.15, 0.60),
    "gpt-4o": ModelPricing(2.5, 10.0),
}
FLAT_RATE = DEFAULT_RATES["claude-sonnet"]

_PROVIDER_FALLBACK = {
    "anthropic-api": "claude-sonnet",
    "claude-cli": "claude-sonnet",
    "cursor-cli": "gpt-4o",
    "openai-api": "gpt-4o",
}


def lookup_pricing(
    *,
    model: str | None,
    provider_type: str,
    configured: Mapping[str, ModelPricing] | None = None,
) -> ModelPricing:
    """Resolve rates: env overrides, then config, then built-ins, by model substring."""

    rates: dict[str, ModelPricing] = {
        **_parse_pricing_mapping(os.getenv(PRICING_ENV, "")),
        **(configured or {}),
    }
    for pattern, pricing in DEFAULT_RATES.items():
        rates.setdefault(pattern, pricing)

    if model:
        if model in rates:
            return rates[model]
        for pattern in sorted(rates, key=len, reverse=True):
            if pattern in model or model in pattern:
                return rates[pattern]

    fallback = _PROVIDER_FALLBACK.get(provider_type)
    if fallback is not None:
        return rates[fallback]
    return FLAT_RATE


def estimate_cost_usd(
    *,
    input_tokens: int,
    output_tokens: int,
    pricing: ModelPricing = FLAT_RATE,
) -> float | None:
    """Estimate cost in USD; None when no tokens were reported."""

    if input_tokens <= 0 and output_tokens <= 0:
        return None
    return (input_tokens / 1_000_000) * pricing.input_per_1m + (
        output_tokens / 1_000_000
    ) * pricing.output_per_1m


def _parse_pricing_mapping(raw: str) -> dict[str, ModelPricing]:
    """Parse `TASKPILOT_PRICING` mapping.

    Format:
    - `model:input_per_1m:output_per_1m`
    - multiple entries separated by `,`
    """

    parsed: dict[str, ModelPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.split(":")]
        if len(parts) != 3:
            logger.warning("Ignoring malformed %s entry: %r", PRICING_ENV, value)
            continue
        model, input_price, output_price = parts
        try:
            parsed[model] = ModelPricing(float(input_price), float(output_price))
        except ValueError:
            logger.warning("Ignoring non-numeric %s entry: %r", PRICING_ENV, value)
    return parsed
