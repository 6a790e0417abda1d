"""Per-model token pricing."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping

logger = logging.getLogger(__name__)

FAST_TIER = "fast"
DEEP_TIER = "deep"


@dataclass(slots=True, frozen=True)
class ModelPricing:
    """Input/output pricing in USD per 1K tokens."""

    tier: str
    input_per_1k: float
    output_per_1k: float

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        return (input_tokens / 1000) * self.input_per_1k + (
            output_tokens / 1000
        ) * self.output_per_1k


DEFAULT_PRICING = ModelPricing(FAST_TIER, 0.003, 0.015)

# Matched by substring against the lowercased model name, first hit wins.
PRICE_TABLE: tuple[tuple[str, ModelPricing], ...] = (
    ("opus", ModelPricing(DEEP_TIER, 0.015, 0.075)),
    ("sonnet", ModelPricing(FAST_TIER, 0.003, 0.015)),
    ("haiku", ModelPricing(FAST_TIER, 0.003, 0.015)),
    ("gemini", ModelPricing(FAST_TIER, 0.003, 0.015)),
)


def parse_pricing_overrides(raw: str) -> dict[str, ModelPricing]:
    """Parse ``AI_PRICING`` entries.

    Format:
    - ``model:input_per_1k:output_per_1k``
    - multiple entries separated by ``,``
    - ``*`` as the model replaces the fallback price

    Entries that do not parse are skipped with a warning.
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
            logger.warning("Ignoring malformed pricing entry", extra={"entry": value})
            continue
        model, input_price, output_price = parts
        try:
            input_per_1k = float(input_price)
            output_per_1k = float(output_price)
        except ValueError:
            logger.warning("Ignoring malformed pricing entry", extra={"entry": value})
            continue
        tier = DEEP_TIER if "opus" in model.lower() else FAST_TIER
        parsed[model.lower()] = ModelPricing(tier, input_per_1k, output_per_1k)
    return parsed


def lookup_pricing(
    model: str | None, overrides: Mapping[str, ModelPricing] | None = None
) -> ModelPricing:
    """Return the price for ``model``; unknown models get the fast-tier default."""

    name = (model or "").strip().lower()
    overrides = overrides or {}

    if name and name in overrides:
        return overrides[name]
    for key, pricing in overrides.items():
        if key != "*" and key in name:
            return pricing
    for key, pricing in PRICE_TABLE:
        if key in name:
            return pricing
    return overrides.get("*", DEFAULT_PRICING)


def estimate_cost(
    model: str | None,
    input_tokens: int,
    output_tokens: int,
    overrides: Mapping[str, ModelPricing] | None = None,
) -> float:
    return round(lookup_pricing(model, overrides).cost(input_tokens, output_tokens), 6)


__all__ = [
    "DEEP_TIER",
    "DEFAULT_PRICING",
    "FAST_TIER",
    "ModelPricing",
    "PRICE_TABLE",
    "estimate_cost",
    "lookup_pricing",
    "parse_pricing_overrides",
]
