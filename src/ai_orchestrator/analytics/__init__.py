"""Usage and cost accounting."""

from .engine import AnalyticsEngine, ModelUsage, UsageSummary
from .pricing import ModelPricing, estimate_cost, lookup_pricing, parse_pricing_overrides
from .usage import TokenUsage, estimate_tokens, prompt_preview, resolve_usage

__all__ = [
    "AnalyticsEngine",
    "ModelPricing",
    "ModelUsage",
    "TokenUsage",
    "UsageSummary",
    "estimate_cost",
    "estimate_tokens",
    "lookup_pricing",
    "parse_pricing_overrides",
    "prompt_preview",
    "resolve_usage",
]
