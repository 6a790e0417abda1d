"""Per-session usage and cost accounting."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from ..storage.models import InteractionRecord, SessionMetadata, TokenCounts, format_timestamp
from ..storage.session_store import SessionHandle, SessionStore
from .pricing import ModelPricing, estimate_cost, parse_pricing_overrides
from .usage import prompt_preview, resolve_usage

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ModelUsage:
    interactions: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(slots=True)
class UsageSummary:
    """Token and cost totals for one session, with a per-model breakdown."""

    interactions: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_cost: float = 0.0
    by_model: dict[str, ModelUsage] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "interactions": self.interactions,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "total_cost": round(self.total_cost, 6),
            "by_model": {
                model: {
                    "interactions": usage.interactions,
                    "input_tokens": usage.input_tokens,
                    "output_tokens": usage.output_tokens,
                    "cost": round(usage.cost, 6),
                }
                for model, usage in self.by_model.items()
            },
        }


class AnalyticsEngine:
    """Turns one model call into an interaction record persisted in ``metadata.json``."""

    def __init__(
        self,
        store: SessionStore,
        *,
        pricing_overrides: Mapping[str, ModelPricing] | str | None = None,
    ) -> None:
        self._store = store
        if isinstance(pricing_overrides, str):
            pricing_overrides = parse_pricing_overrides(pricing_overrides)
        self._overrides = dict(pricing_overrides or {})

    def build_interaction(
        self,
        *,
        model: str,
        prompt: str,
        response: str,
        duration_ms: int,
        usage: Mapping[str, Any] | None = None,
    ) -> InteractionRecord:
        tokens = resolve_usage(usage, prompt, response)
        return InteractionRecord(
            timestamp=format_timestamp(self._store.now()),
            model=model,
            prompt_preview=prompt_preview(prompt),
            tokens=TokenCounts(input=tokens.input_tokens, output=tokens.output_tokens),
            usage_source=tokens.source,
            cost=estimate_cost(model, tokens.input_tokens, tokens.output_tokens, self._overrides),
            duration_ms=max(0, int(duration_ms)),
        )

    def record(
        self,
        session: SessionHandle | str,
        *,
        model: str,
        prompt: str,
        response: str,
        duration_ms: int,
        usage: Mapping[str, Any] | None = None,
        session_id: str | None = None,
        command: str | None = None,
    ) -> InteractionRecord:
        """Append one interaction and add its cost to ``total_cost`` atomically."""

        interaction = self.build_interaction(
            model=model,
            prompt=prompt,
            response=response,
            duration_ms=duration_ms,
            usage=usage,
        )

        def _apply(metadata: SessionMetadata) -> None:
            metadata.interactions.append(interaction)
            metadata.total_cost = round(metadata.total_cost + interaction.cost, 6)
            metadata.last_used = interaction.timestamp
            if session_id:
                metadata.session_id = session_id
            if command:
                metadata.command = command

        self._store.update_metadata(session, _apply)
        logger.debug(
            "Recorded interaction",
            extra={
                "model": model,
                "input_tokens": interaction.tokens.input,
                "output_tokens": interaction.tokens.output,
                "cost": interaction.cost,
                "usage_source": interaction.usage_source,
            },
        )
        return interaction

    def summarize(self, metadata: SessionMetadata) -> UsageSummary:
        summary = UsageSummary(total_cost=metadata.total_cost)
        for interaction in metadata.interactions:
            summary.interactions += 1
            summary.input_tokens += interaction.tokens.input
            summary.output_tokens += interaction.tokens.output
            bucket = summary.by_model.setdefault(interaction.model or "unknown", ModelUsage())
            bucket.interactions += 1
            bucket.input_tokens += interaction.tokens.input
            bucket.output_tokens += interaction.tokens.output
            bucket.cost += interaction.cost
        return summary

    def session_summary(self, session: SessionHandle | str) -> UsageSummary:
        return self.summarize(self._store.read_metadata(session))


__all__ = ["AnalyticsEngine", "ModelUsage", "UsageSummary"]
