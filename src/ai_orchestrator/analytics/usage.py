"""Token accounting for model interactions."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping

PREVIEW_LENGTH = 100
ELLIPSIS = "..."
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str | None) -> int:
    """Approximate token count as one token per four characters, rounded up."""

    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def prompt_preview(prompt: str | None, limit: int = PREVIEW_LENGTH) -> str:
    prompt = prompt or ""
    if len(prompt) > limit:
        return prompt[:limit] + ELLIPSIS
    return prompt


@dataclass(slots=True, frozen=True)
class TokenUsage:
    input_tokens: int
    output_tokens: int
    source: str

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


def _reported(usage: Mapping[str, Any] | None, *keys: str) -> int | None:
    if not usage:
        return None
    for key in keys:
        value = usage.get(key)
        if value is None or isinstance(value, bool):
            continue
        try:
            count = int(value)
        except (TypeError, ValueError):
            continue
        if count >= 0:
            return count
    return None


def resolve_usage(
    usage: Mapping[str, Any] | None, prompt: str | None, response: str | None
) -> TokenUsage:
    """Prefer model-reported counts; estimate whichever side is missing.

    ``source`` is ``reported`` when both counts came from the model,
    ``estimated`` when neither did, and ``mixed`` otherwise.
    """

    reported_in = _reported(usage, "input_tokens", "prompt_tokens", "input")
    reported_out = _reported(usage, "output_tokens", "completion_tokens", "output")

    input_tokens = reported_in if reported_in is not None else estimate_tokens(prompt)
    output_tokens = reported_out if reported_out is not None else estimate_tokens(response)

    if reported_in is not None and reported_out is not None:
        source = "reported"
    elif reported_in is None and reported_out is None:
        source = "estimated"
    else:
        source = "mixed"
    return TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens, source=source)


__all__ = [
    "ELLIPSIS",
    "PREVIEW_LENGTH",
    "TokenUsage",
    "estimate_tokens",
    "prompt_preview",
    "resolve_usage",
]
