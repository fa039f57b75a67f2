"""Token usage extraction, cost accounting, and timing helpers."""

from __future__ import annotations

import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from tender_agent.types import TokenUsage

# USD per 1M tokens (input, output).
DEFAULT_PRICING: dict[str, tuple[float, float]] = {
    "google/gemini-2.0-flash-001": (0.075, 0.3),
    "anthropic/claude-3.5-sonnet": (3.0, 15.0),
    "openai/gpt-oss-120b": (10.0, 30.0),
}


@dataclass(slots=True)
class CostModel:
    """Per-model token pricing (USD per 1M tokens)."""

    pricing: dict[str, tuple[float, float]] = field(
        default_factory=lambda: dict(DEFAULT_PRICING)
    )
    default_per_million: float = 5.0

    def estimate_cost(self, model_name: str | None, usage: TokenUsage) -> float:
        prices = self.pricing.get(model_name or "")
        if prices is None:
            return (usage.total / 1_000_000) * self.default_per_million
        input_price, output_price = prices
        return (usage.prompt / 1_000_000) * input_price + (
            usage.completion / 1_000_000
        ) * output_price


def extract_token_usage(messages: Iterable[Any] | None) -> TokenUsage | None:
    """Sum token usage reported on model messages.

    Provider-specific `response_metadata.token_usage` wins over the
    standardized `usage_metadata` for the same message.
    """

    prompt = completion = total = 0
    for message in messages or ():
        response_metadata = _mapping(message, "response_metadata")
        token_usage = response_metadata.get("token_usage") if response_metadata else None
        if isinstance(token_usage, Mapping):
            prompt += int(token_usage.get("prompt_tokens") or 0)
            completion += int(token_usage.get("completion_tokens") or 0)
            total += int(token_usage.get("total_tokens") or 0)
            continue

        usage_metadata = _mapping(message, "usage_metadata")
        if usage_metadata:
            input_tokens = int(usage_metadata.get("input_tokens") or 0)
            output_tokens = int(usage_metadata.get("output_tokens") or 0)
            prompt += input_tokens
            completion += output_tokens
            total += int(usage_metadata.get("total_tokens") or 0) or input_tokens + output_tokens

    if not (prompt or completion or total):
        return None
    return TokenUsage(prompt=prompt, completion=completion, total=total or prompt + completion)


def _mapping(message: Any, attribute: str) -> Mapping[str, Any] | None:
    if isinstance(message, Mapping):
        value = message.get(attribute)
    else:
        value = getattr(message, attribute, None)
    return value if isinstance(value, Mapping) else None


class Timer:
    """Simple context timer."""

    def __init__(self) -> None:
        self._start = time.perf_counter()
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = self.current_ms()

    def current_ms(self) -> float:
        return (time.perf_counter() - self._start) * 1000.0
