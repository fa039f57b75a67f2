"""Chat model construction per model tier."""

from __future__ import annotations

from typing import Any

from langchain_openai import ChatOpenAI

from tender_agent.config import LLMConfig, ModelTier


def create_chat_model(tier: ModelTier, config: LLMConfig | None = None) -> Any:
    """Build the chat model for a tier.

    Raises:
        RuntimeError: when no API key is configured.
    """

    settings = config or LLMConfig.from_env()
    if not settings.api_key:
        raise RuntimeError("No LLM API key configured (set OPENROUTER_API_KEY).")

    return ChatOpenAI(
        model=settings.model_for(tier),
        temperature=settings.temperature_for(tier),
        api_key=settings.api_key,
        base_url=settings.base_url,
    )
