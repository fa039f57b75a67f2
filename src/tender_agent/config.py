"""Configuration models for the orchestration core."""

from __future__ import annotations

import os
from typing import Literal

from pydantic import BaseModel, Field

ModelTier = Literal["small", "medium", "large"]

DEFAULT_HANDLER_TIMEOUTS: dict[str, float] = {
    "search_agent": 60.0,
    "analysis_agent": 90.0,
    "personalization_agent": 60.0,
    "ranking_agent": 60.0,
    "application_agent": 120.0,
    "contract_review_agent": 180.0,
}


class ToolConfig(BaseModel):
    """Configures per-tool timeout and transient retry behavior."""

    timeout_seconds: float = Field(default=15.0, gt=0.0)
    retries: int = Field(default=2, ge=0)
    backoff_base_seconds: float = Field(default=1.0, ge=0.0)
    backoff_max_seconds: float = Field(default=10.0, ge=0.0)

    def backoff_seconds(self, attempt: int) -> float:
        return min(self.backoff_base_seconds * (2**attempt), self.backoff_max_seconds)


class SupervisorConfig(BaseModel):
    """Configures turn-level step budget and timeouts."""

    max_steps: int = Field(default=10, ge=3)
    timeout_seconds: float = Field(default=120.0, gt=0.0)
    default_handler_timeout_seconds: float = Field(default=60.0, gt=0.0)
    handler_timeouts: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_HANDLER_TIMEOUTS)
    )
    decision_confidence: float = Field(default=0.8, ge=0.0, le=1.0)

    def handler_timeout(self, agent_id: str) -> float:
        return self.handler_timeouts.get(agent_id, self.default_handler_timeout_seconds)


class LLMConfig(BaseModel):
    """Maps model tiers to concrete chat models."""

    base_url: str | None = "https://openrouter.ai/api/v1"
    api_key: str | None = None
    small_model: str = "google/gemini-2.0-flash-001"
    medium_model: str = "anthropic/claude-3.5-sonnet"
    large_model: str = "openai/gpt-oss-120b"
    small_temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)

    def model_for(self, tier: ModelTier) -> str:
        return {
            "small": self.small_model,
            "medium": self.medium_model,
            "large": self.large_model,
        }[tier]

    def temperature_for(self, tier: ModelTier) -> float:
        return self.small_temperature if tier == "small" else self.temperature

    @classmethod
    def from_env(cls) -> "LLMConfig":
        defaults = cls()
        api_key = os.getenv("OPENROUTER_API_KEY") or os.getenv("OPENAI_API_KEY")
        base_url = os.getenv("TENDER_AGENT_LLM_BASE_URL", defaults.base_url or "")
        return cls(
            api_key=api_key,
            base_url=base_url or None,
            small_model=os.getenv("TENDER_AGENT_MODEL_SMALL", defaults.small_model),
            medium_model=os.getenv("TENDER_AGENT_MODEL_MEDIUM", defaults.medium_model),
            large_model=os.getenv("TENDER_AGENT_MODEL_LARGE", defaults.large_model),
        )


class StorageConfig(BaseModel):
    """Optional SQLite locations; in-memory stores are used when unset."""

    checkpoint_path: str | None = None
    telemetry_path: str | None = None

    @classmethod
    def from_env(cls) -> "StorageConfig":
        return cls(
            checkpoint_path=os.getenv("TENDER_AGENT_CHECKPOINT_DB") or None,
            telemetry_path=os.getenv("TENDER_AGENT_TELEMETRY_DB") or None,
        )


class Settings(BaseModel):
    """Aggregated runtime settings."""

    tools: ToolConfig = Field(default_factory=ToolConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    log_level: str = "INFO"
    json_logs: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            llm=LLMConfig.from_env(),
            storage=StorageConfig.from_env(),
            log_level=os.getenv("TENDER_AGENT_LOG_LEVEL", "INFO"),
            json_logs=os.getenv("TENDER_AGENT_JSON_LOGS", "").lower() in {"1", "true", "yes"},
        )
