"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

Role = Literal["user", "assistant", "system", "tool"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Intent(str, Enum):
    """Closed set of intents a user turn can be classified into."""

    SEARCH = "search"
    ANALYZE = "analyze"
    PERSONALIZE = "personalize"
    RANK = "rank"
    APPLY = "apply"
    REVIEW_CONTRACT = "review_contract"
    GENERAL = "general"
    UNKNOWN = "unknown"


@dataclass(slots=True, frozen=True)
class PlainMessage:
    """Wire-level message as exchanged with clients."""

    role: Role
    content: str
    name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name is not None:
            payload["name"] = self.name
        return payload


@dataclass(slots=True, frozen=True)
class TurnConfig:
    """Per-call settings for one turn; unset limits use the supervisor defaults."""

    thread_id: str
    user_id: str | None = None
    max_steps: int | None = None
    timeout_seconds: float | None = None


@dataclass(slots=True, frozen=True)
class TokenUsage:
    prompt: int
    completion: int
    total: int


@dataclass(slots=True, frozen=True)
class ToolCallRecord:
    """Finalized record of one wrapped tool invocation."""

    tool_name: str
    input_payload: dict[str, Any]
    duration_ms: float
    success: bool
    output_preview: str | None = None
    error: str | None = None
    error_kind: str | None = None
    attempts: int = 1


@dataclass(slots=True, frozen=True)
class NodeExecution:
    """One Supervisor state transition."""

    node_id: str
    duration_ms: float
    agent_id: str | None = None
    input_summary: dict[str, Any] = field(default_factory=dict)
    output_summary: dict[str, Any] | None = None
    decision: dict[str, Any] | None = None
    token_usage: TokenUsage | None = None
    error: str | None = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(slots=True, frozen=True)
class PerformanceMetrics:
    total_latency_ms: float
    tool_call_count: int
    error_count: int
    token_usage: TokenUsage | None = None
    cost: float | None = None


@dataclass(slots=True, frozen=True)
class AgentTelemetry:
    """Summary of one completed handler invocation."""

    agent_id: str
    thread_id: str
    intent: str
    performance: PerformanceMetrics
    tool_calls: tuple[ToolCallRecord, ...] = ()
    user_id: str | None = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(slots=True, frozen=True)
class DecisionRecord:
    node_id: str
    decision: str
    reason: str
    confidence: float | None = None
    context: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(slots=True, frozen=True)
class ErrorRecord:
    error_type: str
    message: str
    kind: str
    stack: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(slots=True, frozen=True)
class AgentMetrics:
    """Aggregated performance of one agent over a trailing window."""

    agent_id: str
    executions: int
    avg_latency_ms: float
    success_rate: float
    error_rate: float
    avg_tool_call_count: float


@dataclass(slots=True)
class ContractReview:
    contract_id: str | None = None
    review: Any = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.contract_id is not None:
            payload["contractId"] = self.contract_id
        if self.review is not None:
            payload["review"] = self.review
        return payload


@dataclass(slots=True)
class ResponseMetadata:
    query: str | None = None
    filters: dict[str, Any] | None = None
    result_count: int | None = None

    def is_empty(self) -> bool:
        return self.query is None and self.filters is None and self.result_count is None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.query is not None:
            payload["query"] = self.query
        if self.filters is not None:
            payload["filters"] = self.filters
        if self.result_count is not None:
            payload["resultCount"] = self.result_count
        return payload


@dataclass(slots=True)
class StructuredResponse:
    """Stable envelope returned to callers.

    `tenders is None` means no result-producing tool ran (or none could be
    parsed); an empty list means a tool ran and found nothing.
    """

    text: str
    tenders: list[Any] | None = None
    contract_review: ContractReview | None = None
    metadata: ResponseMetadata | None = None

    def structured_fields(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.tenders is not None:
            payload["tenders"] = self.tenders
        if self.contract_review is not None:
            payload["contractReview"] = self.contract_review.to_dict()
        if self.metadata is not None and not self.metadata.is_empty():
            payload["metadata"] = self.metadata.to_dict()
        return payload

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, **self.structured_fields()}
