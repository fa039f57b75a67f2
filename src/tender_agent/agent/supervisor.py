"""Supervisor state machine: classify -> capability handler -> format."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog
from langchain_core.messages import BaseMessage
from langchain_core.runnables import RunnableConfig
from langgraph.errors import GraphRecursionError

from tender_agent.agent.classifier import IntentClassifier
from tender_agent.agent.formatter import ResponseFormatter
from tender_agent.agent.handlers import (
    DEFAULT_CAPABILITIES,
    CapabilityHandler,
    CapabilitySpec,
    HandlerRegistry,
)
from tender_agent.agent.messages import conversational, dedup_key, message_content, resolve_role, to_text
from tender_agent.agent.registry import observe_tool_calls
from tender_agent.config import LLMConfig, SupervisorConfig
from tender_agent.errors import (
    HandlerFailedError,
    StepBudgetExceededError,
    TurnError,
    TurnRejectedError,
    TurnTimeoutError,
    classify_error,
)
from tender_agent.obs.telemetry import TelemetryCollector
from tender_agent.obs.usage import CostModel, Timer, extract_token_usage
from tender_agent.storage.checkpoint import CheckpointStore, InMemoryCheckpointStore
from tender_agent.types import (
    AgentTelemetry,
    DecisionRecord,
    Intent,
    NodeExecution,
    PerformanceMetrics,
    StructuredResponse,
    ToolCallRecord,
    TurnConfig,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

NODE_CLASSIFY = "classify"
NODE_FORMAT = "format"

HANDLER_NODES: tuple[Intent, ...] = (
    Intent.SEARCH,
    Intent.ANALYZE,
    Intent.PERSONALIZE,
    Intent.RANK,
    Intent.APPLY,
    Intent.REVIEW_CONTRACT,
)

TRANSITIONS: dict[str, frozenset[str]] = {
    NODE_CLASSIFY: frozenset(node.value for node in HANDLER_NODES),
    **{node.value: frozenset({NODE_FORMAT}) for node in HANDLER_NODES},
    NODE_FORMAT: frozenset(),
}

# Intent -> handler node; None rejects the turn before dispatch.
ROUTES: dict[Intent, Intent | None] = {
    **{node: node for node in HANDLER_NODES},
    Intent.GENERAL: Intent.SEARCH,
    Intent.UNKNOWN: None,
}


@dataclass(slots=True)
class TurnResult:
    thread_id: str
    intent: Intent
    agent_id: str
    messages: list[BaseMessage]
    new_messages: list[BaseMessage]
    response: StructuredResponse


class StepBudget:
    """Counts state transitions against the turn's step limit."""

    def __init__(self, max_steps: int) -> None:
        self.max_steps = max_steps
        self.used = 0

    @property
    def remaining(self) -> int:
        return self.max_steps - self.used

    def consume(self, node_id: str) -> None:
        if self.used >= self.max_steps:
            raise StepBudgetExceededError(
                f"Step budget of {self.max_steps} exhausted before node {node_id}"
            )
        self.used += 1


def merge_transcript(
    stored: Sequence[BaseMessage] | None,
    incoming: Sequence[BaseMessage],
) -> list[BaseMessage]:
    """Combine a stored transcript with the messages sent for this turn.

    When the stored user/assistant conversation is a prefix of the incoming
    messages only the new suffix is appended; otherwise every incoming message
    is appended.
    """

    if not stored:
        return list(incoming)

    history = conversational(stored)
    positions = [
        index
        for index, message in enumerate(incoming)
        if resolve_role(message) in ("user", "assistant") and to_text(message_content(message))
    ]
    pairs = conversational(incoming)
    if history and pairs[: len(history)] == history:
        start = positions[len(history)] if len(positions) > len(history) else len(incoming)
        return [*stored, *incoming[start:]]
    return [*stored, *incoming]


class Supervisor:
    """Routes each turn through exactly one capability handler.

    Every transition is recorded as a `NodeExecution` in strict
    classify -> handler -> format order.
    """

    def __init__(
        self,
        handlers: HandlerRegistry,
        *,
        classifier: IntentClassifier | None = None,
        telemetry: TelemetryCollector | None = None,
        checkpoints: CheckpointStore | None = None,
        formatter: ResponseFormatter | None = None,
        config: SupervisorConfig | None = None,
        capabilities: Sequence[CapabilitySpec] = DEFAULT_CAPABILITIES,
        cost_model: CostModel | None = None,
        llm_config: LLMConfig | None = None,
    ) -> None:
        self.handlers = handlers
        self.classifier = classifier or IntentClassifier()
        self.telemetry = telemetry or TelemetryCollector()
        self.checkpoints: CheckpointStore = checkpoints or InMemoryCheckpointStore()
        self.formatter = formatter or ResponseFormatter(self.telemetry)
        self.config = config or SupervisorConfig()
        self.capabilities: dict[Intent, CapabilitySpec] = {spec.node: spec for spec in capabilities}
        self.cost_model = cost_model or CostModel()
        self.llm_config = llm_config or LLMConfig()

    async def invoke(self, messages: Sequence[BaseMessage], config: TurnConfig) -> TurnResult:
        """Run one turn to completion under the turn-level wall-clock timeout."""
        timeout = config.timeout_seconds or self.config.timeout_seconds
        try:
            return await asyncio.wait_for(self._run(messages, config), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise await self._turn_timeout(config, timeout) from exc

    async def stream(
        self, messages: Sequence[BaseMessage], config: TurnConfig
    ) -> AsyncIterator[list[BaseMessage]]:
        """Run one turn, yielding handler message snapshots as they arrive.

        Snapshots may overlap. The envelope is left to the delivery loop, which
        formats the de-duplicated messages once the stream completes.
        """

        loop = asyncio.get_running_loop()
        timeout = config.timeout_seconds or self.config.timeout_seconds
        deadline = loop.time() + timeout
        budget = StepBudget(config.max_steps or self.config.max_steps)

        transcript = await self._within(self._load(messages, config), deadline, config, timeout)
        intent, spec = await self._within(
            self._classify(transcript, config, budget), deadline, config, timeout
        )

        await self._step(budget, spec.node.value, config)
        handler = await self._within(
            self._resolve_handler(spec, config, transcript, budget), deadline, config, timeout
        )
        handler_timeout = self.config.handler_timeout(spec.agent_id)
        handler_deadline = min(deadline, loop.time() + handler_timeout)
        produced: dict[str, BaseMessage] = {}
        timer = Timer()

        with observe_tool_calls() as tool_calls:
            iterator = handler.stream(transcript, self._run_config(config, budget)).__aiter__()
            try:
                while True:
                    remaining = handler_deadline - loop.time()
                    if remaining <= 0:
                        raise asyncio.TimeoutError
                    batch = await asyncio.wait_for(_next_batch(iterator), timeout=remaining)
                    if batch is None:
                        break
                    for message in batch:
                        produced.setdefault(_identity(message), message)
                    yield batch
            except asyncio.TimeoutError as exc:
                if loop.time() >= deadline:
                    raise await self._turn_timeout(config, timeout) from exc
                raise await self._handler_timeout(
                    spec, config, transcript, handler_timeout, timer.current_ms()
                ) from exc
            except Exception as exc:
                raise await self._handler_failure(
                    spec, config, transcript, budget, exc, timer.current_ms()
                ) from exc
            finally:
                await _aclose(iterator)

        new_messages = list(produced.values())
        await self._record_handler_success(
            handler, spec, intent, config, transcript, new_messages, tool_calls, timer.current_ms()
        )

        self._transition(spec.node.value, NODE_FORMAT)
        await self._step(budget, NODE_FORMAT, config)
        output = [*transcript, *new_messages]
        await self.telemetry.record_node_execution(
            NodeExecution(
                node_id=NODE_FORMAT,
                duration_ms=0.0,
                input_summary={"messages": len(new_messages)},
                output_summary={"streamed": True},
            )
        )
        await self._within(
            self.checkpoints.put(config.thread_id, output, intent=intent.value),
            deadline,
            config,
            timeout,
        )

    async def _run(self, messages: Sequence[BaseMessage], config: TurnConfig) -> TurnResult:
        budget = StepBudget(config.max_steps or self.config.max_steps)
        transcript = await self._load(messages, config)
        intent, spec = await self._classify(transcript, config, budget)
        output = await self._dispatch(spec, intent, transcript, config, budget)
        new_messages = output[len(transcript) :] if len(output) >= len(transcript) else output

        self._transition(spec.node.value, NODE_FORMAT)
        await self._step(budget, NODE_FORMAT, config)
        with Timer() as timer:
            response = self.formatter.format(new_messages)
        await self.telemetry.record_node_execution(
            NodeExecution(
                node_id=NODE_FORMAT,
                duration_ms=timer.elapsed_ms,
                input_summary={"messages": len(new_messages)},
                output_summary={
                    "tenders": len(response.tenders) if response.tenders is not None else None,
                    "contract_review": response.contract_review is not None,
                    "text_chars": len(response.text),
                },
            )
        )

        await self.checkpoints.put(config.thread_id, output, intent=intent.value)
        return TurnResult(
            thread_id=config.thread_id,
            intent=intent,
            agent_id=spec.agent_id,
            messages=output,
            new_messages=new_messages,
            response=response,
        )

    async def _load(self, messages: Sequence[BaseMessage], config: TurnConfig) -> list[BaseMessage]:
        stored = await self.checkpoints.get(config.thread_id)
        transcript = merge_transcript(stored, messages)
        logger.debug(
            "supervisor.transcript_loaded",
            thread_id=config.thread_id,
            stored=len(stored or ()),
            merged=len(transcript),
        )
        return transcript

    async def _classify(
        self, transcript: list[BaseMessage], config: TurnConfig, budget: StepBudget
    ) -> tuple[Intent, CapabilitySpec]:
        await self._step(budget, NODE_CLASSIFY, config)
        with Timer() as timer:
            intent = self.classifier.classify(transcript)
        target = ROUTES.get(intent)
        next_node = target.value if target is not None else "reject"
        reason = f"Intent classified as {intent.value}"
        decision = DecisionRecord(
            node_id=NODE_CLASSIFY,
            decision=next_node,
            reason=reason,
            confidence=self.config.decision_confidence,
            context={"thread_id": config.thread_id, "intent": intent.value},
        )
        logger.info(
            "supervisor.intent_classified",
            thread_id=config.thread_id,
            intent=intent.value,
            next=next_node,
        )
        await self.telemetry.record_decision(decision)
        await self.telemetry.record_node_execution(
            NodeExecution(
                node_id=NODE_CLASSIFY,
                duration_ms=timer.elapsed_ms,
                input_summary={"messages": len(transcript)},
                output_summary={"intent": intent.value, "next": next_node},
                decision={
                    "next": next_node,
                    "reason": reason,
                    "confidence": self.config.decision_confidence,
                },
            )
        )

        if target is None:
            error = TurnRejectedError("No user message with content to classify")
            await self.telemetry.record_error(error, context={"thread_id": config.thread_id})
            raise error

        spec = self.capabilities.get(target)
        if spec is None:
            raise TurnRejectedError(f"No capability handler configured for {target.value}")
        self._transition(NODE_CLASSIFY, target.value)
        return intent, spec

    async def _dispatch(
        self,
        spec: CapabilitySpec,
        intent: Intent,
        transcript: list[BaseMessage],
        config: TurnConfig,
        budget: StepBudget,
    ) -> list[BaseMessage]:
        await self._step(budget, spec.node.value, config)
        handler = await self._resolve_handler(spec, config, transcript, budget)
        handler_timeout = self.config.handler_timeout(spec.agent_id)
        timer = Timer()
        logger.info("supervisor.dispatch", thread_id=config.thread_id, agent=spec.agent_id)

        with observe_tool_calls() as tool_calls:
            try:
                output = await asyncio.wait_for(
                    handler.invoke(transcript, self._run_config(config, budget)),
                    timeout=handler_timeout,
                )
            except asyncio.TimeoutError as exc:
                raise await self._handler_timeout(
                    spec, config, transcript, handler_timeout, timer.current_ms()
                ) from exc
            except Exception as exc:
                raise await self._handler_failure(
                    spec, config, transcript, budget, exc, timer.current_ms()
                ) from exc

        new_messages = output[len(transcript) :] if len(output) >= len(transcript) else output
        await self._record_handler_success(
            handler, spec, intent, config, transcript, new_messages, tool_calls, timer.current_ms()
        )
        return output

    async def _resolve_handler(
        self,
        spec: CapabilitySpec,
        config: TurnConfig,
        transcript: list[BaseMessage],
        budget: StepBudget,
    ) -> CapabilityHandler:
        timer = Timer()
        try:
            return await self.handlers.get(spec.agent_id)
        except Exception as exc:
            raise await self._handler_failure(
                spec, config, transcript, budget, exc, timer.current_ms()
            ) from exc

    def _run_config(self, config: TurnConfig, budget: StepBudget) -> RunnableConfig:
        # One step stays reserved for the format node.
        return {
            "recursion_limit": max(budget.remaining - 1, 1),
            "configurable": {"thread_id": config.thread_id, "user_id": config.user_id},
        }

    async def _record_handler_success(
        self,
        handler: CapabilityHandler,
        spec: CapabilitySpec,
        intent: Intent,
        config: TurnConfig,
        transcript: list[BaseMessage],
        new_messages: list[BaseMessage],
        tool_calls: list[ToolCallRecord],
        duration_ms: float,
    ) -> None:
        usage = extract_token_usage(new_messages)
        model_name = handler.model_name or self.llm_config.model_for(spec.model_tier)
        cost = self.cost_model.estimate_cost(model_name, usage) if usage else None
        await self.telemetry.record_node_execution(
            NodeExecution(
                node_id=spec.node.value,
                agent_id=spec.agent_id,
                duration_ms=duration_ms,
                input_summary={"messages": len(transcript)},
                output_summary={"messages": len(new_messages), "tool_calls": len(tool_calls)},
                token_usage=usage,
            )
        )
        await self.telemetry.record_agent_execution(
            AgentTelemetry(
                agent_id=spec.agent_id,
                thread_id=config.thread_id,
                user_id=config.user_id,
                intent=intent.value,
                tool_calls=tuple(tool_calls),
                performance=PerformanceMetrics(
                    total_latency_ms=duration_ms,
                    tool_call_count=len(tool_calls),
                    error_count=sum(1 for call in tool_calls if not call.success),
                    token_usage=usage,
                    cost=cost,
                ),
            )
        )

    async def _handler_timeout(
        self,
        spec: CapabilitySpec,
        config: TurnConfig,
        transcript: list[BaseMessage],
        timeout: float,
        duration_ms: float,
    ) -> TurnTimeoutError:
        error = TurnTimeoutError(f"Agent {spec.agent_id} timed out after {int(timeout * 1000)}ms")
        await self._record_handler_error(spec, config, transcript, error, error, duration_ms)
        return error

    async def _handler_failure(
        self,
        spec: CapabilitySpec,
        config: TurnConfig,
        transcript: list[BaseMessage],
        budget: StepBudget,
        exc: Exception,
        duration_ms: float,
    ) -> TurnError:
        if isinstance(exc, GraphRecursionError):
            error: TurnError = StepBudgetExceededError(
                f"Agent {spec.agent_id} exceeded the step budget of {budget.max_steps}"
            )
        elif isinstance(exc, TurnError):
            error = exc
        else:
            error = HandlerFailedError(
                f"Agent {spec.agent_id} failed: {exc}",
                agent_id=spec.agent_id,
                error_kind=classify_error(exc),
            )
        await self._record_handler_error(spec, config, transcript, error, exc, duration_ms)
        return error

    async def _record_handler_error(
        self,
        spec: CapabilitySpec,
        config: TurnConfig,
        transcript: list[BaseMessage],
        error: TurnError,
        cause: BaseException,
        duration_ms: float,
    ) -> None:
        logger.warning(
            "supervisor.handler_failed",
            thread_id=config.thread_id,
            agent=spec.agent_id,
            kind=error.kind,
            error=str(error),
        )
        await self.telemetry.record_node_execution(
            NodeExecution(
                node_id=spec.node.value,
                agent_id=spec.agent_id,
                duration_ms=duration_ms,
                input_summary={"messages": len(transcript)},
                error=str(error),
            )
        )
        await self.telemetry.record_error(
            cause,
            agent_id=spec.agent_id,
            context={"thread_id": config.thread_id, "node": spec.node.value, "kind": error.kind},
        )

    async def _turn_timeout(self, config: TurnConfig, timeout: float) -> TurnTimeoutError:
        error = TurnTimeoutError(
            f"Turn {config.thread_id} timed out after {int(timeout * 1000)}ms"
        )
        logger.warning("supervisor.turn_timeout", thread_id=config.thread_id)
        await self.telemetry.record_error(error, context={"thread_id": config.thread_id})
        return error

    async def _within(
        self, awaitable: Awaitable[T], deadline: float, config: TurnConfig, timeout: float
    ) -> T:
        remaining = deadline - asyncio.get_running_loop().time()
        try:
            return await asyncio.wait_for(awaitable, timeout=max(remaining, 0.0))
        except asyncio.TimeoutError as exc:
            raise await self._turn_timeout(config, timeout) from exc

    async def _step(self, budget: StepBudget, node_id: str, config: TurnConfig) -> None:
        try:
            budget.consume(node_id)
        except StepBudgetExceededError as exc:
            logger.warning(
                "supervisor.step_budget_exceeded", thread_id=config.thread_id, node=node_id
            )
            await self.telemetry.record_error(
                exc, context={"thread_id": config.thread_id, "node": node_id}
            )
            raise

    def _transition(self, current: str, target: str) -> None:
        if target not in TRANSITIONS.get(current, frozenset()):
            raise RuntimeError(f"Invalid supervisor transition {current} -> {target}")


def _identity(message: Any) -> str:
    message_id = getattr(message, "id", None)
    if message_id:
        return str(message_id)
    call_ids = [str(call.get("id")) for call in getattr(message, "tool_calls", None) or ()]
    tool_call_id = getattr(message, "tool_call_id", None) or ""
    return f"{dedup_key(message)}|{tool_call_id}|{','.join(call_ids)}"


async def _next_batch(iterator: AsyncIterator[list[BaseMessage]]) -> list[BaseMessage] | None:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


async def _aclose(iterator: AsyncIterator[Any]) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is not None:
        await aclose()
