"""Capability handlers and their lazily constructed registry."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import structlog
from langchain.agents import create_agent
from langchain_core.messages import AIMessage, BaseMessage
from langchain_core.runnables import RunnableConfig
from langchain_core.tools import BaseTool

from tender_agent.agent import prompts
from tender_agent.agent.llm import create_chat_model
from tender_agent.agent.registry import ToolRegistry
from tender_agent.config import LLMConfig, ModelTier
from tender_agent.types import Intent

logger = structlog.get_logger(__name__)


class CapabilityHandler:
    """A named reasoning loop bound to a fixed toolset and instruction text.

    Handlers hold no per-turn state: the transcript and run config arrive with
    each call, so one instance serves concurrent turns.
    """

    def __init__(
        self,
        *,
        name: str,
        tools: Sequence[BaseTool],
        model_tier: ModelTier,
        instructions: str,
        llm: Any | None = None,
        executor: Any | None = None,
    ) -> None:
        self.name = name
        self.tools = list(tools)
        self.model_tier = model_tier
        self.instructions = instructions
        self.model_name = _model_name(llm)
        if executor is not None:
            self.executor = executor
        elif llm is not None:
            self.executor = create_agent(
                model=llm,
                tools=self.tools,
                system_prompt=instructions,
                name=name,
            )
        else:
            raise ValueError(f"Handler {name} needs either an llm or an executor.")

    async def invoke(
        self,
        messages: Sequence[BaseMessage],
        config: RunnableConfig | None = None,
    ) -> list[BaseMessage]:
        """Run the loop to completion and return the full output transcript."""
        result = await self.executor.ainvoke({"messages": list(messages)}, config=config)
        return _state_messages(result)

    async def stream(
        self,
        messages: Sequence[BaseMessage],
        config: RunnableConfig | None = None,
    ) -> AsyncIterator[list[BaseMessage]]:
        """Yield the messages produced so far, one snapshot per loop step.

        Snapshots overlap: each one repeats every message produced earlier in
        the turn. Consumers de-duplicate.
        """

        base = len(messages)
        async for state in self.executor.astream(
            {"messages": list(messages)}, config=config, stream_mode="values"
        ):
            produced = _state_messages(state)[base:]
            if produced:
                yield produced


def _state_messages(state: Any) -> list[BaseMessage]:
    if isinstance(state, Mapping):
        messages = state.get("messages")
        if isinstance(messages, list):
            return list(messages)
        if "output" in state:
            return [AIMessage(content=str(state["output"]))]
    if isinstance(state, list):
        return list(state)
    return [AIMessage(content=str(state))]


def _model_name(llm: Any) -> str | None:
    for attribute in ("model_name", "model"):
        value = getattr(llm, attribute, None)
        if isinstance(value, str):
            return value
    return None


HandlerFactory = Callable[[], "CapabilityHandler | Awaitable[CapabilityHandler]"]


class HandlerRegistry:
    """Maps capability names to handlers constructed on first use.

    Construction happens at most once per name, even when several turns ask
    for the same handler concurrently.
    """

    def __init__(self, factories: Mapping[str, HandlerFactory] | None = None) -> None:
        self._factories: dict[str, HandlerFactory] = dict(factories or {})
        self._instances: dict[str, CapabilityHandler] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def register(self, name: str, factory: HandlerFactory) -> None:
        if name in self._factories:
            raise ValueError(f"Handler already registered: {name}")
        self._factories[name] = factory

    def names(self) -> list[str]:
        return list(self._factories)

    def is_constructed(self, name: str) -> bool:
        return name in self._instances

    async def get(self, name: str) -> CapabilityHandler:
        handler = self._instances.get(name)
        if handler is not None:
            return handler

        factory = self._factories.get(name)
        if factory is None:
            raise KeyError(f"Unknown handler: {name}")

        lock = self._locks.setdefault(name, asyncio.Lock())
        async with lock:
            handler = self._instances.get(name)
            if handler is None:
                built = factory()
                handler = await built if inspect.isawaitable(built) else built
                self._instances[name] = handler
                logger.info("handler.constructed", agent=name, tier=handler.model_tier)
        return handler


@dataclass(slots=True, frozen=True)
class CapabilitySpec:
    node: Intent
    agent_id: str
    model_tier: ModelTier
    tools: tuple[str, ...]
    instructions: str


DEFAULT_CAPABILITIES: tuple[CapabilitySpec, ...] = (
    CapabilitySpec(
        node=Intent.SEARCH,
        agent_id="search_agent",
        model_tier="medium",
        tools=(
            "build_ted_query",
            "search_tenders",
            "advanced_search",
            "framework_agreement_search",
            "get_current_date",
        ),
        instructions=prompts.SEARCH_PROMPT,
    ),
    CapabilitySpec(
        node=Intent.ANALYZE,
        agent_id="analysis_agent",
        model_tier="large",
        tools=("analyze_eligibility", "get_best_tenders", "save_match_score"),
        instructions=prompts.ANALYSIS_PROMPT,
    ),
    CapabilitySpec(
        node=Intent.PERSONALIZE,
        agent_id="personalization_agent",
        model_tier="medium",
        tools=(
            "generate_smart_suggestions",
            "analyze_user_behavior",
            "generate_contextual_suggestions",
            "get_personalized_recommendations",
        ),
        instructions=prompts.PERSONALIZATION_PROMPT,
    ),
    CapabilitySpec(
        node=Intent.RANK,
        agent_id="ranking_agent",
        model_tier="medium",
        tools=(
            "rank_tenders",
            "generate_shortlist",
            "analyze_competition",
            "analyze_buyer_patterns",
        ),
        instructions=prompts.RANKING_PROMPT,
    ),
    CapabilitySpec(
        node=Intent.APPLY,
        agent_id="application_agent",
        model_tier="medium",
        tools=(
            "draft_application",
            "send_application_email",
            "submit_application_form",
            "track_application",
            "get_application_status",
        ),
        instructions=prompts.APPLICATION_PROMPT,
    ),
    CapabilitySpec(
        node=Intent.REVIEW_CONTRACT,
        agent_id="contract_review_agent",
        model_tier="large",
        tools=("process_contract", "review_contract", "search_legal_reference"),
        instructions=prompts.CONTRACT_REVIEW_PROMPT,
    ),
)


def build_default_handlers(
    tool_registry: ToolRegistry,
    llm_config: LLMConfig | None = None,
    *,
    capabilities: Sequence[CapabilitySpec] = DEFAULT_CAPABILITIES,
    executors: Mapping[str, Any] | None = None,
    llm_factory: Callable[[ModelTier, LLMConfig | None], Any] = create_chat_model,
) -> HandlerRegistry:
    """Register one lazy factory per capability.

    `executors` (keyed by agent id) replaces the LangChain runtime, which is
    how tests drive handlers without a model.
    """

    registry = HandlerRegistry()
    for spec in capabilities:

        def _factory(spec: CapabilitySpec = spec) -> CapabilityHandler:
            executor = (executors or {}).get(spec.agent_id)
            return CapabilityHandler(
                name=spec.agent_id,
                tools=tool_registry.as_langchain_tools(spec.tools),
                model_tier=spec.model_tier,
                instructions=spec.instructions,
                llm=None if executor is not None else llm_factory(spec.model_tier, llm_config),
                executor=executor,
            )

        registry.register(spec.agent_id, _factory)
    return registry
