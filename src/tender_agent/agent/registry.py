"""Tool registry with validation, timeouts, classified errors, and retries."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Iterator
from contextlib import AbstractContextManager, contextmanager
from contextvars import ContextVar
from typing import Any

import structlog
from langchain_core.tools import StructuredTool
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tender_agent.config import ToolConfig
from tender_agent.errors import (
    ErrorKind,
    ToolClarificationError,
    ToolInputError,
    ToolRecoverableError,
    ToolTimeoutError,
    ToolTransientError,
    classify_error,
)
from tender_agent.obs.telemetry import TelemetryCollector
from tender_agent.obs.usage import Timer
from tender_agent.types import ToolCallRecord

logger = structlog.get_logger(__name__)

ToolObserver = Callable[[ToolCallRecord], None]

_observers: ContextVar[tuple[ToolObserver, ...]] = ContextVar("tool_call_observers", default=())

_PREVIEW_CHARS = 320


@contextmanager
def observe_tool_calls() -> Iterator[list[ToolCallRecord]]:
    """Collect the tool calls made by the current task and the tasks it spawns."""
    calls: list[ToolCallRecord] = []
    token = _observers.set(_observers.get() + (calls.append,))
    try:
        yield calls
    finally:
        _observers.reset(token)


class ToolSpec(BaseModel):
    """Declarative tool specification for registration and validation.

    `timeout_seconds` and `retries` fall back to the registry's `ToolConfig`
    when left unset.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    args_schema: type[BaseModel]
    handler: Callable[[Any], Awaitable[Any]]
    timeout_seconds: float | None = Field(default=None, gt=0.0)
    retries: int | None = Field(default=None, ge=0)
    tags: list[str] = Field(default_factory=list)

    def validate_input(self, payload: dict[str, Any]) -> BaseModel:
        try:
            return self.args_schema.model_validate(payload)
        except ValidationError as exc:
            raise self.input_error(exc) from exc

    def input_error(self, exc: ValidationError) -> ToolInputError:
        fields = tuple(
            dict.fromkeys(".".join(str(part) for part in error["loc"]) or "input" for error in exc.errors())
        )
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'input'}: {error['msg']}"
            for error in exc.errors()
        )
        expected = ", ".join(self.args_schema.model_fields) or "none"
        return ToolInputError(
            f"Invalid input for {self.name}: {details}. Expected schema fields: {expected}. "
            "Please adjust your tool call parameters.",
            tool_name=self.name,
            fields=fields,
        )


class ToolRegistry:
    """Stores tool specs, executes them under the retry policy, and exports
    LangChain-compatible tool objects."""

    def __init__(
        self,
        config: ToolConfig | None = None,
        *,
        telemetry: TelemetryCollector | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or ToolConfig()
        self.telemetry = telemetry
        self._sleep = sleep
        self._tools: dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = spec

    def get(self, name: str) -> ToolSpec:
        spec = self._tools.get(name)
        if spec is None:
            raise KeyError(f"Unknown tool: {name}")
        return spec

    def specs(self, names: Iterable[str] | None = None) -> list[ToolSpec]:
        if names is None:
            return list(self._tools.values())
        return [self.get(name) for name in names]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def observe(self) -> AbstractContextManager[list[ToolCallRecord]]:
        return observe_tool_calls()

    async def execute(self, name: str, payload: dict[str, Any] | None = None) -> Any:
        """Validate, run, and retry one tool call.

        Only transient failures are retried. Recoverable and clarification
        failures are re-raised as `ToolException` subclasses with actionable
        messages; unexpected failures propagate unchanged.
        """

        spec = self.get(name)
        arguments = dict(payload or {})
        retries = spec.retries if spec.retries is not None else self.config.retries
        attempts = 0
        timer = Timer()
        try:
            data = spec.validate_input(arguments)
            while True:
                attempts += 1
                try:
                    output = await self._attempt(spec, data)
                    break
                except Exception as exc:
                    if classify_error(exc) is not ErrorKind.TRANSIENT or attempts > retries:
                        raise
                    delay = self.config.backoff_seconds(attempts - 1)
                    logger.warning(
                        "tool.retry",
                        tool=name,
                        attempt=attempts,
                        delay_s=delay,
                        error=str(exc),
                    )
                    await self._sleep(delay)
        except Exception as exc:
            final = _final_error(spec, exc, attempts)
            kind = classify_error(final)
            logger.warning(
                "tool.failed",
                tool=name,
                attempts=attempts,
                kind=kind.value,
                error=str(final),
            )
            await self._emit(
                ToolCallRecord(
                    tool_name=name,
                    input_payload=arguments,
                    duration_ms=timer.current_ms(),
                    success=False,
                    error=str(final),
                    error_kind=kind.value,
                    attempts=attempts,
                )
            )
            if final is exc:
                raise
            raise final from exc

        await self._emit(
            ToolCallRecord(
                tool_name=name,
                input_payload=arguments,
                duration_ms=timer.current_ms(),
                success=True,
                output_preview=_preview(output),
                attempts=attempts,
            )
        )
        return output

    def as_langchain_tools(self, names: Iterable[str] | None = None) -> list[StructuredTool]:
        tools: list[StructuredTool] = []
        for spec in self.specs(names):
            tools.append(
                StructuredTool.from_function(
                    coroutine=self._build_coroutine(spec),
                    name=spec.name,
                    description=spec.description,
                    args_schema=spec.args_schema,
                    handle_tool_error=True,
                    handle_validation_error=_validation_handler(spec),
                )
            )
        return tools

    def _build_coroutine(self, spec: ToolSpec) -> Callable[..., Awaitable[Any]]:
        async def _coroutine(**kwargs: Any) -> Any:
            return await self.execute(spec.name, kwargs)

        return _coroutine

    async def _attempt(self, spec: ToolSpec, data: BaseModel) -> Any:
        timeout = spec.timeout_seconds or self.config.timeout_seconds
        try:
            return await asyncio.wait_for(spec.handler(data), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ToolTimeoutError(
                f"tool:{spec.name} timed out after {int(timeout * 1000)}ms. "
                "This is a transient error - please retry.",
                tool_name=spec.name,
            ) from exc

    async def _emit(self, record: ToolCallRecord) -> None:
        for observer in _observers.get():
            observer(record)
        if self.telemetry is not None:
            await self.telemetry.record_tool_call(record)


def _final_error(spec: ToolSpec, error: Exception, attempts: int) -> Exception:
    if isinstance(error, ToolInputError):
        return error

    kind = classify_error(error)
    if kind is ErrorKind.LLM_RECOVERABLE:
        return ToolRecoverableError(
            f"Tool {spec.name} failed: {error}. "
            "This error can be recovered - please try again with adjusted parameters.",
            tool_name=spec.name,
        )
    if kind is ErrorKind.USER_FIXABLE:
        return ToolClarificationError(
            f"Tool {spec.name} requires additional information: {error}. "
            "Please ask the user for clarification or missing information.",
            tool_name=spec.name,
        )
    if kind is ErrorKind.TRANSIENT and not isinstance(error, ToolTransientError):
        return ToolTransientError(
            f"Tool {spec.name} failed after {attempts} attempts: {error}",
            tool_name=spec.name,
        )
    return error


def _validation_handler(spec: ToolSpec) -> Callable[[ValidationError], str]:
    def _handle(exc: ValidationError) -> str:
        return str(spec.input_error(exc))

    return _handle


def _preview(output: Any) -> str:
    text = output if isinstance(output, str) else repr(output)
    return text[:_PREVIEW_CHARS]
