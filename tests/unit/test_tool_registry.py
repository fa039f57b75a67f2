import asyncio

import pytest
from langchain_core.tools import ToolException
from pydantic import BaseModel, Field

from tender_agent.agent.registry import ToolRegistry, ToolSpec, observe_tool_calls
from tender_agent.config import ToolConfig
from tender_agent.errors import (
    ErrorKind,
    ToolClarificationError,
    ToolInputError,
    ToolRecoverableError,
    ToolTimeoutError,
    ToolTransientError,
)
from tender_agent.obs.telemetry import TOOL_CALLS, InMemoryTelemetrySink, TelemetryCollector


class EchoInput(BaseModel):
    value: int = Field(ge=1)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _echo_spec(handler, **overrides) -> ToolSpec:
    return ToolSpec(
        name="echo",
        description="echo positive int",
        args_schema=EchoInput,
        handler=handler,
        **overrides,
    )


@pytest.mark.asyncio
async def test_tool_registry_validation() -> None:
    registry = ToolRegistry()

    async def _handler(data: EchoInput) -> str:
        return str(data.value)

    registry.register(_echo_spec(_handler))

    assert await registry.execute("echo", {"value": 3}) == "3"

    with pytest.raises(ToolInputError) as excinfo:
        await registry.execute("echo", {"value": 0})

    message = str(excinfo.value)
    assert message.startswith("Invalid input for echo: value:")
    assert "Expected schema fields: value." in message
    assert message.endswith("Please adjust your tool call parameters.")
    assert excinfo.value.fields == ("value",)
    assert isinstance(excinfo.value, ToolException)


def test_duplicate_tool_registration_rejected() -> None:
    registry = ToolRegistry()

    async def _handler(data: EchoInput) -> str:
        return str(data.value)

    spec = _echo_spec(_handler)
    registry.register(spec)
    with pytest.raises(ValueError):
        registry.register(spec)
    with pytest.raises(KeyError):
        registry.get("missing")


@pytest.mark.asyncio
async def test_timeout_fires_even_if_handler_never_settles() -> None:
    registry = ToolRegistry(ToolConfig(retries=0))

    async def _handler(data: EchoInput) -> str:
        await asyncio.Event().wait()
        return "never"

    registry.register(_echo_spec(_handler, timeout_seconds=0.05))

    with pytest.raises(ToolTimeoutError) as excinfo:
        await registry.execute("echo", {"value": 1})

    assert str(excinfo.value) == (
        "tool:echo timed out after 50ms. This is a transient error - please retry."
    )


@pytest.mark.asyncio
async def test_transient_failures_retry_with_deterministic_backoff() -> None:
    sleep = RecordingSleep()
    registry = ToolRegistry(
        ToolConfig(retries=2, backoff_base_seconds=1.0, backoff_max_seconds=10.0), sleep=sleep
    )
    attempts = 0

    async def _handler(data: EchoInput) -> str:
        nonlocal attempts
        attempts += 1
        raise ConnectionError("network unreachable")

    registry.register(_echo_spec(_handler))

    with pytest.raises(ToolTransientError) as excinfo:
        await registry.execute("echo", {"value": 1})

    assert attempts == 3
    assert sleep.delays == [1.0, 2.0]
    assert "failed after 3 attempts" in str(excinfo.value)
    assert excinfo.value.kind is ErrorKind.TRANSIENT


@pytest.mark.asyncio
async def test_backoff_is_capped() -> None:
    sleep = RecordingSleep()
    registry = ToolRegistry(
        ToolConfig(retries=4, backoff_base_seconds=2.0, backoff_max_seconds=5.0), sleep=sleep
    )

    async def _handler(data: EchoInput) -> str:
        raise ToolTransientError("rate limit", tool_name="echo")

    registry.register(_echo_spec(_handler))

    with pytest.raises(ToolTransientError):
        await registry.execute("echo", {"value": 1})

    assert sleep.delays == [2.0, 4.0, 5.0, 5.0]


@pytest.mark.asyncio
async def test_transient_failure_recovers_on_retry() -> None:
    sleep = RecordingSleep()
    registry = ToolRegistry(sleep=sleep)
    calls = 0

    async def _handler(data: EchoInput) -> str:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise TimeoutError("upstream timed out")
        return "ok"

    registry.register(_echo_spec(_handler))

    with observe_tool_calls() as records:
        assert await registry.execute("echo", {"value": 1}) == "ok"

    assert calls == 2
    assert len(records) == 1
    assert records[0].success is True
    assert records[0].attempts == 2


@pytest.mark.asyncio
async def test_non_transient_failures_are_not_retried() -> None:
    sleep = RecordingSleep()
    registry = ToolRegistry(sleep=sleep)
    calls = 0

    async def _handler(data: EchoInput) -> str:
        nonlocal calls
        calls += 1
        raise LookupError("Tender 999 not found")

    registry.register(_echo_spec(_handler))

    with pytest.raises(ToolRecoverableError) as excinfo:
        await registry.execute("echo", {"value": 1})

    assert calls == 1
    assert sleep.delays == []
    assert str(excinfo.value) == (
        "Tool echo failed: Tender 999 not found. "
        "This error can be recovered - please try again with adjusted parameters."
    )


@pytest.mark.asyncio
async def test_user_fixable_failure_asks_for_clarification() -> None:
    registry = ToolRegistry()

    async def _handler(data: EchoInput) -> str:
        raise ValueError("Company profile missing for user u1")

    registry.register(_echo_spec(_handler))

    with pytest.raises(ToolClarificationError) as excinfo:
        await registry.execute("echo", {"value": 1})

    assert "requires additional information" in str(excinfo.value)
    assert isinstance(excinfo.value, ToolException)


@pytest.mark.asyncio
async def test_unexpected_failure_propagates_unchanged() -> None:
    registry = ToolRegistry()
    boom = RuntimeError("boom")

    async def _handler(data: EchoInput) -> str:
        raise boom

    registry.register(_echo_spec(_handler))

    with pytest.raises(RuntimeError) as excinfo:
        await registry.execute("echo", {"value": 1})
    assert excinfo.value is boom


@pytest.mark.asyncio
async def test_tool_calls_reach_observers_and_telemetry() -> None:
    sink = InMemoryTelemetrySink()
    registry = ToolRegistry(telemetry=TelemetryCollector(sink))

    async def _handler(data: EchoInput) -> str:
        return "x" * 1000

    registry.register(_echo_spec(_handler))

    with observe_tool_calls() as outer:
        with registry.observe() as inner:
            await registry.execute("echo", {"value": 2})
        await registry.execute("echo", {"value": 3})

    assert len(inner) == 1
    assert len(outer) == 2
    assert len(outer[0].output_preview) == 320
    assert [record.payload["input_payload"] for record in sink.records(TOOL_CALLS)] == [
        {"value": 2},
        {"value": 3},
    ]


@pytest.mark.asyncio
async def test_langchain_tools_surface_recoverable_errors_as_text() -> None:
    registry = ToolRegistry()

    async def _handler(data: EchoInput) -> str:
        raise LookupError("Tender 42 not found")

    registry.register(_echo_spec(_handler))
    (tool,) = registry.as_langchain_tools(["echo"])

    result = await tool.ainvoke({"value": 1})

    assert tool.name == "echo"
    assert "This error can be recovered" in result


@pytest.mark.asyncio
async def test_langchain_tools_surface_validation_errors_as_text() -> None:
    registry = ToolRegistry()

    async def _handler(data: EchoInput) -> str:
        return str(data.value)

    registry.register(_echo_spec(_handler))
    (tool,) = registry.as_langchain_tools()

    result = await tool.ainvoke({"value": 0})

    assert result.startswith("Invalid input for echo")
