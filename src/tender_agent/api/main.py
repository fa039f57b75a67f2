"""FastAPI entrypoint for chat, streaming chat, health and metrics endpoints."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import asdict
from typing import Any

import structlog
from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from tender_agent.agent.chat import ChatService
from tender_agent.agent.handlers import build_default_handlers
from tender_agent.agent.registry import ToolRegistry
from tender_agent.agent.streaming import sse_frame
from tender_agent.agent.supervisor import Supervisor
from tender_agent.agent.tools import register_tender_tools
from tender_agent.config import Settings
from tender_agent.errors import TurnError, TurnRejectedError, turn_error_kind
from tender_agent.obs.logging import configure_logging
from tender_agent.obs.telemetry import (
    InMemoryTelemetrySink,
    SQLiteTelemetrySink,
    TelemetryCollector,
    TelemetrySink,
)
from tender_agent.services.backend import InMemoryTenderBackend
from tender_agent.storage.checkpoint import (
    CheckpointStore,
    InMemoryCheckpointStore,
    SQLiteCheckpointStore,
)

logger = structlog.get_logger(__name__)

SUGGESTION = "Try rephrasing your request or being more specific."


class ChatRequest(BaseModel):
    messages: list[Any] = Field(default_factory=list)
    thread_id: str | None = None


def _create_telemetry(settings: Settings) -> TelemetryCollector:
    sink: TelemetrySink = (
        SQLiteTelemetrySink(settings.storage.telemetry_path)
        if settings.storage.telemetry_path
        else InMemoryTelemetrySink()
    )
    return TelemetryCollector(sink)


def _create_checkpoints(settings: Settings) -> CheckpointStore:
    if settings.storage.checkpoint_path:
        return SQLiteCheckpointStore(settings.storage.checkpoint_path)
    return InMemoryCheckpointStore()


def create_chat_service(
    settings: Settings,
    *,
    backend: Any = None,
    executors: dict[str, Any] | None = None,
) -> ChatService:
    """Wire the tool registry, handlers and supervisor into a chat service."""

    telemetry = _create_telemetry(settings)
    tools = ToolRegistry(settings.tools, telemetry=telemetry)
    register_tender_tools(tools, backend if backend is not None else InMemoryTenderBackend())
    handlers = build_default_handlers(tools, settings.llm, executors=executors)
    supervisor = Supervisor(
        handlers,
        telemetry=telemetry,
        checkpoints=_create_checkpoints(settings),
        config=settings.supervisor,
        llm_config=settings.llm,
    )
    return ChatService(supervisor)


app = FastAPI(title="Tender Agent", version="0.1.0")

_settings = Settings.from_env()
configure_logging(_settings.log_level, json_logs=_settings.json_logs)
_service = create_chat_service(_settings)


def _error_response(error: Exception) -> JSONResponse:
    message = error.user_message if isinstance(error, TurnError) else TurnError.user_message
    return JSONResponse(
        status_code=500,
        content={
            "error": "Agent error",
            "error_kind": turn_error_kind(error),
            "message": message,
            "suggestion": SUGGESTION,
        },
    )


@app.get("/health")
def health() -> dict[str, Any]:
    handlers = _service.supervisor.handlers
    return {
        "status": "ok",
        "llm_configured": _settings.llm.api_key is not None,
        "handlers": handlers.names(),
        "handlers_constructed": [name for name in handlers.names() if handlers.is_constructed(name)],
    }


@app.post("/agent/chat", response_model=None)
async def chat(
    request: ChatRequest,
    x_user_id: str | None = Header(default=None),
) -> dict[str, Any] | JSONResponse:
    try:
        return await _service.chat(
            request.messages, thread_id=request.thread_id, user_id=x_user_id
        )
    except TurnRejectedError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("api.chat_failed", kind=turn_error_kind(exc))
        return _error_response(exc)


@app.post("/agent/chat/stream")
async def chat_stream(
    request: ChatRequest,
    x_user_id: str | None = Header(default=None),
) -> StreamingResponse:
    try:
        events = _service.stream(request.messages, thread_id=request.thread_id, user_id=x_user_id)
    except TurnRejectedError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    async def _frames() -> AsyncIterator[str]:
        async for event in events:
            yield sse_frame(event)

    return StreamingResponse(
        _frames(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/metrics/agents/{agent_id}")
async def agent_metrics(agent_id: str, window_days: int = 7) -> dict[str, Any]:
    if agent_id not in _service.supervisor.handlers.names():
        raise HTTPException(status_code=404, detail=f"Unknown agent {agent_id}")
    metrics = await _service.supervisor.telemetry.get_agent_metrics(agent_id, window_days)
    return asdict(metrics)


@app.get("/metrics")
async def metrics() -> dict[str, Any]:
    return await _service.supervisor.telemetry.summary()
