"""Incremental delivery of a turn as content deltas plus one terminal event."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Sequence
from typing import TYPE_CHECKING, Any

import structlog
from langchain_core.messages import BaseMessage

from tender_agent.agent.messages import dedup_key, message_text, resolve_role
from tender_agent.errors import TurnError, turn_error_kind
from tender_agent.types import TurnConfig

if TYPE_CHECKING:
    from tender_agent.agent.supervisor import Supervisor

logger = structlog.get_logger(__name__)

MESSAGE_SEPARATOR = "\n\n"


class ContentAccumulator:
    """Tracks streamed assistant text and computes the suffix to emit.

    A message that extends the one currently streaming contributes only its
    new characters; a different message is appended after a separator. The
    cumulative text therefore only ever grows.
    """

    def __init__(self) -> None:
        self.content = ""
        self._current = ""

    def delta(self, text: str) -> str:
        if not text:
            return ""
        if self._current and text.startswith(self._current):
            addition = text[len(self._current) :]
        elif self._current.startswith(text):
            return ""
        else:
            addition = (MESSAGE_SEPARATOR if self.content else "") + text
        self._current = text
        self.content += addition
        return addition


async def stream_chat(
    supervisor: "Supervisor",
    messages: Sequence[BaseMessage],
    config: TurnConfig,
) -> AsyncIterator[dict[str, Any]]:
    """Yield `{content, done: false}` deltas, then one terminal event.

    The terminal event is either `{done: true, thread_id, ...envelope}` or, on
    any failure, `{error, error_kind, done: true}`; the stream ends after it.
    """

    seen: set[str] = set()
    collected: list[BaseMessage] = []
    accumulator = ContentAccumulator()
    try:
        async for batch in supervisor.stream(messages, config):
            for message in batch:
                key = dedup_key(message)
                if key in seen:
                    continue
                seen.add(key)
                collected.append(message)
                if resolve_role(message) != "assistant":
                    continue
                addition = accumulator.delta(message_text(message))
                if addition:
                    yield {"content": addition, "done": False}
    except Exception as exc:
        logger.exception(
            "stream.failed", thread_id=config.thread_id, kind=turn_error_kind(exc)
        )
        yield error_event(exc)
        return

    response = supervisor.formatter.format(collected, accumulator.content)
    logger.info(
        "stream.completed",
        thread_id=config.thread_id,
        messages=len(collected),
        tenders=len(response.tenders) if response.tenders is not None else None,
    )
    yield {"done": True, "thread_id": config.thread_id, **response.structured_fields()}


def error_event(error: BaseException) -> dict[str, Any]:
    message = error.user_message if isinstance(error, TurnError) else TurnError.user_message
    return {"error": message, "error_kind": turn_error_kind(error), "done": True}


def sse_frame(event: dict[str, Any]) -> str:
    """Render one Server-Sent-Events frame."""
    return f"data: {json.dumps(event, ensure_ascii=False, default=str)}\n\n"
