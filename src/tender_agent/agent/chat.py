"""Turn entrypoint shared by the HTTP adapter and programmatic callers."""

from __future__ import annotations

import time
from collections.abc import AsyncIterator, Iterable
from typing import Any

import structlog
from langchain_core.messages import BaseMessage

from tender_agent.agent.messages import normalize_incoming, to_langchain_messages, to_plain
from tender_agent.agent.streaming import stream_chat
from tender_agent.agent.supervisor import Supervisor
from tender_agent.errors import TurnRejectedError
from tender_agent.types import TurnConfig

logger = structlog.get_logger(__name__)

ANONYMOUS_USER = "anon"


class ChatService:
    """Validates incoming turns and shapes supervisor output for clients."""

    def __init__(self, supervisor: Supervisor) -> None:
        self.supervisor = supervisor

    def prepare(
        self,
        raw_messages: Iterable[Any] | None,
        *,
        thread_id: str | None = None,
        user_id: str | None = None,
    ) -> tuple[list[BaseMessage], TurnConfig]:
        """Normalize a request into LangChain messages and a turn config.

        Raises:
            TurnRejectedError: when no user message carries content.
        """

        conversation = [
            message
            for message in normalize_incoming(raw_messages)
            if message.role in ("user", "assistant")
        ]
        if not any(message.role == "user" for message in conversation):
            raise TurnRejectedError(
                "messages must include at least one user message with non-empty content"
            )

        caller = user_id or ANONYMOUS_USER
        config = TurnConfig(
            thread_id=thread_id or f"thread-{caller}-{int(time.time() * 1000)}",
            user_id=None if caller == ANONYMOUS_USER else caller,
        )
        return to_langchain_messages(conversation), config

    async def chat(
        self,
        raw_messages: Iterable[Any] | None,
        *,
        thread_id: str | None = None,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        """Run one turn and return `{messages, thread_id, tenders?, contractReview?, metadata?}`."""
        messages, config = self.prepare(raw_messages, thread_id=thread_id, user_id=user_id)
        result = await self.supervisor.invoke(messages, config)
        logger.info(
            "chat.completed",
            thread_id=config.thread_id,
            intent=result.intent.value,
            agent=result.agent_id,
        )
        return {
            "messages": [to_plain(message).to_dict() for message in result.messages],
            "thread_id": config.thread_id,
            **result.response.structured_fields(),
        }

    def stream(
        self,
        raw_messages: Iterable[Any] | None,
        *,
        thread_id: str | None = None,
        user_id: str | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Validate eagerly, then return the event stream for the turn."""
        messages, config = self.prepare(raw_messages, thread_id=thread_id, user_id=user_id)
        return stream_chat(self.supervisor, messages, config)
