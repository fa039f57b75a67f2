"""Structured response extraction over finished or in-flight transcripts."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterable, Iterator, Mapping, Sequence
from typing import Any

import structlog

from tender_agent.agent.messages import (
    message_content,
    message_name,
    resolve_role,
    to_text,
)
from tender_agent.obs.telemetry import TelemetryCollector
from tender_agent.types import ContractReview, ResponseMetadata, StructuredResponse

logger = structlog.get_logger(__name__)

RESULT_TOOLS = frozenset({"search_tenders", "advanced_search", "framework_agreement_search"})
QUERY_TOOL = "build_ted_query"
REVIEW_TOOLS = frozenset({"review_contract", "process_contract"})


def coerce_result_list(content: Any, field: str = "tenders") -> list[Any] | None:
    """Recognize a result list in heterogeneous tool output.

    Tried in order: a native list, a list of text content blocks, an object
    with a `field` list, a JSON string of either, and finally the first array
    embedded in a longer string. Returns None when nothing is recognized.
    """

    if isinstance(content, list):
        if content and all(_is_text_block(block) for block in content):
            return coerce_result_list(to_text(content, strip=False), field)
        return list(content)
    if isinstance(content, Mapping):
        value = content.get(field)
        return list(value) if isinstance(value, list) else None
    if not isinstance(content, str):
        return None

    text = content.strip()
    if not text:
        return None
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        parsed = None
    else:
        if isinstance(parsed, (list, Mapping)):
            return coerce_result_list(parsed, field)

    for candidate in _embedded_arrays(text):
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, list):
            return parsed
    return None


def _is_text_block(block: Any) -> bool:
    return isinstance(block, Mapping) and block.get("type") == "text"


def _embedded_arrays(text: str) -> Iterator[str]:
    start = text.find("[")
    while start != -1:
        end = _matching_bracket(text, start)
        if end is not None:
            yield text[start : end + 1]
        start = text.find("[", start + 1)


def _matching_bracket(text: str, start: int) -> int | None:
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
            if depth == 0:
                return index
    return None


def _parse_object(content: Any) -> Mapping[str, Any] | None:
    if isinstance(content, Mapping):
        return content
    text = to_text(content)
    if not text.startswith("{"):
        return None
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, Mapping) else None


def _status(message: Any) -> Any:
    if isinstance(message, Mapping):
        return message.get("status")
    return getattr(message, "status", None)


def _tool_messages(messages: Iterable[Any]) -> Iterator[tuple[str, Any]]:
    for message in messages:
        if resolve_role(message) != "tool" or _status(message) == "error":
            continue
        name = message_name(message)
        content = message_content(message)
        if name and content not in (None, "", []):
            yield name, content


def final_text(messages: Sequence[Any]) -> str:
    """Text of the last non-empty assistant message."""
    for message in reversed(messages):
        if resolve_role(message) != "assistant":
            continue
        text = to_text(message_content(message))
        if text:
            return text
    return ""


class ResponseFormatter:
    """Builds the response envelope. Never raises."""

    def __init__(self, telemetry: TelemetryCollector | None = None) -> None:
        self.telemetry = telemetry
        self._pending: set[asyncio.Task[None]] = set()

    def format(self, messages: Sequence[Any], text: str | None = None) -> StructuredResponse:
        tenders: list[Any] | None = None
        review: ContractReview | None = None
        query: str | None = None
        result_query: str | None = None
        filters: dict[str, Any] | None = None

        for name, content in _tool_messages(messages):
            try:
                if name == QUERY_TOOL:
                    query = _query_text(content)
                elif name in RESULT_TOOLS:
                    results = coerce_result_list(content)
                    if results is None:
                        logger.debug("formatter.result_unrecognized", tool=name)
                        continue
                    tenders = [*(tenders or []), *results]
                    payload = _parse_object(content)
                    if payload is not None:
                        if isinstance(payload.get("filters"), Mapping):
                            filters = dict(payload["filters"])
                        if isinstance(payload.get("query"), str):
                            result_query = payload["query"]
                elif name in REVIEW_TOOLS:
                    payload = _parse_object(content)
                    if payload is not None and ("review" in payload or "contractId" in payload):
                        review = ContractReview(
                            contract_id=payload.get("contractId"),
                            review=payload.get("review"),
                        )
            except Exception:
                logger.exception("formatter.parse_failed", tool=name)

        metadata = ResponseMetadata(
            query=query or result_query,
            filters=filters,
            result_count=len(tenders) if tenders is not None else None,
        )
        response = StructuredResponse(
            text=text if text is not None else final_text(messages),
            tenders=tenders,
            contract_review=review,
            metadata=None if metadata.is_empty() else metadata,
        )
        if tenders:
            self._record_discovery(len(tenders), metadata.query)
        return response

    async def flush(self) -> None:
        """Wait for pending discovery writes."""
        if self._pending:
            await asyncio.gather(*list(self._pending))

    def _record_discovery(self, count: int, query: str | None) -> None:
        if self.telemetry is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("formatter.discovery_skipped", reason="no running loop")
            return
        task = loop.create_task(self.telemetry.record_discovery(count, query))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)


def _query_text(content: Any) -> str | None:
    payload = _parse_object(content)
    if payload is not None and isinstance(payload.get("query"), str):
        return payload["query"]
    text = to_text(content)
    return text or None
