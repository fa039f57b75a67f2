"""Message normalization between wire payloads and LangChain messages."""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from typing import Any

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from tender_agent.types import PlainMessage, Role

_ROLE_ALIASES: dict[str, Role] = {
    "user": "user",
    "human": "user",
    "humanmessagechunk": "user",
    "assistant": "assistant",
    "ai": "assistant",
    "aimessagechunk": "assistant",
    "system": "system",
    "developer": "system",
    "systemmessagechunk": "system",
    "tool": "tool",
    "function": "tool",
    "toolmessagechunk": "tool",
}


def resolve_role(message: Any, default: Role = "user") -> Role:
    """Resolve the canonical role of a message-like object.

    Sources expose role information differently: a `role` field (plain dicts,
    `ChatMessage`), a `_get_type()`/`_getType()` method, or a `type` tag
    (LangChain messages). The first accessor that yields a known role wins.
    """

    for candidate in _role_candidates(message):
        role = _ROLE_ALIASES.get(str(candidate).strip().lower())
        if role is not None:
            return role
    return default


def _role_candidates(message: Any) -> Iterable[Any]:
    if isinstance(message, Mapping):
        yield message.get("role")
        yield message.get("type")
        return
    yield getattr(message, "role", None)
    for method_name in ("_get_type", "_getType"):
        method = getattr(message, method_name, None)
        if callable(method):
            try:
                yield method()
            except (NotImplementedError, TypeError):
                continue
    yield getattr(message, "type", None)


def to_text(content: Any, *, strip: bool = True) -> str:
    """Flatten string, content-block list, or object content into text."""
    if content is None:
        return ""
    if isinstance(content, str):
        text = content
    elif isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, Mapping):
                value = part.get("text") or part.get("content") or part.get("value") or ""
                if isinstance(value, str) and value:
                    parts.append(value)
        text = "\n".join(parts)
    elif isinstance(content, Mapping):
        if isinstance(content.get("text"), str):
            text = content["text"]
        elif isinstance(content.get("content"), str):
            text = content["content"]
        else:
            try:
                text = json.dumps(content, ensure_ascii=False)
            except (TypeError, ValueError):
                text = str(content)
    else:
        text = str(content)
    return text.strip() if strip else text


def message_content(message: Any) -> Any:
    if isinstance(message, Mapping):
        return message.get("content")
    return getattr(message, "content", None)


def message_name(message: Any) -> str | None:
    name = message.get("name") if isinstance(message, Mapping) else getattr(message, "name", None)
    return str(name) if name else None


def message_text(message: Any) -> str:
    """Unstripped text of a message; used where content accumulates."""
    return to_text(message_content(message), strip=False)


def normalize_incoming(raw: Iterable[Any] | None) -> list[PlainMessage]:
    """Normalize client messages, dropping empty entries and unknown roles."""
    normalized: list[PlainMessage] = []
    for item in raw or ():
        content = to_text(message_content(item))
        if not content:
            continue
        role = _incoming_role(item)
        if role is None:
            continue
        normalized.append(PlainMessage(role=role, content=content, name=message_name(item)))
    return normalized


def _incoming_role(item: Any) -> Role | None:
    # Role-less entries are user turns; an unrecognised declared role is dropped.
    declared = [candidate for candidate in _role_candidates(item) if candidate]
    for candidate in declared:
        role = _ROLE_ALIASES.get(str(candidate).strip().lower())
        if role is not None:
            return role
    return None if declared else "user"


def to_langchain_messages(messages: Iterable[PlainMessage]) -> list[BaseMessage]:
    """Convert plain messages to LangChain classes; tool messages are dropped."""
    converted: list[BaseMessage] = []
    for message in messages:
        content = message.content.strip()
        if not content:
            continue
        if message.role == "system":
            converted.append(SystemMessage(content=content))
        elif message.role == "user":
            converted.append(HumanMessage(content=content, name=message.name))
        elif message.role == "assistant":
            converted.append(AIMessage(content=content, name=message.name))
    return converted


def to_plain(message: Any) -> PlainMessage:
    """Simplify any message for client responses."""
    return PlainMessage(
        role=resolve_role(message, default="assistant"),
        content=to_text(message_content(message), strip=False),
        name=message_name(message),
    )


def conversational(messages: Iterable[Any]) -> list[tuple[Role, str]]:
    """Project a transcript onto its user/assistant (role, text) pairs."""
    pairs: list[tuple[Role, str]] = []
    for message in messages:
        role = resolve_role(message)
        if role not in ("user", "assistant"):
            continue
        text = to_text(message_content(message))
        if text:
            pairs.append((role, text))
    return pairs


def last_user_text(messages: Iterable[Any]) -> str | None:
    """Text of the last non-empty user message, if any."""
    for message in reversed(list(messages)):
        if resolve_role(message) != "user":
            continue
        text = to_text(message_content(message))
        if text:
            return text
    return None


def dedup_key(message: Any) -> str:
    """Content-derived identity: role, tool name and the first 100 characters."""
    name = message_name(message) if resolve_role(message) == "tool" else None
    return f"{resolve_role(message)}-{name or ''}-{to_text(message_content(message))[:100]}"
