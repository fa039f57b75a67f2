"""Error taxonomy shared by the tool wrapper and the supervisor."""

from __future__ import annotations

import json
from enum import Enum

from langchain_core.tools import ToolException
from pydantic import ValidationError


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    LLM_RECOVERABLE = "llm_recoverable"
    USER_FIXABLE = "user_fixable"
    UNEXPECTED = "unexpected"


_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "network",
    "rate limit",
    "econnrefused",
    "etimedout",
    "503",
    "429",
)
_RECOVERABLE_MARKERS = ("parse", "validation", "invalid", "not found", "empty result")
_USER_FIXABLE_MARKERS = ("missing", "required", "unclear")


class ToolError(Exception):
    """Base class for classified tool failures."""

    kind: ErrorKind = ErrorKind.UNEXPECTED

    def __init__(self, message: str, *, tool_name: str | None = None) -> None:
        super().__init__(message)
        self.tool_name = tool_name


class ToolTransientError(ToolError):
    """Transient failure: network, timeouts, rate limits."""

    kind = ErrorKind.TRANSIENT


class ToolTimeoutError(ToolTransientError):
    pass


class ToolRecoverableError(ToolError, ToolException):
    """Failure the reasoning loop can fix by adjusting its next call."""

    kind = ErrorKind.LLM_RECOVERABLE


class ToolInputError(ToolRecoverableError):
    def __init__(
        self,
        message: str,
        *,
        tool_name: str | None = None,
        fields: tuple[str, ...] = (),
    ) -> None:
        super().__init__(message, tool_name=tool_name)
        self.fields = fields


class ToolClarificationError(ToolError, ToolException):
    """Failure that needs more information from the user."""

    kind = ErrorKind.USER_FIXABLE


def classify_error(error: BaseException) -> ErrorKind:
    """Map an exception to the four-way taxonomy."""
    if isinstance(error, ToolError):
        return error.kind
    if isinstance(error, (TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT
    if isinstance(error, (ValidationError, json.JSONDecodeError, LookupError)):
        return ErrorKind.LLM_RECOVERABLE

    message = str(error).lower()
    if any(marker in message for marker in _TRANSIENT_MARKERS):
        return ErrorKind.TRANSIENT
    if any(marker in message for marker in _RECOVERABLE_MARKERS):
        return ErrorKind.LLM_RECOVERABLE
    if any(marker in message for marker in _USER_FIXABLE_MARKERS):
        return ErrorKind.USER_FIXABLE
    return ErrorKind.UNEXPECTED


class TurnError(Exception):
    """Fatal failure of a whole turn."""

    kind = "turn_error"
    user_message = (
        "Si è verificato un errore. Riprova con una richiesta più specifica "
        "o riprova più tardi."
    )


class TurnRejectedError(TurnError):
    """The turn cannot be dispatched (e.g. no user message)."""

    kind = "rejected"
    user_message = "messages must include at least one user message with non-empty content"


class TurnTimeoutError(TurnError):
    """Per-handler, per-turn, or step budget limit exceeded."""

    kind = "timeout"


class StepBudgetExceededError(TurnTimeoutError):
    pass


class HandlerFailedError(TurnError):
    """A capability handler failed terminally."""

    kind = "handler_error"

    def __init__(self, message: str, *, agent_id: str, error_kind: ErrorKind) -> None:
        super().__init__(message)
        self.agent_id = agent_id
        self.error_kind = error_kind


def turn_error_kind(error: BaseException) -> str:
    if isinstance(error, TurnError):
        return error.kind
    return classify_error(error).value
