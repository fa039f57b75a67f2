import json

import pytest
from pydantic import BaseModel, ValidationError

from tender_agent.config import SupervisorConfig, ToolConfig
from tender_agent.errors import (
    ErrorKind,
    StepBudgetExceededError,
    ToolClarificationError,
    TurnRejectedError,
    classify_error,
    turn_error_kind,
)


class _Strict(BaseModel):
    value: int


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (TimeoutError(), ErrorKind.TRANSIENT),
        (ConnectionError(), ErrorKind.TRANSIENT),
        (RuntimeError("429 Too Many Requests"), ErrorKind.TRANSIENT),
        (RuntimeError("rate limit reached"), ErrorKind.TRANSIENT),
        (json.JSONDecodeError("bad", "{", 0), ErrorKind.LLM_RECOVERABLE),
        (LookupError("Tender 1 not found"), ErrorKind.LLM_RECOVERABLE),
        (LookupError("no tenders for buyer X"), ErrorKind.LLM_RECOVERABLE),
        (KeyError("app-0001"), ErrorKind.LLM_RECOVERABLE),
        (ValueError("cpv code is invalid"), ErrorKind.LLM_RECOVERABLE),
        (ValueError("company name is required"), ErrorKind.USER_FIXABLE),
        (ToolClarificationError("anything"), ErrorKind.USER_FIXABLE),
        (RuntimeError("boom"), ErrorKind.UNEXPECTED),
    ],
)
def test_classify_error(error: Exception, expected: ErrorKind) -> None:
    assert classify_error(error) is expected


def test_pydantic_validation_errors_are_recoverable() -> None:
    with pytest.raises(ValidationError) as excinfo:
        _Strict.model_validate({"value": "x"})
    assert classify_error(excinfo.value) is ErrorKind.LLM_RECOVERABLE


def test_turn_error_kinds() -> None:
    assert turn_error_kind(TurnRejectedError("x")) == "rejected"
    assert turn_error_kind(StepBudgetExceededError("x")) == "timeout"
    assert turn_error_kind(RuntimeError("boom")) == "unexpected"


def test_config_defaults_and_bounds() -> None:
    tools = ToolConfig()
    supervisor = SupervisorConfig()

    assert (tools.timeout_seconds, tools.retries) == (15.0, 2)
    assert [tools.backoff_seconds(attempt) for attempt in range(5)] == [1.0, 2.0, 4.0, 8.0, 10.0]
    assert supervisor.max_steps == 10
    assert supervisor.handler_timeout("contract_review_agent") == 180.0
    assert supervisor.handler_timeout("other_agent") == 60.0
    with pytest.raises(ValidationError):
        SupervisorConfig(max_steps=2)
