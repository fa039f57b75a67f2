import json

import pytest
from fastapi.testclient import TestClient
from langchain_core.messages import AIMessage, ToolMessage

from tender_agent.config import Settings


@pytest.fixture
def client(monkeypatch, backend, scripted):
    # Import after environment setup; no API key is needed with scripted executors.
    from tender_agent.api import main

    def _search_turn(messages):
        return [
            ToolMessage(
                content=json.dumps([{"title": "Fornitura software gestionale"}]),
                name="search_tenders",
                tool_call_id="call-1",
            ),
            AIMessage(content="Ho trovato 1 bando."),
        ]

    executors = {
        "search_agent": scripted(_search_turn),
        "application_agent": scripted(error=RuntimeError("mail server down")),
    }
    service = main.create_chat_service(Settings(), backend=backend, executors=executors)
    monkeypatch.setattr(main, "_service", service)
    with TestClient(main.app) as test_client:
        yield test_client


def test_chat_returns_envelope(client) -> None:
    response = client.post(
        "/agent/chat",
        json={"messages": [{"role": "user", "content": "trova bandi software"}]},
        headers={"x-user-id": "user-1"},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["thread_id"].startswith("thread-user-1-")
    assert payload["tenders"] == [{"title": "Fornitura software gestionale"}]
    assert payload["metadata"] == {"resultCount": 1}
    assert payload["messages"][-1] == {"role": "assistant", "content": "Ho trovato 1 bando."}


def test_chat_rejects_turn_without_user_message(client) -> None:
    response = client.post(
        "/agent/chat", json={"messages": [{"role": "assistant", "content": "Ciao!"}]}
    )

    assert response.status_code == 400
    assert "at least one user message" in response.json()["detail"]


def test_chat_handler_failure_returns_error_envelope(client) -> None:
    response = client.post(
        "/agent/chat",
        json={"messages": [{"role": "user", "content": "invia la domanda"}], "thread_id": "t-err"},
    )

    assert response.status_code == 500
    payload = response.json()
    assert payload["error"] == "Agent error"
    assert payload["error_kind"] == "handler_error"
    assert payload["message"].startswith("Si è verificato un errore")
    assert payload["suggestion"]


def test_stream_emits_sse_frames(client) -> None:
    response = client.post(
        "/agent/chat/stream",
        json={"messages": [{"role": "user", "content": "trova bandi software"}], "thread_id": "t-s"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    events = [
        json.loads(line[len("data: ") :])
        for line in response.text.split("\n\n")
        if line.startswith("data: ")
    ]
    assert events[0] == {"content": "Ho trovato 1 bando.", "done": False}
    assert events[-1] == {
        "done": True,
        "thread_id": "t-s",
        "tenders": [{"title": "Fornitura software gestionale"}],
        "metadata": {"resultCount": 1},
    }


def test_stream_failure_ends_with_error_event(client) -> None:
    response = client.post(
        "/agent/chat/stream",
        json={"messages": [{"role": "user", "content": "invia la domanda"}]},
    )

    events = [json.loads(line[6:]) for line in response.text.split("\n\n") if line.startswith("data: ")]
    assert events[-1]["done"] is True
    assert events[-1]["error_kind"] == "handler_error"


def test_stream_rejects_empty_turn(client) -> None:
    response = client.post("/agent/chat/stream", json={"messages": []})

    assert response.status_code == 400


def test_health_and_metrics(client) -> None:
    client.post(
        "/agent/chat",
        json={"messages": [{"role": "user", "content": "trova bandi software"}]},
    )

    health = client.get("/health").json()
    agent = client.get("/metrics/agents/search_agent")
    summary = client.get("/metrics").json()

    assert health["status"] == "ok"
    assert "search_agent" in health["handlers_constructed"]
    assert agent.status_code == 200
    assert agent.json()["executions"] == 1
    assert agent.json()["success_rate"] == 100.0
    assert summary["total_executions"] == 1
    assert client.get("/metrics/agents/unknown_agent").status_code == 404
