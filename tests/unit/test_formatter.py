import json

import pytest
from langchain_core.messages import AIMessage, HumanMessage, ToolMessage

from tender_agent.agent.formatter import ResponseFormatter, coerce_result_list
from tender_agent.obs.telemetry import DISCOVERY_METRICS


def _tool(name: str, content, call_id: str = "call-1") -> ToolMessage:
    return ToolMessage(content=content, name=name, tool_call_id=call_id)


@pytest.mark.parametrize(
    ("content", "expected"),
    [
        ([{"title": "X"}], [{"title": "X"}]),
        ({"tenders": [{"title": "X"}]}, [{"title": "X"}]),
        ('[{"title": "X"}]', [{"title": "X"}]),
        ('{"tenders": [{"title": "X"}], "filters": {}}', [{"title": "X"}]),
        ('Found: [{"title": "a [b]"}] done', [{"title": "a [b]"}]),
        ([{"type": "text", "text": '[{"title": "X"}]'}], [{"title": "X"}]),
        ("[]", []),
        ("no results here", None),
        ({"count": 2}, None),
        (42, None),
    ],
)
def test_coerce_result_list(content, expected) -> None:
    assert coerce_result_list(content) == expected


def test_search_results_become_tenders() -> None:
    messages = [_tool("search_tenders", '[{"title":"X"}]')]

    response = ResponseFormatter().format(messages)

    assert response.structured_fields() == {
        "tenders": [{"title": "X"}],
        "metadata": {"resultCount": 1},
    }


def test_tenders_absent_vs_empty() -> None:
    formatter = ResponseFormatter()

    no_tool = formatter.format([HumanMessage(content="ciao"), AIMessage(content="Ciao!")])
    empty = formatter.format([_tool("search_tenders", "[]"), AIMessage(content="Nessun bando.")])

    assert no_tool.tenders is None
    assert "tenders" not in no_tool.structured_fields()
    assert "metadata" not in no_tool.structured_fields()
    assert no_tool.text == "Ciao!"
    assert empty.tenders == []
    assert empty.structured_fields()["tenders"] == []
    assert empty.structured_fields()["metadata"] == {"resultCount": 0}


def test_results_from_several_tools_are_concatenated_with_query_and_filters() -> None:
    messages = [
        _tool("build_ted_query", "(place-of-performance-country-proc IN (ITA))", "c1"),
        _tool("search_tenders", json.dumps([{"title": "A"}]), "c2"),
        _tool(
            "advanced_search",
            json.dumps({"tenders": [{"title": "B"}], "filters": {"contractNature": "works"}}),
            "c3",
        ),
        AIMessage(content="Ho trovato 2 bandi."),
    ]

    response = ResponseFormatter().format(messages)

    assert response.tenders == [{"title": "A"}, {"title": "B"}]
    assert response.metadata.to_dict() == {
        "query": "(place-of-performance-country-proc IN (ITA))",
        "filters": {"contractNature": "works"},
        "resultCount": 2,
    }
    assert response.text == "Ho trovato 2 bandi."


def test_contract_review_is_extracted() -> None:
    review = {"contractId": "c-1", "review": {"focusAreas": {"risk": ["Art. 3 Penale"]}}}
    messages = [
        _tool("process_contract", json.dumps({"success": True, "contractId": "c-1"}), "c1"),
        _tool("review_contract", json.dumps(review), "c2"),
    ]

    fields = ResponseFormatter().format(messages).structured_fields()

    assert fields["contractReview"] == review
    assert "tenders" not in fields


def test_unparseable_output_is_ignored() -> None:
    messages = [_tool("search_tenders", "upstream error: 503"), AIMessage(content="Riprova.")]

    response = ResponseFormatter().format(messages)

    assert response.tenders is None
    assert response.text == "Riprova."


def test_error_tool_results_are_skipped() -> None:
    messages = [
        ToolMessage(
            content="Tool build_ted_query failed: invalid country",
            name="build_ted_query",
            tool_call_id="c1",
            status="error",
        ),
        ToolMessage(
            content="Invalid input for search_tenders: limit must be <= 50, got []",
            name="search_tenders",
            tool_call_id="c2",
            status="error",
        ),
        AIMessage(content="Riprovo."),
    ]

    response = ResponseFormatter().format(messages)

    assert response.tenders is None
    assert response.structured_fields() == {}


def test_explicit_text_wins() -> None:
    response = ResponseFormatter().format([AIMessage(content="finale")], "tutto il testo")
    assert response.text == "tutto il testo"


@pytest.mark.asyncio
async def test_discovery_metric_recorded(telemetry, sink) -> None:
    formatter = ResponseFormatter(telemetry)

    formatter.format([_tool("search_tenders", '[{"title":"X"},{"title":"Y"}]')])
    await formatter.flush()

    (record,) = sink.records(DISCOVERY_METRICS)
    assert record.payload == {"count": 2, "query": None}


def test_discovery_skipped_without_event_loop(telemetry, sink) -> None:
    formatter = ResponseFormatter(telemetry)

    response = formatter.format([_tool("search_tenders", '[{"title":"X"}]')])

    assert response.tenders == [{"title": "X"}]
    assert sink.records(DISCOVERY_METRICS) == []
