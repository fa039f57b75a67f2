import asyncio
from collections.abc import Callable, Sequence
from datetime import date
from typing import Any

import pytest
from langchain_core.messages import AIMessage, BaseMessage

from tender_agent.agent.handlers import build_default_handlers
from tender_agent.agent.registry import ToolRegistry
from tender_agent.agent.supervisor import Supervisor
from tender_agent.agent.tools import register_tender_tools
from tender_agent.config import SupervisorConfig
from tender_agent.obs.telemetry import InMemoryTelemetrySink, TelemetryCollector
from tender_agent.services.backend import InMemoryTenderBackend

TODAY = date(2025, 3, 14)

TENDERS: list[dict[str, Any]] = [
    {
        "publicationNumber": "101-2025",
        "title": "Fornitura software gestionale",
        "buyer": "Comune di Milano",
        "summary": "Licenze e manutenzione software per uffici comunali",
        "publicationDate": "2025-03-13",
        "deadline": "2025-03-25",
        "cpv": ["48000000"],
        "country": "ITA",
        "city": "Milano",
        "procedureType": "open",
        "contractNature": "supplies",
        "value": 250_000,
        "frameworkAgreement": False,
    },
    {
        "publicationNumber": "102-2025",
        "title": "Servizi di pulizia uffici",
        "buyer": "Regione Lombardia",
        "summary": "Pulizia sedi regionali",
        "publicationDate": "2025-03-12",
        "deadline": "2025-04-30",
        "cpv": ["90910000"],
        "country": "ITA",
        "city": "Milano",
        "procedureType": "restricted",
        "contractNature": "services",
        "value": 1_500_000,
        "frameworkAgreement": True,
    },
    {
        "publicationNumber": "103-2025",
        "title": "Software development services",
        "buyer": "Ville de Lyon",
        "summary": "Custom software development",
        "publicationDate": "2025-02-01",
        "deadline": "2025-03-01",
        "cpv": ["72000000"],
        "country": "FRA",
        "city": "Lyon",
        "procedureType": "open",
        "contractNature": "services",
        "value": 80_000,
        "frameworkAgreement": False,
    },
]

PROFILES: dict[str, dict[str, Any]] = {
    "user-1": {
        "company_name": "Acme Srl",
        "annual_revenue": 2_000_000,
        "certifications": ["ISO 9001"],
        "operating_regions": ["ITA"],
        "primary_sectors": ["48000000", "72000000"],
    }
}

Producer = Callable[[Sequence[BaseMessage]], list[BaseMessage]]


class ScriptedExecutor:
    """Stands in for a LangChain agent runtime.

    `produce` maps the input transcript to the messages the loop would add.
    """

    def __init__(
        self,
        produce: Producer | list[BaseMessage] | None = None,
        *,
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        self._produce = produce
        self.delay = delay
        self.error = error
        self.configs: list[Any] = []
        self.inputs: list[list[BaseMessage]] = []

    def produced(self, messages: Sequence[BaseMessage]) -> list[BaseMessage]:
        if self._produce is None:
            return [AIMessage(content="Ecco i risultati.")]
        if callable(self._produce):
            return self._produce(messages)
        return list(self._produce)

    async def ainvoke(self, state: dict[str, Any], config: Any = None) -> dict[str, Any]:
        self.configs.append(config)
        self.inputs.append(list(state["messages"]))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return {"messages": [*state["messages"], *self.produced(state["messages"])]}

    async def astream(
        self, state: dict[str, Any], config: Any = None, stream_mode: str = "values"
    ):
        self.configs.append(config)
        self.inputs.append(list(state["messages"]))
        messages = list(state["messages"])
        for message in self.produced(state["messages"]):
            if self.delay:
                await asyncio.sleep(self.delay)
            messages = [*messages, message]
            yield {"messages": list(messages)}
        if self.error is not None:
            raise self.error


@pytest.fixture
def backend() -> InMemoryTenderBackend:
    return InMemoryTenderBackend(
        TENDERS,
        profiles=PROFILES,
        activity={"user-1": {"searches": ["software gestionale", "cloud"], "favorites": ["101-2025"]}},
        legal_references=[
            {
                "title": "D.Lgs. 36/2023 art. 119",
                "summary": "Subappalto nei contratti pubblici",
            }
        ],
        today=TODAY,
    )


@pytest.fixture
def tool_registry(backend: InMemoryTenderBackend) -> ToolRegistry:
    registry = ToolRegistry()
    register_tender_tools(registry, backend)
    return registry


@pytest.fixture
def sink() -> InMemoryTelemetrySink:
    return InMemoryTelemetrySink()


@pytest.fixture
def telemetry(sink: InMemoryTelemetrySink) -> TelemetryCollector:
    return TelemetryCollector(sink)


@pytest.fixture
def make_supervisor(tool_registry: ToolRegistry, telemetry: TelemetryCollector):
    def _make(
        executors: dict[str, ScriptedExecutor],
        config: SupervisorConfig | None = None,
    ) -> Supervisor:
        handlers = build_default_handlers(tool_registry, executors=executors)
        return Supervisor(handlers, telemetry=telemetry, config=config)

    return _make


@pytest.fixture
def scripted() -> type[ScriptedExecutor]:
    return ScriptedExecutor
