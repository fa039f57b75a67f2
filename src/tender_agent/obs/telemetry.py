"""Execution telemetry: node executions, agent runs, decisions, and errors."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import traceback
from dataclasses import asdict, dataclass, is_dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

import structlog

from tender_agent.errors import turn_error_kind
from tender_agent.types import (
    AgentMetrics,
    AgentTelemetry,
    DecisionRecord,
    ErrorRecord,
    NodeExecution,
    ToolCallRecord,
    utcnow,
)

logger = structlog.get_logger(__name__)

NODE_EXECUTIONS = "node_executions"
AGENT_TELEMETRY = "agent_telemetry"
DECISIONS = "decisions"
AGENT_ERRORS = "agent_errors"
TOOL_CALLS = "tool_calls"
DISCOVERY_METRICS = "tender_discovery_metrics"


@dataclass(slots=True, frozen=True)
class StoredRecord:
    collection: str
    timestamp: datetime
    payload: dict[str, Any]
    agent_id: str | None = None


class TelemetrySink(Protocol):
    """Append-only record writer with a windowed read path."""

    async def append(self, record: StoredRecord) -> None:
        """Persist one record."""

    async def query(
        self,
        collection: str,
        *,
        since: datetime | None = None,
        agent_id: str | None = None,
    ) -> list[StoredRecord]:
        """Return records of a collection, oldest first."""


class InMemoryTelemetrySink:
    """Process-local sink used for tests and single-instance deployments."""

    def __init__(self) -> None:
        self._records: list[StoredRecord] = []

    async def append(self, record: StoredRecord) -> None:
        self._records.append(record)

    async def query(
        self,
        collection: str,
        *,
        since: datetime | None = None,
        agent_id: str | None = None,
    ) -> list[StoredRecord]:
        return [
            record
            for record in self._records
            if record.collection == collection
            and (since is None or record.timestamp >= since)
            and (agent_id is None or record.agent_id == agent_id)
        ]

    def records(self, collection: str | None = None) -> list[StoredRecord]:
        if collection is None:
            return list(self._records)
        return [record for record in self._records if record.collection == collection]


class SQLiteTelemetrySink:
    """Durable sink backed by a local SQLite file."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        _ensure_telemetry_table(self._path)

    async def append(self, record: StoredRecord) -> None:
        await asyncio.to_thread(self._insert, record)

    async def query(
        self,
        collection: str,
        *,
        since: datetime | None = None,
        agent_id: str | None = None,
    ) -> list[StoredRecord]:
        return await asyncio.to_thread(self._select, collection, since, agent_id)

    def _insert(self, record: StoredRecord) -> None:
        with sqlite3.connect(self._path) as conn:
            conn.execute(
                "INSERT INTO telemetry(collection, agent_id, ts, payload) VALUES(?, ?, ?, ?)",
                (
                    record.collection,
                    record.agent_id,
                    record.timestamp.timestamp(),
                    json.dumps(record.payload, default=_json_default, ensure_ascii=False),
                ),
            )
            conn.commit()

    def _select(
        self, collection: str, since: datetime | None, agent_id: str | None
    ) -> list[StoredRecord]:
        sql = "SELECT collection, agent_id, ts, payload FROM telemetry WHERE collection = ?"
        params: list[Any] = [collection]
        if since is not None:
            sql += " AND ts >= ?"
            params.append(since.timestamp())
        if agent_id is not None:
            sql += " AND agent_id = ?"
            params.append(agent_id)
        sql += " ORDER BY id"
        with sqlite3.connect(self._path) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            StoredRecord(
                collection=row[0],
                agent_id=row[1],
                timestamp=datetime.fromtimestamp(row[2], tz=timezone.utc),
                payload=json.loads(row[3]),
            )
            for row in rows
        ]


class TelemetryCollector:
    """Best-effort telemetry front-end.

    Every write goes through `_write`, which logs and swallows sink failures so
    that telemetry can never fail a user-facing request.
    """

    def __init__(self, sink: TelemetrySink | None = None) -> None:
        self.sink: TelemetrySink = sink or InMemoryTelemetrySink()

    async def record_node_execution(self, execution: NodeExecution) -> None:
        logger.info(
            "telemetry.node_execution",
            node=execution.node_id,
            agent=execution.agent_id,
            duration_ms=round(execution.duration_ms, 2),
            tokens=execution.token_usage.total if execution.token_usage else 0,
            decision=(execution.decision or {}).get("reason"),
            error=execution.error,
        )
        await self._write(
            NODE_EXECUTIONS, execution, execution.timestamp, agent_id=execution.agent_id
        )

    async def record_agent_execution(self, telemetry: AgentTelemetry) -> None:
        logger.info(
            "telemetry.agent_execution",
            agent=telemetry.agent_id,
            intent=telemetry.intent,
            latency_ms=round(telemetry.performance.total_latency_ms, 2),
            tools=telemetry.performance.tool_call_count,
            errors=telemetry.performance.error_count,
        )
        await self._write(
            AGENT_TELEMETRY, telemetry, telemetry.timestamp, agent_id=telemetry.agent_id
        )

    async def record_decision(self, decision: DecisionRecord) -> None:
        logger.info(
            "telemetry.decision",
            node=decision.node_id,
            decision=decision.decision,
            reason=decision.reason,
            confidence=decision.confidence,
        )
        await self._write(DECISIONS, decision, decision.timestamp)

    async def record_error(
        self,
        error: BaseException,
        *,
        agent_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        record = ErrorRecord(
            error_type=type(error).__name__,
            message=str(error),
            kind=turn_error_kind(error),
            stack="".join(traceback.format_exception(error)),
            context={**(context or {}), "agent": agent_id},
        )
        logger.warning(
            "telemetry.error",
            agent=agent_id,
            error_type=record.error_type,
            kind=record.kind,
            message=record.message,
        )
        await self._write(AGENT_ERRORS, record, record.timestamp, agent_id=agent_id)

    async def record_tool_call(self, call: ToolCallRecord) -> None:
        await self._write(TOOL_CALLS, call, utcnow())

    async def record_discovery(self, count: int, query: str | None = None) -> None:
        payload = {"count": count, "query": query[:200] if query else None}
        await self._write(DISCOVERY_METRICS, payload, utcnow())

    async def get_agent_metrics(self, agent_id: str, window_days: int = 7) -> AgentMetrics:
        """Aggregate an agent's runs over the trailing `window_days`.

        Successful runs come from agent telemetry records; failed runs from error
        records attributed to the agent. Rates are percentages.
        """

        since = utcnow() - timedelta(days=window_days)
        try:
            runs = await self.sink.query(AGENT_TELEMETRY, since=since, agent_id=agent_id)
            failures = await self.sink.query(AGENT_ERRORS, since=since, agent_id=agent_id)
        except Exception:
            logger.exception("telemetry.metrics_failed", agent=agent_id)
            return AgentMetrics(agent_id, 0, 0.0, 0.0, 0.0, 0.0)

        executions = len(runs) + len(failures)
        if executions == 0:
            return AgentMetrics(agent_id, 0, 0.0, 0.0, 0.0, 0.0)

        latencies = [_performance(run.payload).get("total_latency_ms", 0.0) for run in runs]
        tool_counts = [len(run.payload.get("tool_calls") or ()) for run in runs]
        return AgentMetrics(
            agent_id=agent_id,
            executions=executions,
            avg_latency_ms=sum(latencies) / len(runs) if runs else 0.0,
            success_rate=len(runs) / executions * 100.0,
            error_rate=len(failures) / executions * 100.0,
            avg_tool_call_count=sum(tool_counts) / len(runs) if runs else 0.0,
        )

    async def summary(self) -> dict[str, float | int]:
        """Aggregate core metrics across all agents for dashboard display."""
        try:
            runs = await self.sink.query(AGENT_TELEMETRY)
            errors = await self.sink.query(AGENT_ERRORS)
        except Exception:
            logger.exception("telemetry.summary_failed")
            runs, errors = [], []

        total = len(runs)
        if total == 0:
            return {
                "total_executions": 0,
                "total_errors": len(errors),
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "total_tokens": 0,
                "total_cost_usd": 0.0,
            }

        performances = [_performance(run.payload) for run in runs]
        latencies = sorted(perf.get("total_latency_ms", 0.0) for perf in performances)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        total_tokens = sum(
            (perf.get("token_usage") or {}).get("total", 0) for perf in performances
        )
        total_cost = sum(perf.get("cost") or 0.0 for perf in performances)
        return {
            "total_executions": total,
            "total_errors": len(errors),
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "total_tokens": total_tokens,
            "total_cost_usd": total_cost,
        }

    async def _write(
        self,
        collection: str,
        record: Any,
        timestamp: datetime,
        *,
        agent_id: str | None = None,
    ) -> None:
        try:
            payload = asdict(record) if is_dataclass(record) else dict(record)
            await self.sink.append(
                StoredRecord(
                    collection=collection,
                    timestamp=timestamp,
                    payload=payload,
                    agent_id=agent_id,
                )
            )
        except Exception:
            logger.exception("telemetry.write_failed", collection=collection)


def _performance(payload: dict[str, Any]) -> dict[str, Any]:
    return payload.get("performance") or {}


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


def _ensure_telemetry_table(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with sqlite3.connect(db_path) as conn:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS telemetry ("
            "id INTEGER PRIMARY KEY AUTOINCREMENT, "
            "collection TEXT NOT NULL, "
            "agent_id TEXT, "
            "ts REAL NOT NULL, "
            "payload TEXT NOT NULL)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS telemetry_lookup ON telemetry(collection, agent_id, ts)"
        )
        conn.commit()
