"""Conversation checkpoint stores keyed by thread id."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from langchain_core.messages import BaseMessage, messages_from_dict, messages_to_dict

from tender_agent.types import utcnow


@dataclass(slots=True, frozen=True)
class Thread:
    """A persisted conversation plus the latest supervisor snapshot."""

    thread_id: str
    messages: list[BaseMessage]
    intent: str | None = None
    updated_at: datetime = field(default_factory=utcnow)


class CheckpointStore(Protocol):
    async def get(self, thread_id: str) -> list[BaseMessage] | None:
        """Return the stored transcript, or None for an unknown thread."""

    async def put(
        self,
        thread_id: str,
        messages: Sequence[BaseMessage],
        *,
        intent: str | None = None,
    ) -> None:
        """Replace the stored transcript for a thread."""

    async def get_thread(self, thread_id: str) -> Thread | None:
        """Return the transcript together with its snapshot."""


class _ThreadLocks:
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def __call__(self, thread_id: str) -> asyncio.Lock:
        return self._locks.setdefault(thread_id, asyncio.Lock())


class InMemoryCheckpointStore:
    """Process-local store; callers always receive copies."""

    def __init__(self) -> None:
        self._threads: dict[str, Thread] = {}
        self._lock_for = _ThreadLocks()

    async def get(self, thread_id: str) -> list[BaseMessage] | None:
        thread = await self.get_thread(thread_id)
        return thread.messages if thread is not None else None

    async def put(
        self,
        thread_id: str,
        messages: Sequence[BaseMessage],
        *,
        intent: str | None = None,
    ) -> None:
        async with self._lock_for(thread_id):
            self._threads[thread_id] = Thread(
                thread_id=thread_id,
                messages=list(messages),
                intent=intent,
            )

    async def get_thread(self, thread_id: str) -> Thread | None:
        async with self._lock_for(thread_id):
            thread = self._threads.get(thread_id)
            if thread is None:
                return None
            return Thread(
                thread_id=thread.thread_id,
                messages=list(thread.messages),
                intent=thread.intent,
                updated_at=thread.updated_at,
            )


class SQLiteCheckpointStore:
    """Durable store backed by a local SQLite file."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock_for = _ThreadLocks()
        _ensure_checkpoint_table(self._path)

    async def get(self, thread_id: str) -> list[BaseMessage] | None:
        thread = await self.get_thread(thread_id)
        return thread.messages if thread is not None else None

    async def put(
        self,
        thread_id: str,
        messages: Sequence[BaseMessage],
        *,
        intent: str | None = None,
    ) -> None:
        payload = json.dumps(messages_to_dict(list(messages)), ensure_ascii=False)
        async with self._lock_for(thread_id):
            await asyncio.to_thread(self._upsert, thread_id, payload, intent)

    async def get_thread(self, thread_id: str) -> Thread | None:
        async with self._lock_for(thread_id):
            row = await asyncio.to_thread(self._select, thread_id)
        if row is None:
            return None
        payload, intent, updated_at = row
        return Thread(
            thread_id=thread_id,
            messages=messages_from_dict(json.loads(payload)),
            intent=intent,
            updated_at=datetime.fromtimestamp(updated_at, tz=timezone.utc),
        )

    def _upsert(self, thread_id: str, payload: str, intent: str | None) -> None:
        with sqlite3.connect(self._path) as conn:
            conn.execute(
                "INSERT INTO checkpoints(thread_id, messages, intent, updated_at) VALUES(?, ?, ?, ?) "
                "ON CONFLICT(thread_id) DO UPDATE SET messages=excluded.messages, "
                "intent=excluded.intent, updated_at=excluded.updated_at",
                (thread_id, payload, intent, utcnow().timestamp()),
            )
            conn.commit()

    def _select(self, thread_id: str) -> tuple[str, str | None, float] | None:
        with sqlite3.connect(self._path) as conn:
            cur = conn.execute(
                "SELECT messages, intent, updated_at FROM checkpoints WHERE thread_id = ?",
                (thread_id,),
            )
            return cur.fetchone()


def _ensure_checkpoint_table(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with sqlite3.connect(db_path) as conn:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS checkpoints ("
            "thread_id TEXT PRIMARY KEY, "
            "messages TEXT NOT NULL, "
            "intent TEXT, "
            "updated_at REAL NOT NULL)"
        )
        conn.commit()
