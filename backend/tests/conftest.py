from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

import pytest

from app.live.collaborators import Severity
from app.live.records import ConversationRecord, MessageRecord
from app.settings import Settings
from app.store import StoreResult


BASE_TIME = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

CONVERSATION_DEFAULTS: dict[str, Any] = {
    "title": "Conversation 1",
    "status": "active",
    "ended_at": None,
    "duration_minutes": 0,
    "active_seconds": 0,
    "max_duration_minutes": 15,
    "warning_offset_minutes": 1,
    "session_data": None,
    "insights": None,
    "ocean_signals": None,
}


def _matches(row: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
    return all(str(row.get(name)) == str(value) for name, value in filters.items())


class FakeStore:
    """In-memory `RecordStore` with failure and latency switches."""

    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {
            "conversations": [],
            "messages": [],
            "paused_conversations": [],
        }
        self.calls: list[tuple[str, str]] = []
        self.failing: set[str] = set()
        self.delay = 0.0
        self._clock = 0

    def _now(self) -> datetime:
        self._clock += 1
        return BASE_TIME + timedelta(seconds=self._clock)

    async def _enter(self, op: str, table: str) -> StoreResult | None:
        self.calls.append((op, table))
        if self.delay:
            await asyncio.sleep(self.delay)
        if op in self.failing or table in self.failing:
            return StoreResult.failure(f"{op} on {table} failed")
        return None

    def add_row(self, table: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        now = self._now()
        row: dict[str, Any] = {"id": uuid.uuid4(), "created_at": now}
        if table == "conversations":
            row.update(CONVERSATION_DEFAULTS)
            row.update({"started_at": now, "updated_at": now})
        row.update(fields)
        self.tables[table].append(row)
        return dict(row)

    def rows(self, table: str, **filters: Any) -> list[dict[str, Any]]:
        return [dict(row) for row in self.tables[table] if _matches(row, filters)]

    def count(self, op: str, table: str) -> int:
        return self.calls.count((op, table))

    async def get(self, table: str, filters: Mapping[str, Any]) -> StoreResult:
        failure = await self._enter("get", table)
        if failure is not None:
            return failure
        for row in self.tables[table]:
            if _matches(row, filters):
                return StoreResult.success(record=dict(row))
        return StoreResult.success()

    async def update(self, table: str, record_id: Any, fields: Mapping[str, Any]) -> StoreResult:
        failure = await self._enter("update", table)
        if failure is not None:
            return failure
        for row in self.tables[table]:
            if str(row["id"]) == str(record_id):
                row.update(fields)
                if table == "conversations":
                    row["updated_at"] = self._now()
                return StoreResult.success(record=dict(row))
        return StoreResult.failure(f"{table} record {record_id} not found")

    async def upsert(self, table: str, key: str, fields: Mapping[str, Any]) -> StoreResult:
        failure = await self._enter("upsert", table)
        if failure is not None:
            return failure
        for row in self.tables[table]:
            if str(row.get(key)) == str(fields[key]):
                row.update(fields)
                return StoreResult.success(record=dict(row))
        return StoreResult.success(record=self.add_row(table, fields))

    async def insert(self, table: str, fields: Mapping[str, Any]) -> StoreResult:
        failure = await self._enter("insert", table)
        if failure is not None:
            return failure
        return StoreResult.success(record=self.add_row(table, fields))

    async def select(
        self,
        table: str,
        filters: Mapping[str, Any],
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> StoreResult:
        failure = await self._enter("select", table)
        if failure is not None:
            return failure
        rows = self.rows(table, **filters)
        if order_by is not None:
            rows.sort(key=lambda row: row[order_by], reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return StoreResult.success(records=rows)

    async def delete(self, table: str, filters: Mapping[str, Any]) -> StoreResult:
        failure = await self._enter("delete", table)
        if failure is not None:
            return failure
        self.tables[table] = [row for row in self.tables[table] if not _matches(row, filters)]
        return StoreResult.success()


class FakeAudio:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.stops = 0

    def stop_all_playback(self) -> None:
        self.stops += 1
        if self.fail:
            raise RuntimeError("audio device unavailable")


class FakeNavigator:
    def __init__(self, current_path: str = "/conversation") -> None:
        self.current_path = current_path
        self.redirects: list[str] = []

    def redirect_to(self, path: str) -> None:
        self.redirects.append(path)
        self.current_path = path


class FakeNotifier:
    def __init__(self) -> None:
        self.notices: list[tuple[str, str, Severity]] = []

    def notify(self, title: str, description: str, severity: Severity = Severity.INFO) -> None:
        self.notices.append((title, description, Severity(severity)))

    @property
    def titles(self) -> list[str]:
        return [title for title, _description, _severity in self.notices]


class FakeInsightGenerator:
    def __init__(self, result: dict[str, Any] | None = None) -> None:
        self.result = result
        self.calls = 0

    async def generate(self, messages):
        self.calls += 1
        return self.result


def seed_conversation(store: FakeStore, user_id: str = "user-1", **fields: Any) -> ConversationRecord:
    row = store.add_row("conversations", {"user_id": user_id, **fields})
    return ConversationRecord.from_row(row)


def seed_messages(store: FakeStore, conversation_id: str, contents: list[tuple[str, str]]) -> list[MessageRecord]:
    return [
        MessageRecord.from_row(
            store.add_row("messages", {"conversation_id": conversation_id, "role": role, "content": content})
        )
        for role, content in contents
    ]


def make_messages(*turns: tuple[str, str]) -> list[MessageRecord]:
    return [
        MessageRecord(
            id=str(index),
            role=role,
            content=content,
            created_at=BASE_TIME + timedelta(seconds=index),
        )
        for index, (role, content) in enumerate(turns)
    ]


def user_turns(count: int, text: str = "I keep thinking about it") -> list[tuple[str, str]]:
    return [("user", f"{text} ({index})") for index in range(count)]


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def fast_settings() -> Settings:
    return Settings(
        tick_interval_seconds=60.0,
        grace_period_seconds=0.05,
        pause_cooldown_seconds=0.1,
        managed_pause_timeout_seconds=0.3,
        persistence_timeout_seconds=0.3,
        navigation_fallback_delay_seconds=0.01,
        inactivity_timeout_minutes=60.0,
        generate_insights=False,
        completion_retry_seconds=0.05,
    )
