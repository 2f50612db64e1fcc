from __future__ import annotations

import uuid

import pytest

pytest.importorskip("sqlalchemy")
pytest.importorskip("asyncpg")

from sqlalchemy.exc import OperationalError

from app.models import Conversation, PausedConversation
from app.store import SqlAlchemyRecordStore, StoreResult, _coerce


class UnreachableSession:
    async def __aenter__(self):
        raise OperationalError("SELECT 1", {}, ConnectionRefusedError("connection refused"))

    async def __aexit__(self, *_exc) -> bool:
        return False


def test_coerce_converts_string_ids_for_uuid_columns() -> None:
    raw = str(uuid.uuid4())

    values = _coerce(PausedConversation, {"conversation_id": raw, "user_id": "user-1"})

    assert values["conversation_id"] == uuid.UUID(raw)
    assert values["user_id"] == "user-1"


def test_coerce_rejects_unknown_columns() -> None:
    with pytest.raises(ValueError):
        _coerce(Conversation, {"mood": "sunny"})


def test_store_result_constructors() -> None:
    assert StoreResult.success(records=[{"id": 1}]).records == [{"id": 1}]
    failure = StoreResult.failure("boom")
    assert failure.ok is False and failure.error == "boom"


@pytest.mark.asyncio
async def test_database_failures_are_reported_not_raised() -> None:
    store = SqlAlchemyRecordStore(UnreachableSession)
    conversation_id = str(uuid.uuid4())

    updated = await store.update("conversations", conversation_id, {"status": "paused"})
    upserted = await store.upsert("paused_conversations", "user_id", {"user_id": "user-1"})
    selected = await store.select("messages", {"conversation_id": conversation_id})

    assert updated.ok is False and "connection refused" in (updated.error or "")
    assert upserted.ok is False
    assert selected.ok is False
    fetched = await store.get("conversations", {"id": conversation_id})
    assert fetched.ok is False and fetched.record is None


@pytest.mark.asyncio
async def test_unknown_tables_and_malformed_ids_fail_cleanly() -> None:
    store = SqlAlchemyRecordStore(UnreachableSession)

    unknown = await store.insert("sessions", {"goal": "x"})
    malformed = await store.update("conversations", "not-a-uuid", {"status": "paused"})

    assert unknown.ok is False and "Unknown table" in (unknown.error or "")
    assert malformed.ok is False
