"""Record store used for session and snapshot persistence.

The live components only see the `RecordStore` protocol: every call
returns a `StoreResult` and failures are reported in it rather than
raised, so a slow or broken database can never escape a pause attempt.
`SqlAlchemyRecordStore` is the PostgreSQL implementation.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

from sqlalchemy import delete, inspect, select, update
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .models import Base, Conversation, Message, PausedConversation


logger = logging.getLogger("confide")

TABLES: dict[str, type[Base]] = {
    "conversations": Conversation,
    "messages": Message,
    "paused_conversations": PausedConversation,
}


@dataclass(frozen=True)
class StoreResult:
    ok: bool
    record: dict[str, Any] | None = None
    records: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None

    @classmethod
    def success(
        cls,
        record: dict[str, Any] | None = None,
        records: list[dict[str, Any]] | None = None,
    ) -> "StoreResult":
        return cls(ok=True, record=record, records=records or [])

    @classmethod
    def failure(cls, error: str) -> "StoreResult":
        return cls(ok=False, error=error)


class RecordStore(Protocol):
    async def get(self, table: str, filters: Mapping[str, Any]) -> StoreResult: ...

    async def update(self, table: str, record_id: Any, fields: Mapping[str, Any]) -> StoreResult: ...

    async def upsert(self, table: str, key: str, fields: Mapping[str, Any]) -> StoreResult: ...

    async def insert(self, table: str, fields: Mapping[str, Any]) -> StoreResult: ...

    async def select(
        self,
        table: str,
        filters: Mapping[str, Any],
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> StoreResult: ...

    async def delete(self, table: str, filters: Mapping[str, Any]) -> StoreResult: ...


def _model(table: str) -> type[Base]:
    try:
        return TABLES[table]
    except KeyError as exc:
        raise ValueError(f"Unknown table: {table}") from exc


def _coerce(model: type[Base], fields: Mapping[str, Any]) -> dict[str, Any]:
    """Convert string ids into UUIDs for UUID columns."""
    columns = model.__table__.columns
    coerced: dict[str, Any] = {}
    for name, value in fields.items():
        if name not in columns:
            raise ValueError(f"Unknown column {model.__tablename__}.{name}")
        if isinstance(columns[name].type, PG_UUID) and isinstance(value, str):
            value = uuid.UUID(value)
        coerced[name] = value
    return coerced


def _to_dict(instance: Base) -> dict[str, Any]:
    return {attr.key: getattr(instance, attr.key) for attr in inspect(instance).mapper.column_attrs}


class SqlAlchemyRecordStore:
    """`RecordStore` backed by SQLAlchemy async sessions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, table: str, filters: Mapping[str, Any]) -> StoreResult:
        """First matching row in `record`; a missing row is still a success."""
        result = await self.select(table, filters, limit=1)
        if not result.ok:
            return result
        return StoreResult.success(record=result.records[0] if result.records else None)

    async def select(
        self,
        table: str,
        filters: Mapping[str, Any],
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> StoreResult:
        try:
            model = _model(table)
            statement = select(model).filter_by(**_coerce(model, filters))
            if order_by is not None:
                column = getattr(model, order_by)
                statement = statement.order_by(column.desc() if descending else column.asc())
            if limit is not None:
                statement = statement.limit(limit)
            async with self._session_factory() as db:
                result = await db.execute(statement)
                rows = result.scalars().all()
            return StoreResult.success(records=[_to_dict(row) for row in rows])
        except (SQLAlchemyError, ValueError) as exc:
            logger.error("Select on %s failed: %s", table, exc)
            return StoreResult.failure(str(exc))

    async def update(self, table: str, record_id: Any, fields: Mapping[str, Any]) -> StoreResult:
        try:
            model = _model(table)
            key = _coerce(model, {"id": record_id})["id"]
            statement = (
                update(model)
                .where(model.id == key)
                .values(**_coerce(model, fields))
                .returning(model)
            )
            async with self._session_factory() as db:
                result = await db.execute(statement)
                row = result.scalar_one_or_none()
                await db.commit()
            if row is None:
                return StoreResult.failure(f"{table} record {record_id} not found")
            return StoreResult.success(record=_to_dict(row))
        except (SQLAlchemyError, ValueError) as exc:
            logger.error("Update of %s %s failed: %s", table, record_id, exc)
            return StoreResult.failure(str(exc))

    async def upsert(self, table: str, key: str, fields: Mapping[str, Any]) -> StoreResult:
        try:
            model = _model(table)
            values = _coerce(model, fields)
            if key not in values:
                raise ValueError(f"Upsert on {table} requires the {key} field")
            statement = pg_insert(model).values(**values)
            statement = statement.on_conflict_do_update(
                index_elements=[key],
                set_={name: value for name, value in values.items() if name != key},
            ).returning(model)
            async with self._session_factory() as db:
                result = await db.execute(statement)
                row = result.scalar_one()
                await db.commit()
            return StoreResult.success(record=_to_dict(row))
        except (SQLAlchemyError, ValueError) as exc:
            logger.error("Upsert on %s failed: %s", table, exc)
            return StoreResult.failure(str(exc))

    async def insert(self, table: str, fields: Mapping[str, Any]) -> StoreResult:
        try:
            model = _model(table)
            instance = model(**_coerce(model, fields))
            async with self._session_factory() as db:
                db.add(instance)
                await db.commit()
                await db.refresh(instance)
            return StoreResult.success(record=_to_dict(instance))
        except (SQLAlchemyError, ValueError) as exc:
            logger.error("Insert into %s failed: %s", table, exc)
            return StoreResult.failure(str(exc))

    async def delete(self, table: str, filters: Mapping[str, Any]) -> StoreResult:
        try:
            model = _model(table)
            statement = delete(model).filter_by(**_coerce(model, filters))
            async with self._session_factory() as db:
                await db.execute(statement)
                await db.commit()
            return StoreResult.success()
        except (SQLAlchemyError, ValueError) as exc:
            logger.error("Delete from %s failed: %s", table, exc)
            return StoreResult.failure(str(exc))
