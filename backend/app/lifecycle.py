"""Session lifecycle service.

Owns every status transition that goes through the record store:
resume-or-create, the managed pause used by live sessions, resume,
completion, and termination.  A user has at most one active session, so
every path into `active` checks for another one first.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Sequence

from .insights import InsightGenerator
from .live.context import build_session_data, snapshot_fields
from .live.records import (
    ConversationRecord,
    MessageRecord,
    PausedSnapshot,
    PauseReason,
    SessionStatus,
    can_transition,
)
from .settings import Settings
from .store import RecordStore


logger = logging.getLogger("confide")


class LifecycleError(Exception):
    """Base class for lifecycle failures surfaced to callers."""


class SessionNotFoundError(LifecycleError):
    pass


class SessionAccessError(LifecycleError):
    pass


class SessionConflictError(LifecycleError):
    pass


class InvalidTransitionError(LifecycleError):
    pass


class PersistenceError(LifecycleError):
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class InsightRecovery:
    total: int = 0
    recovered: list[ConversationRecord] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class SessionLifecycle:
    def __init__(
        self,
        store: RecordStore,
        *,
        settings: Settings,
        insight_generator: InsightGenerator | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._insight_generator = insight_generator
        # Serialises every path into `active` for one user.
        self._activation_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def settings(self) -> Settings:
        return self._settings

    # Reads ---------------------------------------------------------------

    async def _get_row(self, table: str, filters: dict[str, Any]) -> dict[str, Any] | None:
        result = await self._store.get(table, filters)
        if not result.ok:
            raise PersistenceError(result.error or f"Could not read {table}")
        return result.record

    async def get_owned(self, session_id: str, user_id: str) -> ConversationRecord:
        row = await self._get_row("conversations", {"id": session_id})
        if row is None:
            raise SessionNotFoundError("Session not found")
        conversation = ConversationRecord.from_row(row)
        if conversation.user_id != user_id:
            raise SessionAccessError("Not authorised to access this session")
        return conversation

    async def list_for_user(self, user_id: str) -> list[ConversationRecord]:
        result = await self._store.select(
            "conversations", {"user_id": user_id}, order_by="started_at", descending=True
        )
        if not result.ok:
            raise PersistenceError(result.error or "Could not list sessions")
        return [ConversationRecord.from_row(row) for row in result.records]

    async def active_for_user(self, user_id: str) -> ConversationRecord | None:
        row = await self._get_row(
            "conversations", {"user_id": user_id, "status": SessionStatus.ACTIVE.value}
        )
        return ConversationRecord.from_row(row) if row else None

    async def load_messages(self, session_id: str) -> list[MessageRecord]:
        result = await self._store.select(
            "messages", {"conversation_id": session_id}, order_by="created_at"
        )
        if not result.ok:
            raise PersistenceError(result.error or "Could not load messages")
        return [MessageRecord.from_row(row) for row in result.records]

    async def get_snapshot(self, user_id: str) -> PausedSnapshot | None:
        row = await self._get_row("paused_conversations", {"user_id": user_id})
        return PausedSnapshot.from_row(row) if row else None

    async def discard_snapshot(self, user_id: str) -> None:
        result = await self._store.delete("paused_conversations", {"user_id": user_id})
        if not result.ok:
            logger.warning("Could not discard paused snapshot for %s: %s", user_id, result.error)

    # Transitions ---------------------------------------------------------

    async def start_or_resume(
        self, user_id: str, title: str | None = None
    ) -> tuple[ConversationRecord, bool]:
        """Return the user's active session, creating one if there is none.

        The boolean is True when a new session was created.
        """
        async with self._activation_locks[user_id]:
            existing = await self.active_for_user(user_id)
            if existing is not None:
                logger.info("Resuming active session %s for %s", existing.id, user_id)
                return existing, False

            if title is None:
                previous = await self._store.select("conversations", {"user_id": user_id})
                title = f"Conversation {len(previous.records) + 1}"
            # Only one paused snapshot is kept and a new session supersedes it.
            await self.discard_snapshot(user_id)
            result = await self._store.insert(
                "conversations",
                {
                    "user_id": user_id,
                    "title": title,
                    "status": SessionStatus.ACTIVE.value,
                    "max_duration_minutes": self._settings.max_duration_minutes,
                    "warning_offset_minutes": self._settings.warning_offset_minutes,
                },
            )
            if not result.ok or result.record is None:
                # Another process may have won the unique active index.
                winner = await self.active_for_user(user_id)
                if winner is not None:
                    logger.info("Session %s was created concurrently for %s", winner.id, user_id)
                    return winner, False
                raise PersistenceError(result.error or "Could not create session")
            conversation = ConversationRecord.from_row(result.record)
            logger.info("Created session %s for %s", conversation.id, user_id)
            return conversation, True

    async def add_message(self, session_id: str, role: str, content: str) -> MessageRecord:
        row = await self._get_row("conversations", {"id": session_id})
        if row is None:
            raise SessionNotFoundError("Session not found")
        if row["status"] != SessionStatus.ACTIVE.value:
            raise InvalidTransitionError("Messages can only be added to an active session")
        result = await self._store.insert(
            "messages", {"conversation_id": session_id, "role": role, "content": content}
        )
        if not result.ok or result.record is None:
            raise PersistenceError(result.error or "Could not store message")
        return MessageRecord.from_row(result.record)

    async def clear_messages(self, session_id: str, user_id: str) -> ConversationRecord:
        await self.get_owned(session_id, user_id)
        deleted = await self._store.delete("messages", {"conversation_id": session_id})
        if not deleted.ok:
            raise PersistenceError(deleted.error or "Could not clear messages")
        updated = await self._store.update(
            "conversations", session_id, {"insights": None, "ocean_signals": None}
        )
        if not updated.ok or updated.record is None:
            raise PersistenceError(updated.error or "Could not clear insights")
        return ConversationRecord.from_row(updated.record)

    async def pause_session(
        self,
        conversation: ConversationRecord,
        messages: Sequence[MessageRecord],
        reason: PauseReason,
        active_seconds: int,
    ) -> bool:
        """Managed pause: status, timing and snapshot in one place."""
        lookup = await self._store.get("conversations", {"id": conversation.id})
        if not lookup.ok:
            logger.error("Managed pause could not read %s: %s", conversation.id, lookup.error)
            return False
        current = lookup.record
        if current is None:
            logger.error("Managed pause: session %s no longer exists", conversation.id)
            return False
        status = SessionStatus(current["status"])
        if status is SessionStatus.PAUSED:
            return True
        if not can_transition(status, SessionStatus.PAUSED):
            logger.warning("Managed pause: session %s is already %s", conversation.id, status.value)
            return False

        payload = build_session_data(reason, messages, _now(), active_seconds).model_dump(mode="json")
        updated = await self._store.update(
            "conversations",
            conversation.id,
            {
                "status": SessionStatus.PAUSED.value,
                "session_data": payload,
                "active_seconds": active_seconds,
                "duration_minutes": math.ceil(active_seconds / 60),
            },
        )
        if not updated.ok:
            logger.error("Managed pause could not update %s: %s", conversation.id, updated.error)
            return False

        snapshot = await self._store.upsert(
            "paused_conversations",
            "user_id",
            snapshot_fields(conversation, conversation.user_id, payload),
        )
        if not snapshot.ok:
            logger.warning("Managed pause saved %s without a snapshot: %s", conversation.id, snapshot.error)
        return True

    async def checkpoint(self, session_id: str, active_seconds: int) -> bool:
        """Record the running active time of a session that is still active."""
        lookup = await self._store.get("conversations", {"id": session_id})
        if not lookup.ok or lookup.record is None:
            logger.warning("Checkpoint skipped for %s: %s", session_id, lookup.error or "not found")
            return False
        if lookup.record["status"] != SessionStatus.ACTIVE.value:
            return False
        if active_seconds <= (lookup.record.get("active_seconds") or 0):
            return True
        result = await self._store.update(
            "conversations",
            session_id,
            {"active_seconds": active_seconds, "duration_minutes": math.ceil(active_seconds / 60)},
        )
        if not result.ok:
            logger.warning("Checkpoint of %s failed: %s", session_id, result.error)
        return result.ok

    async def resume(self, session_id: str, user_id: str) -> ConversationRecord:
        async with self._activation_locks[user_id]:
            conversation = await self.get_owned(session_id, user_id)
            if conversation.status is SessionStatus.ACTIVE:
                return conversation
            if not can_transition(conversation.status, SessionStatus.ACTIVE):
                raise InvalidTransitionError(f"A {conversation.status.value} session cannot be resumed")
            other = await self.active_for_user(user_id)
            if other is not None and other.id != conversation.id:
                raise SessionConflictError("Another session is already active")

            result = await self._store.update(
                "conversations", session_id, {"status": SessionStatus.ACTIVE.value}
            )
            if not result.ok or result.record is None:
                other = await self.active_for_user(user_id)
                if other is not None and other.id != conversation.id:
                    raise SessionConflictError("Another session is already active")
                raise PersistenceError(result.error or "Could not resume session")
        if self._settings.snapshot_on_resume == "delete":
            await self.discard_snapshot(user_id)
        logger.info("Resumed session %s", session_id)
        return ConversationRecord.from_row(result.record)

    async def complete(
        self,
        session_id: str,
        user_id: str,
        *,
        active_seconds: int | None = None,
        messages: Sequence[MessageRecord] | None = None,
    ) -> ConversationRecord:
        """Mark the session completed.  Completing twice is a no-op."""
        conversation = await self.get_owned(session_id, user_id)
        if conversation.status is SessionStatus.COMPLETED:
            return conversation
        if not can_transition(conversation.status, SessionStatus.COMPLETED):
            raise InvalidTransitionError(f"A {conversation.status.value} session cannot be completed")

        seconds = conversation.active_seconds if active_seconds is None else active_seconds
        fields: dict[str, Any] = {
            "status": SessionStatus.COMPLETED.value,
            "ended_at": _now(),
            "active_seconds": seconds,
            "duration_minutes": math.ceil(seconds / 60),
        }
        result = await self._store.update("conversations", session_id, fields)
        if not result.ok or result.record is None:
            raise PersistenceError(result.error or "Could not complete session")
        completed = ConversationRecord.from_row(result.record)
        await self.discard_snapshot(user_id)
        logger.info("Completed session %s after %ss", session_id, seconds)

        history = list(messages) if messages is not None else await self.load_messages(session_id)
        if self._should_generate_insights(history, seconds):
            completed = await self._attach_insights(completed, history)
        return completed

    def _should_generate_insights(self, messages: Sequence[MessageRecord], seconds: int) -> bool:
        if self._insight_generator is None or not self._settings.generate_insights:
            return False
        user_messages = sum(1 for message in messages if message.role == "user")
        return seconds >= 60 and user_messages >= self._settings.min_user_messages_for_insights

    async def _attach_insights(
        self, conversation: ConversationRecord, messages: Sequence[MessageRecord]
    ) -> ConversationRecord:
        insights = await self._insight_generator.generate(messages)
        if insights is None:
            logger.warning("No insights generated for session %s", conversation.id)
            return conversation
        result = await self._store.update(
            "conversations",
            conversation.id,
            {"insights": insights["insights"], "ocean_signals": insights["ocean_signals"]},
        )
        if not result.ok or result.record is None:
            logger.error("Insights for %s could not be stored: %s", conversation.id, result.error)
            return conversation
        return ConversationRecord.from_row(result.record)

    async def recover_insights(self, user_id: str) -> InsightRecovery:
        """Generate insights for completed sessions that finished without them.

        Only sessions that ran for at least a minute qualify.  Each one is
        processed in turn; a failure is counted and the rest still run.
        """
        result = await self._store.select(
            "conversations",
            {"user_id": user_id, "status": SessionStatus.COMPLETED.value},
            order_by="started_at",
        )
        if not result.ok:
            raise PersistenceError(result.error or "Could not list sessions")
        pending = [
            ConversationRecord.from_row(row)
            for row in result.records
            if row.get("ocean_signals") is None and (row.get("duration_minutes") or 0) >= 1
        ]
        recovery = InsightRecovery(total=len(pending))
        if not pending:
            return recovery
        if self._insight_generator is None:
            logger.warning("Insight recovery skipped for %s: no generator configured", user_id)
            recovery.failed.extend(conversation.id for conversation in pending)
            return recovery

        for conversation in pending:
            history = await self.load_messages(conversation.id)
            updated = await self._attach_insights(conversation, history)
            if updated.ocean_signals is None:
                recovery.failed.append(conversation.id)
            else:
                recovery.recovered.append(updated)
        logger.info(
            "Recovered insights for %s of %s sessions for %s",
            len(recovery.recovered),
            recovery.total,
            user_id,
        )
        return recovery

    async def terminate(self, session_id: str, user_id: str) -> ConversationRecord:
        conversation = await self.get_owned(session_id, user_id)
        if conversation.status is SessionStatus.TERMINATED:
            return conversation
        if not can_transition(conversation.status, SessionStatus.TERMINATED):
            raise InvalidTransitionError(f"A {conversation.status.value} session cannot be terminated")
        result = await self._store.update(
            "conversations",
            session_id,
            {"status": SessionStatus.TERMINATED.value, "ended_at": _now()},
        )
        if not result.ok or result.record is None:
            raise PersistenceError(result.error or "Could not terminate session")
        return ConversationRecord.from_row(result.record)
