"""Typed records shared by the live session components.

`PausedSessionData` is the closed, versioned payload written into a
conversation's `session_data` column when it pauses.  Unknown versions
and unexpected fields are rejected so the stored format stays checkable.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError


SESSION_DATA_VERSION = 1


class SessionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    TERMINATED = "terminated"

    @property
    def is_final(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.TERMINATED)


ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.ACTIVE: frozenset(
        {SessionStatus.PAUSED, SessionStatus.COMPLETED, SessionStatus.TERMINATED}
    ),
    SessionStatus.PAUSED: frozenset(
        {SessionStatus.ACTIVE, SessionStatus.COMPLETED, SessionStatus.TERMINATED}
    ),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.TERMINATED: frozenset(),
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class PauseReason(str, Enum):
    """Why a session paused.  Only `manual` is initiated by the user."""

    MANUAL = "manual"
    AUTO = "auto"
    NETWORK = "network"
    VISIBILITY = "visibility"

    @property
    def is_automatic(self) -> bool:
        return self is not PauseReason.MANUAL


class MessageRecord(BaseModel):
    """One immutable conversation turn."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    role: Literal["user", "assistant"]
    content: str
    created_at: datetime

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "MessageRecord":
        return cls(
            id=str(row["id"]),
            role=row["role"],
            content=row["content"],
            created_at=row["created_at"],
        )


class ConversationRecord(BaseModel):
    """The session record as the live components see it."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    title: Optional[str] = None
    status: SessionStatus = SessionStatus.ACTIVE
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    ended_at: Optional[datetime] = None
    duration_minutes: int = 0
    active_seconds: int = 0
    max_duration_minutes: int = 15
    warning_offset_minutes: int = 1
    session_data: Optional[dict[str, Any]] = None
    insights: Optional[dict[str, Any]] = None
    ocean_signals: Optional[dict[str, Any]] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ConversationRecord":
        data = dict(row)
        if isinstance(data.get("id"), uuid.UUID):
            data["id"] = str(data["id"])
        return cls.model_validate(data)

    @property
    def is_active(self) -> bool:
        return self.status is SessionStatus.ACTIVE


class ConversationContext(BaseModel):
    """Compact resumable summary of where a conversation stands."""

    model_config = ConfigDict(extra="forbid")

    topic: str
    concerns: list[str] = Field(default_factory=list)
    phase: Literal["exploration", "analysis", "action_planning"]
    progress: float = Field(ge=0.0, le=1.0)
    next_steps: list[str] = Field(default_factory=list)


class PausedSessionData(BaseModel):
    """Version 1 of the payload stored in `conversations.session_data`."""

    model_config = ConfigDict(extra="forbid")

    schema_version: Literal[1] = SESSION_DATA_VERSION
    pause_reason: PauseReason
    paused_at: datetime
    messages: list[MessageRecord]
    context: ConversationContext
    phase: str
    progress: float = Field(ge=0.0, le=1.0)
    next_steps: list[str]
    active_seconds: int = 0


class SessionDataError(ValueError):
    """Raised when a stored session payload cannot be read."""


def parse_session_data(raw: dict[str, Any] | None) -> PausedSessionData | None:
    if not raw:
        return None
    version = raw.get("schema_version")
    if version != SESSION_DATA_VERSION:
        raise SessionDataError(f"Unsupported session_data schema_version: {version!r}")
    try:
        return PausedSessionData.model_validate(raw)
    except ValidationError as exc:
        raise SessionDataError(f"Invalid session_data payload: {exc}") from exc


class PausedSnapshot(BaseModel):
    """The per-user snapshot offered as "continue where you left off"."""

    model_config = ConfigDict(from_attributes=True)

    user_id: str
    conversation_id: str
    conversation_title: Optional[str] = None
    message_history: list[MessageRecord] = Field(default_factory=list)
    context: Optional[ConversationContext] = None
    pause_reason: PauseReason = PauseReason.MANUAL
    paused_at: datetime

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "PausedSnapshot":
        data = dict(row)
        data["conversation_id"] = str(data["conversation_id"])
        return cls.model_validate(data)
