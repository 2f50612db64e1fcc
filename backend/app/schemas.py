"""Pydantic schemas for input and output validation.

Response models are built from the lifecycle records with
`model_validate`, so they mirror `ConversationRecord`, `MessageRecord`
and `PausedSnapshot` rather than the SQLAlchemy models.
"""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .live.records import ConversationContext, PauseReason, SessionStatus


class ConversationCreate(BaseModel):
    """Schema for starting (or resuming) a conversation."""

    title: Optional[str] = Field(None, max_length=200, description="Optional conversation title")


class ConversationOut(BaseModel):
    """Schema for conversation retrieval responses."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    title: Optional[str]
    status: SessionStatus
    started_at: datetime
    ended_at: Optional[datetime]
    duration_minutes: int
    active_seconds: int
    max_duration_minutes: int
    warning_offset_minutes: int
    session_data: Optional[Any] = None
    insights: Optional[Any] = None
    ocean_signals: Optional[Any] = None


class ConversationStart(BaseModel):
    conversation: ConversationOut
    created: bool = Field(..., description="False when an active conversation was returned instead")


class MessageCreate(BaseModel):
    """Schema for appending a turn to an active conversation."""

    content: str = Field(..., min_length=1, description="Message text")
    role: Literal["user", "assistant"] = "user"


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    role: str
    content: str
    created_at: datetime


class SnapshotOut(BaseModel):
    """The paused snapshot offered as "continue where you left off"."""

    model_config = ConfigDict(from_attributes=True)

    conversation_id: str
    conversation_title: Optional[str]
    message_history: list[MessageOut]
    context: Optional[ConversationContext]
    pause_reason: PauseReason
    paused_at: datetime


class PauseResult(BaseModel):
    paused: bool = Field(..., description="True when any pause side effect landed")
    conversation: ConversationOut


class EndRequest(BaseModel):
    active_seconds: Optional[int] = Field(None, ge=0, description="Active time reported by the client")


class InsightRecoveryOut(BaseModel):
    """Outcome of regenerating insights for completed conversations."""

    total: int = Field(..., description="Completed conversations that were missing insights")
    recovered: list[ConversationOut]
    failed: list[str] = Field(default_factory=list, description="Ids of conversations still without insights")
