"""SQLAlchemy models for the Confide application.

A conversation is one timed engagement between a user and the AI
collaborator.  Messages are immutable turns ordered by creation time.
When a conversation pauses, a snapshot of its history and extracted
context is kept in `paused_conversations`; there is at most one live
snapshot per user, so newer pauses overwrite older ones.
"""

import uuid
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    __allow_unmapped__ = True


class Conversation(Base):
    """Represents a single conversational session.

    The `user_id` stores the Firebase UID of the owner and never changes.
    `status` cycles between active and paused and ends in either
    completed or terminated.  `session_data` holds the versioned paused
    payload written by the pause orchestrator; `insights` and
    `ocean_signals` are only filled in when the session completes.
    """

    __tablename__ = "conversations"
    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'paused', 'completed', 'terminated')",
            name="conversations_status_check",
        ),
        # At most one active conversation per user.
        Index(
            "conversations_one_active_per_user",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
        ),
    )

    id: uuid.UUID = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: str = Column(String, nullable=False, index=True)
    title: Optional[str] = Column(String(256), nullable=True)
    status: str = Column(String(16), nullable=False, default="active")

    started_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    duration_minutes: int = Column(Integer, nullable=False, default=0)
    active_seconds: int = Column(Integer, nullable=False, default=0)
    max_duration_minutes: int = Column(Integer, nullable=False, default=15)
    warning_offset_minutes: int = Column(Integer, nullable=False, default=1)

    session_data: Optional[dict] = Column(JSONB, nullable=True)
    insights: Optional[dict] = Column(JSONB, nullable=True)
    ocean_signals: Optional[dict] = Column(JSONB, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class Message(Base):
    """One immutable turn of a conversation."""

    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint("role IN ('user', 'assistant')", name="messages_role_check"),
    )

    id: uuid.UUID = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id: uuid.UUID = Column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role: str = Column(String(16), nullable=False)
    content: str = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class PausedConversation(Base):
    """The single resumable snapshot kept for a user."""

    __tablename__ = "paused_conversations"

    id: uuid.UUID = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: str = Column(String, nullable=False, unique=True)
    conversation_id: uuid.UUID = Column(UUID(as_uuid=True), nullable=False)
    conversation_title: Optional[str] = Column(String(256), nullable=True)
    message_history: list = Column(JSONB, nullable=False, default=list)
    context: Optional[dict] = Column(JSONB, nullable=True)
    pause_reason: str = Column(String(16), nullable=False, default="manual")
    paused_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
