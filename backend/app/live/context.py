"""Conversation context extraction for pause and resume payloads.

Every function here is pure: message history in, summary out.  Keyword
lists are plain data handed to a `KeywordClassifier`, so a deployment can
swap them (for another language, say) without touching the logic.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Mapping, Protocol, Sequence

from .records import (
    ConversationContext,
    ConversationRecord,
    MessageRecord,
    PausedSessionData,
    PauseReason,
)


class Turn(Protocol):
    role: str
    content: str


class KeywordClassifier:
    """Case-insensitive substring matcher over named keyword families."""

    def __init__(self, families: Mapping[str, Sequence[str]]) -> None:
        self.families: dict[str, tuple[str, ...]] = {
            name: tuple(keyword.lower() for keyword in keywords)
            for name, keywords in families.items()
        }

    def classify(self, text: str) -> str | None:
        """Return the first family matching `text`, in declaration order."""
        lower = text.lower()
        for name, keywords in self.families.items():
            if any(keyword in lower for keyword in keywords):
                return name
        return None

    def matches(self, text: str) -> list[str]:
        lower = text.lower()
        return [
            name
            for name, keywords in self.families.items()
            if any(keyword in lower for keyword in keywords)
        ]

    def keyword_hits(self, text: str, family: str) -> int:
        """Number of distinct keywords of `family` present in `text`."""
        lower = text.lower()
        return sum(1 for keyword in self.families[family] if keyword in lower)

    def occurrences(self, text: str, family: str) -> int:
        """Total number of keyword occurrences of `family` in `text`."""
        lower = text.lower()
        return sum(lower.count(keyword) for keyword in self.families[family])


TOPIC_KEYWORDS: dict[str, tuple[str, ...]] = {
    "work": ("work", "job", "boss", "office", "career", "colleague", "coworker"),
    "relationships": ("relationship", "partner", "family", "friend", "marriage", "husband", "wife"),
    "stress": ("stress", "overwhelm", "pressure", "anxious", "anxiety", "burnout"),
    "goals": ("goal", "objective", "achieve", "future", "ambition"),
}

CONCERN_KEYWORDS: dict[str, tuple[str, ...]] = {
    "anxiety": ("worried", "worry", "anxious", "anxiety", "nervous", "afraid", "panic", "fear"),
    "challenges": ("problem", "difficult", "struggle", "challenge", "stuck", "hard time"),
    "relationships": ("relationship", "partner", "family", "friend", "marriage"),
    "professional": ("career", "job", "work", "boss", "promotion", "colleague"),
}

NEXT_STEP_PATTERNS: tuple[str, ...] = (
    "next step",
    "recommend",
    "suggest",
    "try",
    "practice",
    "exercise",
)

DEFAULT_TOPIC = "general_wellbeing"
DEFAULT_NEXT_STEP = "resume conversation"
RECENT_USER_WINDOW = 5
ANALYSIS_THRESHOLD = 5
ACTION_PLANNING_THRESHOLD = 15
FULL_PROGRESS_MESSAGES = 20

topic_classifier = KeywordClassifier(TOPIC_KEYWORDS)
concern_classifier = KeywordClassifier(CONCERN_KEYWORDS)
next_step_classifier = KeywordClassifier({"advice": NEXT_STEP_PATTERNS})


def _user_turns(messages: Iterable[Turn]) -> list[Turn]:
    return [message for message in messages if message.role == "user"]


def extract_topic(
    messages: Sequence[Turn],
    classifier: KeywordClassifier = topic_classifier,
) -> str:
    """Topic of the most recent user messages.

    The newest user message decides first; older messages in the recent
    window are only consulted when it matches nothing.
    """
    recent = _user_turns(messages)[-RECENT_USER_WINDOW:]
    for message in reversed(recent):
        topic = classifier.classify(message.content)
        if topic is not None:
            return topic
    return DEFAULT_TOPIC


def extract_concerns(
    messages: Sequence[Turn],
    classifier: KeywordClassifier = concern_classifier,
) -> list[str]:
    concerns: list[str] = []
    for message in _user_turns(messages):
        for family in classifier.matches(message.content):
            if family not in concerns:
                concerns.append(family)
    return concerns


def determine_phase(messages: Sequence[Turn]) -> str:
    count = len(messages)
    if count < ANALYSIS_THRESHOLD:
        return "exploration"
    if count < ACTION_PLANNING_THRESHOLD:
        return "analysis"
    return "action_planning"


def calculate_progress(messages: Sequence[Turn]) -> float:
    """Linear 0-100 score that saturates at twenty messages."""
    return min(100.0, len(messages) / FULL_PROGRESS_MESSAGES * 100)


def _first_sentence(text: str, limit: int = 80) -> str:
    clean = " ".join(text.split())
    for separator in (". ", "? ", "! "):
        if separator in clean:
            clean = clean.split(separator, 1)[0] + separator.strip()
            break
    if len(clean) > limit:
        clean = clean[: limit - 3].rstrip() + "..."
    return clean


def extract_next_steps(
    messages: Sequence[Turn],
    classifier: KeywordClassifier = next_step_classifier,
) -> list[str]:
    steps = [
        f"Revisit the suggestion: {_first_sentence(message.content)}"
        for message in messages
        if message.role == "assistant" and classifier.classify(message.content) is not None
    ]
    return steps or [DEFAULT_NEXT_STEP]


def extract_context(messages: Sequence[Turn]) -> ConversationContext:
    return ConversationContext(
        topic=extract_topic(messages),
        concerns=extract_concerns(messages),
        phase=determine_phase(messages),
        progress=calculate_progress(messages) / 100,
        next_steps=extract_next_steps(messages),
    )


def build_session_data(
    reason: PauseReason,
    messages: Sequence[MessageRecord],
    paused_at: datetime,
    active_seconds: int = 0,
) -> PausedSessionData:
    """Assemble the versioned payload stored when a session pauses."""
    message_list = list(messages)
    context = extract_context(message_list)
    return PausedSessionData(
        pause_reason=reason,
        paused_at=paused_at,
        messages=message_list,
        context=context,
        phase=context.phase,
        progress=context.progress,
        next_steps=context.next_steps,
        active_seconds=active_seconds,
    )


def snapshot_fields(
    conversation: ConversationRecord,
    user_id: str,
    session_data: dict[str, Any],
) -> dict[str, Any]:
    """Columns of the per-user paused snapshot, from a dumped payload."""
    return {
        "user_id": user_id,
        "conversation_id": conversation.id,
        "conversation_title": conversation.title or "Paused conversation",
        "message_history": session_data["messages"],
        "context": session_data["context"],
        "pause_reason": session_data["pause_reason"],
        "paused_at": datetime.fromisoformat(session_data["paused_at"]),
    }
