from __future__ import annotations

import uuid
from datetime import datetime, timezone

import pytest

from app.live.records import (
    ConversationRecord,
    PausedSnapshot,
    PauseReason,
    SessionDataError,
    SessionStatus,
    can_transition,
    parse_session_data,
)


def _payload(**overrides) -> dict:
    payload = {
        "schema_version": 1,
        "pause_reason": "network",
        "paused_at": "2026-01-05T09:30:00Z",
        "messages": [],
        "context": {
            "topic": "general_wellbeing",
            "concerns": [],
            "phase": "exploration",
            "progress": 0.0,
            "next_steps": ["resume conversation"],
        },
        "phase": "exploration",
        "progress": 0.0,
        "next_steps": ["resume conversation"],
        "active_seconds": 30,
    }
    payload.update(overrides)
    return payload


def test_active_and_paused_cycle_but_final_states_are_terminal() -> None:
    assert can_transition(SessionStatus.ACTIVE, SessionStatus.PAUSED)
    assert can_transition(SessionStatus.PAUSED, SessionStatus.ACTIVE)
    assert can_transition(SessionStatus.PAUSED, SessionStatus.COMPLETED)
    assert not can_transition(SessionStatus.COMPLETED, SessionStatus.ACTIVE)
    assert not can_transition(SessionStatus.TERMINATED, SessionStatus.PAUSED)
    assert SessionStatus.COMPLETED.is_final and not SessionStatus.PAUSED.is_final


def test_only_manual_pauses_are_user_initiated() -> None:
    assert not PauseReason.MANUAL.is_automatic
    assert all(reason.is_automatic for reason in (PauseReason.AUTO, PauseReason.NETWORK, PauseReason.VISIBILITY))


def test_parse_session_data_accepts_version_one() -> None:
    parsed = parse_session_data(_payload())

    assert parsed is not None
    assert parsed.pause_reason is PauseReason.NETWORK
    assert parsed.paused_at == datetime(2026, 1, 5, 9, 30, tzinfo=timezone.utc)


def test_parse_session_data_returns_none_for_empty_payloads() -> None:
    assert parse_session_data(None) is None
    assert parse_session_data({}) is None


@pytest.mark.parametrize("version", [None, 0, 2, "1"])
def test_parse_session_data_rejects_unknown_versions(version) -> None:
    with pytest.raises(SessionDataError):
        parse_session_data(_payload(schema_version=version))


def test_parse_session_data_rejects_extra_fields_and_bad_reasons() -> None:
    with pytest.raises(SessionDataError):
        parse_session_data(_payload(mood="sunny"))
    with pytest.raises(SessionDataError):
        parse_session_data(_payload(pause_reason="bored"))


def test_conversation_record_normalises_uuid_ids() -> None:
    row_id = uuid.uuid4()

    record = ConversationRecord.from_row({"id": row_id, "user_id": "user-1", "status": "paused"})

    assert record.id == str(row_id)
    assert record.status is SessionStatus.PAUSED
    assert not record.is_active


def test_paused_snapshot_from_row() -> None:
    conversation_id = uuid.uuid4()
    snapshot = PausedSnapshot.from_row(
        {
            "id": uuid.uuid4(),
            "user_id": "user-1",
            "conversation_id": conversation_id,
            "conversation_title": "Evening check-in",
            "message_history": [],
            "context": None,
            "pause_reason": "visibility",
            "paused_at": datetime(2026, 1, 5, 9, 30, tzinfo=timezone.utc),
            "created_at": datetime(2026, 1, 5, 9, 30, tzinfo=timezone.utc),
        }
    )

    assert snapshot.conversation_id == str(conversation_id)
    assert snapshot.pause_reason is PauseReason.VISIBILITY
