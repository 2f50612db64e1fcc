from __future__ import annotations

import time
import uuid
from typing import Callable

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")
pytest.importorskip("sqlalchemy")
pytest.importorskip("asyncpg")
pytest.importorskip("firebase_admin")

from fastapi.testclient import TestClient

from app import main as main_module
from app.settings import Settings

from conftest import FakeStore, seed_conversation, seed_messages, user_turns


@pytest.fixture
def ws_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch, ws_store: FakeStore, fast_settings: Settings) -> TestClient:
    async def fake_noop() -> None:
        return None

    monkeypatch.setattr(main_module, "settings", fast_settings)
    monkeypatch.setattr(main_module, "init_firebase", lambda: None)
    monkeypatch.setattr(main_module, "init_db", fake_noop)
    monkeypatch.setattr(main_module, "close_db", fake_noop)
    monkeypatch.setattr(main_module, "SqlAlchemyRecordStore", lambda _factory: ws_store)
    monkeypatch.setattr(main_module, "verify_firebase_token", lambda _token: {"uid": "user-1"})

    with TestClient(main_module.app) as test_client:
        yield test_client


def receive_until(ws, predicate: Callable[[dict], bool], limit: int = 40) -> dict:
    for _ in range(limit):
        payload = ws.receive_json()
        if predicate(payload):
            return payload
    raise AssertionError("expected event never arrived")


def wait_for(condition: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.02)
    return condition()


def test_ws_session_rejects_invalid_session_id(client: TestClient) -> None:
    with client.websocket_connect("/ws/session?token=test-token&session_id=not-a-uuid") as ws:
        payload = ws.receive_json()

    assert payload["type"] == "error"
    assert "valid UUID" in payload["message"]


def test_ws_session_rejects_unknown_session(client: TestClient) -> None:
    with client.websocket_connect(f"/ws/session?token=test-token&session_id={uuid.uuid4()}") as ws:
        payload = ws.receive_json()

    assert payload == {"type": "error", "message": "Session not found"}


def test_ws_session_relays_messages_and_analysis(client: TestClient, ws_store: FakeStore) -> None:
    conversation = seed_conversation(ws_store)

    with client.websocket_connect(f"/ws/session?token=test-token&session_id={conversation.id}") as ws:
        status = ws.receive_json()
        ws.send_json({"type": "client.message", "content": "I feel nervous about my new job"})
        message = receive_until(ws, lambda event: event["type"] == "server.message")
        analysis = receive_until(ws, lambda event: event["type"] == "server.analysis")
        ws.send_json({"type": "client.pause"})
        receive_until(ws, lambda event: event["type"] == "server.status")

    assert status == {"type": "server.status", "state": "active", "session_id": conversation.id}
    assert message["message"]["content"] == "I feel nervous about my new job"
    assert analysis["emotion"]["primary"] == "anxious"
    assert ws_store.rows("messages")[0]["role"] == "user"


def test_ws_session_manual_pause_is_persisted(client: TestClient, ws_store: FakeStore) -> None:
    conversation = seed_conversation(ws_store)
    seed_messages(ws_store, conversation.id, user_turns(2))

    with client.websocket_connect(f"/ws/session?token=test-token&session_id={conversation.id}") as ws:
        ws.send_json({"type": "client.pause"})
        status = receive_until(
            ws, lambda event: event["type"] == "server.status" and event["state"] == "paused"
        )
        notice = receive_until(ws, lambda event: event["type"] == "server.notice")

    assert status["session_id"] == conversation.id
    assert notice["title"] == "Conversation paused"
    assert ws_store.rows("conversations")[0]["status"] == "paused"
    assert ws_store.rows("paused_conversations")[0]["pause_reason"] == "manual"


def test_ws_session_disconnect_pauses_with_network_reason(client: TestClient, ws_store: FakeStore) -> None:
    conversation = seed_conversation(ws_store)
    seed_messages(ws_store, conversation.id, user_turns(1))

    with client.websocket_connect(f"/ws/session?token=test-token&session_id={conversation.id}") as ws:
        ws.receive_json()

    assert wait_for(lambda: bool(ws_store.rows("paused_conversations")))
    assert ws_store.rows("conversations")[0]["status"] == "paused"
    assert ws_store.rows("paused_conversations")[0]["pause_reason"] == "network"


def test_ws_session_end_requires_enough_messages(client: TestClient, ws_store: FakeStore) -> None:
    conversation = seed_conversation(ws_store)
    seed_messages(ws_store, conversation.id, user_turns(2))

    with client.websocket_connect(f"/ws/session?token=test-token&session_id={conversation.id}") as ws:
        ws.send_json({"type": "client.end"})
        notice = receive_until(ws, lambda event: event["type"] == "server.notice")
        ws.send_json({"type": "client.pause"})
        receive_until(ws, lambda event: event["type"] == "server.status" and event["state"] == "paused")

    assert notice["title"] == "Keep going a little longer"
    assert notice["severity"] == "warning"


def test_ws_session_reports_unsupported_messages(client: TestClient, ws_store: FakeStore) -> None:
    conversation = seed_conversation(ws_store)

    with client.websocket_connect(f"/ws/session?token=test-token&session_id={conversation.id}") as ws:
        ws.send_json({"type": "client.dance"})
        error = receive_until(ws, lambda event: event["type"] == "error")
        ws.send_json({"type": "client.visibility", "state": "sideways"})
        invalid = receive_until(ws, lambda event: event["type"] == "error")
        ws.send_json({"type": "client.pause"})
        receive_until(ws, lambda event: event["type"] == "server.status" and event["state"] == "paused")

    assert "Unsupported message type" in error["message"]
    assert "hidden or visible" in invalid["message"]


def test_client_config_exposes_session_timing(client: TestClient) -> None:
    response = client.get("/api/client-config")

    assert response.status_code == 200
    assert response.json()["session"]["maxDurationMinutes"] == 15
