"""Main FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any
from uuid import UUID

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect

from .auth import init_firebase, verify_firebase_token
from .conversations import router as conversations_router
from .db import AsyncSessionLocal, close_db, init_db
from .insights import InsightGenerator, VertexInsightGenerator
from .lifecycle import LifecycleError, SessionLifecycle
from .live.collaborators import EventChannel
from .live.protocol import (
    CLIENT_BEFORE_UNLOAD,
    CLIENT_END,
    CLIENT_MESSAGE,
    CLIENT_NETWORK,
    CLIENT_PAGE_HIDE,
    CLIENT_PAGE_SHOW,
    CLIENT_PAUSE,
    CLIENT_RESUME,
    CLIENT_VISIBILITY,
    SERVER_ERROR,
)
from .live.records import PauseReason
from .live.registry import LiveSessionRegistry
from .live.session import LiveSession
from .settings import settings
from .store import SqlAlchemyRecordStore


logger = logging.getLogger("confide")

app = FastAPI(title="Confide Backend", version="0.3.0")
app.include_router(conversations_router)


def _insight_generator() -> InsightGenerator | None:
    if not settings.generate_insights:
        return None
    return VertexInsightGenerator(
        model_id=settings.model_id,
        location=settings.location,
        project_id=settings.project_id,
        timeout_seconds=settings.insight_timeout_seconds,
    )


@app.on_event("startup")
async def startup_event() -> None:
    """Initialise Firebase, the database and the session services."""
    init_firebase()
    await init_db()
    store = SqlAlchemyRecordStore(AsyncSessionLocal)
    app.state.store = store
    app.state.lifecycle = SessionLifecycle(
        store, settings=settings, insight_generator=_insight_generator()
    )
    app.state.registry = LiveSessionRegistry()
    logger.info(
        "Firebase and database initialised; max duration=%smin; managed pause=%s; snapshot on resume=%s",
        settings.max_duration_minutes,
        settings.use_managed_pause,
        settings.snapshot_on_resume,
    )


@app.on_event("shutdown")
async def shutdown_event() -> None:
    """Pause whatever is still connected before the process exits."""
    registry: LiveSessionRegistry | None = getattr(app.state, "registry", None)
    if registry is not None:
        await registry.close_all()
    await close_db()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health endpoint to confirm the service is up."""
    return {"status": "ok"}


@app.get("/api/client-config")
async def client_config() -> dict[str, object | None]:
    """Expose non-secret browser config and the session timing limits."""
    timing = {
        "maxDurationMinutes": settings.max_duration_minutes,
        "warningOffsetMinutes": settings.warning_offset_minutes,
        "minUserMessagesToEnd": settings.min_user_messages_to_end,
        "dashboardPath": settings.dashboard_path,
    }
    raw_config = settings.firebase_web_config.strip()
    if not raw_config:
        return {"firebaseConfig": None, "session": timing}
    try:
        parsed = json.loads(raw_config)
    except json.JSONDecodeError:
        logger.warning("Ignoring invalid CONFIDE_FIREBASE_WEB_CONFIG JSON")
        return {"firebaseConfig": None, "session": timing}
    if not isinstance(parsed, dict):
        logger.warning("Ignoring non-object CONFIDE_FIREBASE_WEB_CONFIG payload")
        return {"firebaseConfig": None, "session": timing}
    return {"firebaseConfig": parsed, "session": timing}


async def _forward_events(ws: WebSocket, channel: EventChannel) -> None:
    try:
        async for event in channel.events():
            await ws.send_json(event)
    except (WebSocketDisconnect, RuntimeError) as exc:
        logger.debug("Stopped forwarding session events: %s", exc)


async def _dispatch_client_event(live: LiveSession, message: dict[str, Any]) -> None:
    message_type = str(message.get("type", "")).strip()
    if message_type == CLIENT_MESSAGE:
        content = message.get("content")
        if not isinstance(content, str) or not content.strip():
            raise ValueError("Message content must be a non-empty string")
        role = message.get("role", "user")
        if role not in ("user", "assistant"):
            raise ValueError("Message role must be user or assistant")
        await live.add_message(content.strip(), role)
    elif message_type == CLIENT_VISIBILITY:
        state = message.get("state")
        if state not in ("hidden", "visible"):
            raise ValueError("Visibility state must be hidden or visible")
        live.monitor.on_visibility(state == "hidden")
    elif message_type == CLIENT_NETWORK:
        online = message.get("online")
        if not isinstance(online, bool):
            raise ValueError("Network events need a boolean online field")
        live.monitor.on_network(online)
    elif message_type == CLIENT_PAGE_HIDE:
        live.monitor.on_page_hide()
    elif message_type == CLIENT_PAGE_SHOW:
        live.monitor.on_page_show()
    elif message_type == CLIENT_BEFORE_UNLOAD:
        live.handle_before_unload()
    elif message_type == CLIENT_PAUSE:
        await live.pause(PauseReason.MANUAL)
    elif message_type == CLIENT_RESUME:
        await live.resume()
    elif message_type == CLIENT_END:
        await live.end_session(manual=True)
    else:
        raise ValueError(f"Unsupported message type: {message_type}")


@app.websocket("/ws/session")
async def session_websocket(ws: WebSocket) -> None:
    """Host one live conversation: browser signals in, state changes out."""
    await ws.accept()

    token = ws.query_params.get("token", "").strip()
    session_id_raw = ws.query_params.get("session_id", "").strip()
    if not token or not session_id_raw:
        await ws.send_json({"type": SERVER_ERROR, "message": "Missing token or session_id"})
        await ws.close(code=1008)
        return

    try:
        session_id = UUID(session_id_raw)
    except ValueError:
        await ws.send_json({"type": SERVER_ERROR, "message": "session_id must be a valid UUID"})
        await ws.close(code=1008)
        return

    lifecycle: SessionLifecycle = ws.app.state.lifecycle
    registry: LiveSessionRegistry = ws.app.state.registry
    try:
        user = await asyncio.to_thread(verify_firebase_token, token)
        conversation = await lifecycle.get_owned(str(session_id), user["uid"])
        if conversation.status.is_final:
            raise LifecycleError(f"This conversation is already {conversation.status.value}")
        messages = await lifecycle.load_messages(conversation.id)
    except HTTPException as exc:
        await ws.send_json({"type": SERVER_ERROR, "message": exc.detail})
        await ws.close(code=1008)
        return
    except LifecycleError as exc:
        await ws.send_json({"type": SERVER_ERROR, "message": str(exc)})
        await ws.close(code=1008)
        return
    except Exception as exc:
        logger.exception("Failed to validate websocket session: %s", exc)
        await ws.send_json({"type": SERVER_ERROR, "message": "Unable to validate the live session"})
        await ws.close(code=1011)
        return

    channel = EventChannel()
    live = LiveSession(
        conversation=conversation,
        messages=messages,
        lifecycle=lifecycle,
        store=ws.app.state.store,
        channel=channel,
        settings=settings,
    )
    registry.register(live)
    forward_task = asyncio.create_task(_forward_events(ws, channel))
    logger.info("Live session %s connected for %s", conversation.id, conversation.user_id)

    try:
        live.start()
        while True:
            try:
                message = await ws.receive_json()
            except WebSocketDisconnect:
                break
            except (ValueError, TypeError):
                channel.emit({"type": SERVER_ERROR, "message": "Malformed JSON message"})
                continue

            if not isinstance(message, dict):
                channel.emit({"type": SERVER_ERROR, "message": "Messages must be JSON objects"})
                continue

            try:
                await _dispatch_client_event(live, message)
            except (ValueError, LifecycleError) as exc:
                channel.emit({"type": SERVER_ERROR, "message": str(exc)})
            except Exception as exc:
                logger.exception("Live websocket message handling failed: %s", exc)
                channel.emit({"type": SERVER_ERROR, "message": "Failed to process live message"})
                break

            if live.conversation.status.is_final:
                break
    except Exception as exc:
        logger.exception("Unexpected error in /ws/session: %s", exc)
        channel.emit({"type": SERVER_ERROR, "message": f"Live session error: {exc}"})
    finally:
        try:
            await live.handle_disconnect()
        except Exception as exc:
            logger.exception("Pause on disconnect failed for %s: %s", conversation.id, exc)
        live.dispose()
        registry.unregister(live)
        channel.close()
        with contextlib.suppress(Exception):
            await forward_task
        with contextlib.suppress(RuntimeError):
            await ws.close()
