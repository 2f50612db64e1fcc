"""Pause orchestration for live sessions.

A pause runs through a fixed sequence: stop audio, persist, notify the
UI, surface one notice and, for pauses the user did not ask for, make
sure the browser leaves the live view.  Each step is isolated so a
failure in one never prevents the next, and every collaborator call is
bounded by a timeout.  A per-session lock admits one pause at a time and
is only released after a cooldown so that near-simultaneous triggers
(offline and pagehide in the same interruption, say) collapse into one.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Sequence

from ..store import RecordStore
from .collaborators import (
    AudioController,
    ManagedPause,
    Navigator,
    Notifier,
    Severity,
    maybe_await,
)
from .context import build_session_data, snapshot_fields
from .records import (
    ConversationRecord,
    MessageRecord,
    PauseReason,
    SessionStatus,
)


logger = logging.getLogger("confide")


class PauseState(str, Enum):
    IDLE = "idle"
    STOPPING_AUDIO = "stopping_audio"
    PERSISTING = "persisting"
    NOTIFYING = "notifying"
    DONE = "done"
    FAILED_RECOVERABLE = "failed_recoverable"


PAUSE_NOTICES: dict[PauseReason, tuple[str, str]] = {
    PauseReason.MANUAL: (
        "Conversation paused",
        "Your conversation is saved. You can continue it from the dashboard.",
    ),
    PauseReason.AUTO: (
        "Conversation paused automatically",
        "We paused your session to keep your progress safe.",
    ),
    PauseReason.NETWORK: (
        "Connection lost",
        "We paused your session because the connection dropped. Continue it from the dashboard.",
    ),
    PauseReason.VISIBILITY: (
        "Conversation paused",
        "We paused your session while you were away from the tab.",
    ),
}

UNSAVED_DESCRIPTION = (
    "Your session was paused, but we could not confirm it was saved. "
    "Recent messages may be missing when you continue."
)


@dataclass
class PauseOutcome:
    reason: PauseReason
    audio_stopped: bool = False
    persisted: bool = False
    snapshot_saved: bool = False
    strategy: str | None = None
    state: PauseState = PauseState.IDLE

    @property
    def success(self) -> bool:
        return self.audio_stopped or self.persisted or self.snapshot_saved


class PauseOrchestrator:
    """Coordinates pause transitions for live sessions."""

    def __init__(
        self,
        *,
        store: RecordStore,
        audio: AudioController,
        navigator: Navigator,
        notifier: Notifier,
        managed_pause: ManagedPause | None = None,
        on_begin: Callable[[PauseReason], Any] | None = None,
        on_state_update: Callable[[dict[str, Any]], Any] | None = None,
        on_paused: Callable[[str], Any] | None = None,
        managed_pause_timeout: float = 6.0,
        persistence_timeout: float = 8.0,
        cooldown_seconds: float = 2.5,
        navigation_delay: float = 1.0,
        dashboard_path: str = "/dashboard",
    ) -> None:
        self._store = store
        self._audio = audio
        self._navigator = navigator
        self._notifier = notifier
        self._managed_pause = managed_pause
        self._on_begin = on_begin
        self._on_state_update = on_state_update
        self._on_paused = on_paused
        self.managed_pause_timeout = managed_pause_timeout
        self.persistence_timeout = persistence_timeout
        self.cooldown_seconds = cooldown_seconds
        self.navigation_delay = navigation_delay
        self.dashboard_path = dashboard_path

        self.state = PauseState.IDLE
        self.last_outcome: PauseOutcome | None = None
        self._in_flight: set[str] = set()
        self._release_handles: dict[str, asyncio.TimerHandle] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._closing = False

    def is_in_flight(self, session_id: str) -> bool:
        return session_id in self._in_flight

    async def pause(
        self,
        reason: PauseReason,
        *,
        conversation: ConversationRecord | None,
        user_id: str | None,
        messages: Sequence[MessageRecord],
    ) -> bool:
        """Pause `conversation`; returns True when any side effect landed."""
        reason = PauseReason(reason)
        if conversation is None or not user_id:
            logger.warning("Pause rejected: missing session or user identity")
            return False
        if self._closing:
            logger.info("Pause rejected for %s: orchestrator is tearing down", conversation.id)
            return False
        if conversation.id in self._in_flight:
            logger.info("Pause already in flight for %s; ignoring %s trigger", conversation.id, reason.value)
            return False

        self._in_flight.add(conversation.id)
        outcome = PauseOutcome(reason=reason)
        self.last_outcome = outcome
        logger.info("Pausing session %s (reason=%s)", conversation.id, reason.value)
        try:
            if self._on_begin is not None:
                await self._safe_callback("on_begin", self._on_begin, reason)

            self._set_state(outcome, PauseState.STOPPING_AUDIO)
            outcome.audio_stopped = self._stop_audio()

            self._set_state(outcome, PauseState.PERSISTING)
            await self._persist(outcome, conversation, user_id, list(messages))

            self._set_state(outcome, PauseState.NOTIFYING)
            await self._notify_ui(conversation, outcome)
            self._surface_notice(outcome)
        except Exception as exc:
            logger.exception("Pause sequence for %s failed unexpectedly: %s", conversation.id, exc)
        finally:
            if reason.is_automatic:
                self._schedule_navigation_fallback(conversation.id)
            self._set_state(
                outcome,
                PauseState.DONE if outcome.persisted else PauseState.FAILED_RECOVERABLE,
            )
            self._schedule_release(conversation.id)

        if not outcome.success:
            logger.error("Pause of %s left no side effect behind", conversation.id)
        return outcome.success

    def _set_state(self, outcome: PauseOutcome, state: PauseState) -> None:
        outcome.state = state
        self.state = state

    def _stop_audio(self) -> bool:
        try:
            self._audio.stop_all_playback()
            return True
        except Exception as exc:
            logger.warning("Stopping audio playback failed: %s", exc)
            return False

    async def _persist(
        self,
        outcome: PauseOutcome,
        conversation: ConversationRecord,
        user_id: str,
        messages: list[MessageRecord],
    ) -> None:
        if self._managed_pause is not None and await self._run_managed_pause(conversation.id):
            outcome.persisted = True
            outcome.strategy = "managed"
            return
        await self._persist_directly(outcome, conversation, user_id, messages)

    async def _run_managed_pause(self, session_id: str) -> bool:
        try:
            result = await asyncio.wait_for(self._managed_pause(), timeout=self.managed_pause_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Managed pause for %s timed out after %.1fs; falling back to direct persistence",
                session_id,
                self.managed_pause_timeout,
            )
            return False
        except Exception as exc:
            logger.warning("Managed pause for %s failed: %s; falling back to direct persistence", session_id, exc)
            return False
        if not result:
            logger.warning("Managed pause for %s reported failure; falling back to direct persistence", session_id)
        return bool(result)

    async def _persist_directly(
        self,
        outcome: PauseOutcome,
        conversation: ConversationRecord,
        user_id: str,
        messages: list[MessageRecord],
    ) -> None:
        outcome.strategy = "direct"
        paused_at = datetime.now(timezone.utc)
        session_data = build_session_data(
            outcome.reason, messages, paused_at, conversation.active_seconds
        ).model_dump(mode="json")
        try:
            async with asyncio.timeout(self.persistence_timeout):
                result = await self._store.update(
                    "conversations",
                    conversation.id,
                    {
                        "status": SessionStatus.PAUSED.value,
                        "session_data": session_data,
                        "active_seconds": conversation.active_seconds,
                    },
                )
                outcome.persisted = result.ok
                if not result.ok:
                    logger.error("Could not mark session %s paused: %s", conversation.id, result.error)

                snapshot = await self._store.upsert(
                    "paused_conversations",
                    "user_id",
                    snapshot_fields(conversation, user_id, session_data),
                )
                outcome.snapshot_saved = snapshot.ok
                if not snapshot.ok:
                    logger.warning("Paused snapshot for %s was not saved: %s", conversation.id, snapshot.error)
        except TimeoutError:
            logger.error(
                "Direct pause persistence for %s timed out after %.1fs",
                conversation.id,
                self.persistence_timeout,
            )
        except Exception as exc:
            logger.exception("Direct pause persistence for %s failed: %s", conversation.id, exc)

    async def _notify_ui(self, conversation: ConversationRecord, outcome: PauseOutcome) -> None:
        update = {
            "status": SessionStatus.PAUSED.value,
            "paused_at": datetime.now(timezone.utc).isoformat(),
            "reason": outcome.reason.value,
            "persisted": outcome.persisted,
        }
        if self._on_state_update is not None:
            await self._safe_callback("on_state_update", self._on_state_update, update)
        if self._on_paused is not None:
            await self._safe_callback("on_paused", self._on_paused, conversation.id)

    def _surface_notice(self, outcome: PauseOutcome) -> None:
        title, description = PAUSE_NOTICES[outcome.reason]
        severity = Severity.INFO
        if not outcome.persisted:
            description = UNSAVED_DESCRIPTION
            severity = Severity.WARNING
        try:
            self._notifier.notify(title, description, severity)
        except Exception as exc:
            logger.warning("Pause notice could not be delivered: %s", exc)

    @staticmethod
    async def _safe_callback(name: str, callback: Callable[..., Any], *args: Any) -> None:
        try:
            await maybe_await(callback(*args))
        except Exception as exc:
            logger.exception("Pause callback %s failed: %s", name, exc)

    def _schedule_navigation_fallback(self, session_id: str) -> None:
        task = asyncio.get_running_loop().create_task(self._ensure_navigation(session_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _ensure_navigation(self, session_id: str) -> None:
        await asyncio.sleep(self.navigation_delay)
        try:
            if self._navigator.current_path == self.dashboard_path:
                return
            logger.info("Redirecting %s to %s after automatic pause", session_id, self.dashboard_path)
            self._navigator.redirect_to(self.dashboard_path)
        except Exception as exc:
            logger.error("Navigation fallback for %s failed: %s", session_id, exc)

    def _schedule_release(self, session_id: str) -> None:
        previous = self._release_handles.pop(session_id, None)
        if previous is not None:
            previous.cancel()
        loop = asyncio.get_running_loop()
        self._release_handles[session_id] = loop.call_later(
            self.cooldown_seconds, self._release, session_id
        )

    def _release(self, session_id: str) -> None:
        self._release_handles.pop(session_id, None)
        self._in_flight.discard(session_id)
        self.state = PauseState.IDLE

    async def wait_for_background(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def dispose(self) -> None:
        """Refuse new pauses.  Pauses and navigation already started keep running."""
        self._closing = True
        for handle in self._release_handles.values():
            handle.cancel()
        self._release_handles.clear()
