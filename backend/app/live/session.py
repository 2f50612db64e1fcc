"""One live conversation: clock, monitor, orchestrator and analyzer.

`LiveSession` owns every timer of a connected session.  Status changes
go through `_apply_status`, which stops the clock as soon as the session
leaves `active` and re-arms the activity monitor.  All browser-facing
effects are events on the session's `EventChannel`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Sequence

from ..lifecycle import InvalidTransitionError, LifecycleError, SessionLifecycle
from ..settings import Settings
from ..store import RecordStore
from .analysis import ConversationAnalysis, TherapeuticProgressAnalyzer
from .clock import SessionClock
from .collaborators import (
    ChannelAudio,
    ChannelNavigator,
    ChannelNotifier,
    EventChannel,
    Severity,
)
from .monitor import ActivityMonitor, Trigger
from .orchestrator import PauseOrchestrator
from .protocol import (
    SERVER_ALERT,
    SERVER_ANALYSIS,
    SERVER_CLOCK,
    SERVER_MESSAGE,
    SERVER_STATUS,
    SERVER_UNLOAD_PROMPT,
)
from .records import ConversationRecord, MessageRecord, PauseReason, SessionStatus


logger = logging.getLogger("confide")


class LiveSession:
    def __init__(
        self,
        *,
        conversation: ConversationRecord,
        messages: Sequence[MessageRecord],
        lifecycle: SessionLifecycle,
        store: RecordStore,
        channel: EventChannel,
        settings: Settings,
    ) -> None:
        self.conversation = conversation
        self.messages: list[MessageRecord] = list(messages)
        self.channel = channel
        self._lifecycle = lifecycle
        self._settings = settings
        self._pause_reason = PauseReason.MANUAL
        self._end_lock = asyncio.Lock()
        self._disposed = False
        self._completion_task: asyncio.Task[None] | None = None
        self._checkpoints: set[asyncio.Task[bool]] = set()

        self.audio = ChannelAudio(channel)
        self.navigator = ChannelNavigator(channel, settings.conversation_path)
        self.notifier = ChannelNotifier(channel)

        self.clock = SessionClock(
            max_duration_seconds=conversation.max_duration_minutes * 60,
            warning_offset_seconds=conversation.warning_offset_minutes * 60,
            is_active=self.is_active,
            on_time_up=self._on_time_up,
            on_warning=self._on_warning,
            on_tick=self._on_tick,
            on_minute=self._on_minute,
            elapsed_seconds=conversation.active_seconds,
            tick_interval=settings.tick_interval_seconds,
        )
        self.orchestrator = PauseOrchestrator(
            store=store,
            audio=self.audio,
            navigator=self.navigator,
            notifier=self.notifier,
            managed_pause=self._managed_pause if settings.use_managed_pause else None,
            on_begin=self._on_pause_begin,
            on_state_update=self._on_pause_state,
            on_paused=self._on_paused,
            managed_pause_timeout=settings.managed_pause_timeout_seconds,
            persistence_timeout=settings.persistence_timeout_seconds,
            cooldown_seconds=settings.pause_cooldown_seconds,
            navigation_delay=settings.navigation_fallback_delay_seconds,
            dashboard_path=settings.dashboard_path,
        )
        self.monitor = ActivityMonitor(
            pause=self.pause,
            is_active=self.is_active,
            has_history=lambda: bool(self.messages),
            audio=self.audio,
            notifier=self.notifier,
            grace_period_seconds=settings.grace_period_seconds,
            grace_overrides={
                Trigger.VISIBILITY: settings.visibility_grace_seconds,
                Trigger.NETWORK: settings.network_grace_seconds,
                Trigger.PAGE_LIFECYCLE: settings.page_lifecycle_grace_seconds,
            },
            inactivity_timeout_seconds=settings.inactivity_timeout_minutes * 60,
        )
        self.analyzer = TherapeuticProgressAnalyzer(
            max_duration_minutes=conversation.max_duration_minutes,
            warning_offset_minutes=conversation.warning_offset_minutes,
        )

    @property
    def session_id(self) -> str:
        return self.conversation.id

    @property
    def user_id(self) -> str:
        return self.conversation.user_id

    @property
    def user_message_count(self) -> int:
        return sum(1 for message in self.messages if message.role == "user")

    def is_active(self) -> bool:
        return not self._disposed and self.conversation.status is SessionStatus.ACTIVE

    def start(self) -> None:
        """Announce the current state and start the timers if active."""
        self._emit_status()
        self._emit({"type": SERVER_CLOCK, **self.clock.snapshot()})
        if self.messages:
            self._analyze()
        if self.is_active():
            self.clock.start()
            self.monitor.record_activity()
            if self.clock.expired:
                self._schedule_completion(0)

    def adopt_elapsed(self, elapsed_seconds: int) -> None:
        """Carry over active time counted by a connection this one replaces."""
        if elapsed_seconds <= self.clock.elapsed_seconds:
            return
        self.clock.advance_to(elapsed_seconds)
        self.conversation = self.conversation.model_copy(update={"active_seconds": elapsed_seconds})

    # Status --------------------------------------------------------------

    def _apply_status(self, status: SessionStatus, record: ConversationRecord | None = None) -> None:
        previous = self.conversation.status
        base = record if record is not None else self.conversation
        self.conversation = base.model_copy(
            update={"status": status, "active_seconds": self.clock.elapsed_seconds}
        )
        if status is SessionStatus.ACTIVE:
            self.monitor.rearm()
            self.clock.start()
            self.monitor.record_activity()
            if self.clock.expired:
                self._schedule_completion(0)
        else:
            self.clock.stop()
            self.monitor.rearm()
        if status is not previous:
            logger.info("Session %s is now %s", self.session_id, status.value)
            self._emit_status()

    def apply_record(self, record: ConversationRecord) -> None:
        """Adopt a record changed outside the live session (REST calls)."""
        self._apply_status(record.status, record)

    # Messages ------------------------------------------------------------

    async def add_message(self, content: str, role: str = "user") -> MessageRecord:
        if not self.is_active():
            raise InvalidTransitionError("Messages can only be added to an active session")
        message = await self._lifecycle.add_message(self.session_id, role, content)
        self.messages.append(message)
        self.monitor.record_activity()
        self._emit({"type": SERVER_MESSAGE, "message": message.model_dump(mode="json")})
        self._analyze()
        self._check_alert(self.clock.elapsed_seconds / 60)
        return message

    def _analyze(self, minutes: float | None = None) -> ConversationAnalysis:
        elapsed = self.clock.elapsed_seconds / 60 if minutes is None else minutes
        analysis = self.analyzer.analyze(self.messages, elapsed)
        self._emit({"type": SERVER_ANALYSIS, **analysis.payload()})
        return analysis

    def _check_alert(self, minutes: float) -> None:
        alert = self.analyzer.generate_alert(minutes)
        if alert is not None:
            logger.info("Session %s alert in the %s window", self.session_id, alert.window)
            self._emit({"type": SERVER_ALERT, **alert.payload()})

    # Pause and resume ----------------------------------------------------

    async def pause(self, reason: PauseReason) -> bool:
        if not self.is_active():
            return False
        conversation = self.conversation.model_copy(update={"active_seconds": self.clock.elapsed_seconds})
        return await self.orchestrator.pause(
            reason,
            conversation=conversation,
            user_id=self.user_id,
            messages=self.messages,
        )

    def _on_pause_begin(self, reason: PauseReason) -> None:
        self._pause_reason = reason
        self.clock.stop()

    async def _managed_pause(self) -> bool:
        return await self._lifecycle.pause_session(
            self.conversation,
            self.messages,
            self._pause_reason,
            self.clock.elapsed_seconds,
        )

    def _on_pause_state(self, update: dict[str, Any]) -> None:
        self._apply_status(SessionStatus.PAUSED)
        if not update.get("persisted"):
            logger.warning("Session %s shows as paused but was not persisted", self.session_id)

    def _on_paused(self, session_id: str) -> None:
        logger.info("Session %s paused", session_id)

    async def resume(self) -> ConversationRecord:
        if self.conversation.status is SessionStatus.ACTIVE:
            return self.conversation
        record = await self._lifecycle.resume(self.session_id, self.user_id)
        self._apply_status(SessionStatus.ACTIVE, record)
        self.notifier.notify(
            "Conversation resumed",
            "Pick up where you left off.",
            Severity.SUCCESS,
        )
        return self.conversation

    def handle_before_unload(self) -> str | None:
        prompt = self.monitor.on_before_unload()
        self._emit({"type": SERVER_UNLOAD_PROMPT, "message": prompt})
        return prompt

    async def handle_disconnect(self) -> bool:
        """The socket is gone, so there is no grace period to wait out."""
        if not self.is_active():
            return False
        logger.info("Socket for session %s closed while active", self.session_id)
        return await self.pause(PauseReason.NETWORK)

    # Ending --------------------------------------------------------------

    async def end_session(self, *, manual: bool = True) -> ConversationRecord | None:
        """Complete the session.  Safe to call from the clock and a button at once."""
        async with self._end_lock:
            if self.conversation.status.is_final:
                return self.conversation
            if manual and self.user_message_count < self._settings.min_user_messages_to_end:
                self.notifier.notify(
                    "Keep going a little longer",
                    f"Share at least {self._settings.min_user_messages_to_end} messages before ending the session.",
                    Severity.WARNING,
                )
                return None
            self.clock.stop()
            try:
                record = await self._lifecycle.complete(
                    self.session_id,
                    self.user_id,
                    active_seconds=self.clock.elapsed_seconds,
                    messages=self.messages,
                )
            except LifecycleError as exc:
                logger.error("Could not complete session %s: %s", self.session_id, exc)
                self.notifier.notify(
                    "Could not end the session",
                    "Please try again in a moment.",
                    Severity.ERROR,
                )
                if self.is_active():
                    self.clock.start()
                return None
            self._apply_status(SessionStatus.COMPLETED, record)
            self.notifier.notify(
                "Session complete",
                "Thank you for taking this time for yourself.",
                Severity.SUCCESS,
            )
            self.navigator.redirect_to(self._settings.dashboard_path)
            return self.conversation

    def _schedule_completion(self, delay: float) -> None:
        """Keep trying to complete a session whose time has run out."""
        if self._disposed or (self._completion_task is not None and not self._completion_task.done()):
            return
        self._completion_task = asyncio.create_task(self._complete_expired(delay))

    async def _complete_expired(self, delay: float) -> None:
        while not self._disposed and not self.conversation.status.is_final:
            await asyncio.sleep(delay)
            if self._disposed:
                return
            if await self.end_session(manual=False) is not None:
                return
            delay = self._settings.completion_retry_seconds
            logger.info("Retrying completion of session %s in %ss", self.session_id, delay)

    # Clock hooks ---------------------------------------------------------

    def _on_tick(self, elapsed_seconds: int) -> None:
        self._emit({"type": SERVER_CLOCK, **self.clock.snapshot()})
        interval = self._settings.checkpoint_interval_seconds
        # The final second is written by completion instead.
        if interval > 0 and elapsed_seconds % interval == 0 and self.clock.remaining_seconds > 0:
            task = asyncio.create_task(self._lifecycle.checkpoint(self.session_id, elapsed_seconds))
            self._checkpoints.add(task)
            task.add_done_callback(self._checkpoints.discard)

    def _on_warning(self, remaining_seconds: int) -> None:
        minutes = max(1, remaining_seconds // 60)
        self.notifier.notify(
            "Time almost up",
            f"About {minutes} minute{'s' if minutes != 1 else ''} left in this session.",
            Severity.WARNING,
        )

    async def _on_minute(self, minute: int) -> None:
        if self.messages:
            self._analyze(minute)
        self._check_alert(minute)

    async def _on_time_up(self) -> None:
        logger.info("Session %s reached its maximum duration", self.session_id)
        if await self.end_session(manual=False) is None:
            self._schedule_completion(self._settings.completion_retry_seconds)

    # Plumbing ------------------------------------------------------------

    def _emit(self, event: dict[str, Any]) -> None:
        self.channel.emit(event)

    def _emit_status(self) -> None:
        self._emit(
            {
                "type": SERVER_STATUS,
                "state": self.conversation.status.value,
                "session_id": self.session_id,
            }
        )

    async def wait_idle(self) -> None:
        await self.monitor.wait_for_pauses()
        await self.orchestrator.wait_for_background()
        if self._checkpoints:
            await asyncio.gather(*self._checkpoints, return_exceptions=True)

    def dispose(self) -> None:
        """Cancel every timer.  Pauses already started run to completion."""
        if self._disposed:
            return
        self._disposed = True
        if self._completion_task is not None and self._completion_task is not asyncio.current_task():
            self._completion_task.cancel()
        self.clock.dispose()
        self.monitor.dispose()
        self.orchestrator.dispose()
