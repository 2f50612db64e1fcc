"""Environmental interruption detection for live sessions.

Each trigger type (visibility, network, page lifecycle) runs its own
armed -> pending -> fired cycle.  A trigger only turns into a pause after
its grace period elapses without a recovery signal.  Duplicate pauses
from concurrent triggers are collapsed by the orchestrator's lock, not
here.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping

from .collaborators import AudioController, Notifier, Severity
from .records import PauseReason


logger = logging.getLogger("confide")

UNLOAD_PROMPT = "You have an active conversation. Are you sure you want to leave?"


class Trigger(str, Enum):
    VISIBILITY = "visibility"
    NETWORK = "network"
    PAGE_LIFECYCLE = "page_lifecycle"
    INACTIVITY = "inactivity"


class TriggerState(str, Enum):
    ARMED = "armed"
    PENDING = "pending"
    FIRED = "fired"


TRIGGER_REASONS: dict[Trigger, PauseReason] = {
    Trigger.VISIBILITY: PauseReason.VISIBILITY,
    Trigger.NETWORK: PauseReason.NETWORK,
    Trigger.PAGE_LIFECYCLE: PauseReason.AUTO,
    Trigger.INACTIVITY: PauseReason.AUTO,
}

PENDING_NOTICES: dict[Trigger, tuple[str, str]] = {
    Trigger.NETWORK: (
        "Connection lost",
        "Your session will pause in a few seconds unless the connection comes back.",
    ),
}

RECOVERY_NOTICES: dict[Trigger, tuple[str, str]] = {
    Trigger.VISIBILITY: ("Welcome back", "Your conversation continues where you left it."),
    Trigger.NETWORK: ("Back online", "The connection is restored. Your conversation continues."),
    Trigger.PAGE_LIFECYCLE: ("Welcome back", "Your conversation continues where you left it."),
}


class ActivityMonitor:
    """Turns browser signals into pause decisions."""

    def __init__(
        self,
        *,
        pause: Callable[[PauseReason], Awaitable[bool]],
        is_active: Callable[[], bool],
        has_history: Callable[[], bool],
        audio: AudioController,
        notifier: Notifier,
        grace_period_seconds: float = 5.0,
        grace_overrides: Mapping[Trigger, float | None] | None = None,
        inactivity_timeout_seconds: float | None = None,
    ) -> None:
        self._pause = pause
        self._is_active = is_active
        self._has_history = has_history
        self._audio = audio
        self._notifier = notifier
        self.grace_periods: dict[Trigger, float] = {
            trigger: grace_period_seconds
            for trigger in (Trigger.VISIBILITY, Trigger.NETWORK, Trigger.PAGE_LIFECYCLE)
        }
        for trigger, value in (grace_overrides or {}).items():
            if value is not None:
                self.grace_periods[trigger] = value
        self.inactivity_timeout_seconds = inactivity_timeout_seconds

        self.states: dict[Trigger, TriggerState] = {trigger: TriggerState.ARMED for trigger in Trigger}
        self._timers: dict[Trigger, asyncio.Task[None]] = {}
        self._in_flight: set[asyncio.Task[Any]] = set()
        self._disposed = False

    # Signals -------------------------------------------------------------

    def on_visibility(self, hidden: bool) -> None:
        if hidden:
            self._trigger(Trigger.VISIBILITY)
        else:
            self._recover(Trigger.VISIBILITY)

    def on_network(self, online: bool) -> None:
        if online:
            self._recover(Trigger.NETWORK)
        else:
            self._trigger(Trigger.NETWORK)

    def on_page_hide(self) -> None:
        self._trigger(Trigger.PAGE_LIFECYCLE)

    def on_page_show(self) -> None:
        self._recover(Trigger.PAGE_LIFECYCLE)

    def on_before_unload(self) -> str | None:
        """Best-effort pause with no grace period.

        The synchronous part (audio stop, prompt text) happens first since
        the page may close before the asynchronous pause completes.
        """
        if self._disposed or not self._is_active():
            return None
        try:
            self._audio.stop_all_playback()
        except Exception as exc:
            logger.warning("Stopping audio on unload failed: %s", exc)
        self._cancel_timer(Trigger.PAGE_LIFECYCLE)
        self.states[Trigger.PAGE_LIFECYCLE] = TriggerState.FIRED
        self._launch_pause(Trigger.PAGE_LIFECYCLE)
        return UNLOAD_PROMPT if self._has_history() else None

    def record_activity(self) -> None:
        """Restart the inactivity countdown."""
        if self._disposed or self.inactivity_timeout_seconds is None:
            return
        self._cancel_timer(Trigger.INACTIVITY)
        self.states[Trigger.INACTIVITY] = TriggerState.ARMED
        if not self._is_active():
            return
        self.states[Trigger.INACTIVITY] = TriggerState.PENDING
        self._timers[Trigger.INACTIVITY] = asyncio.create_task(
            self._fire_after(Trigger.INACTIVITY, self.inactivity_timeout_seconds)
        )

    # State machine -------------------------------------------------------

    def _trigger(self, trigger: Trigger) -> None:
        if self._disposed or not self._is_active():
            return
        if self.states[trigger] is not TriggerState.ARMED:
            return
        delay = self.grace_periods[trigger]
        self.states[trigger] = TriggerState.PENDING
        logger.info("%s trigger pending; pausing in %.1fs unless it recovers", trigger.value, delay)
        notice = PENDING_NOTICES.get(trigger)
        if notice is not None:
            self._notify(*notice, Severity.WARNING)
        self._timers[trigger] = asyncio.create_task(self._fire_after(trigger, delay))

    def _recover(self, trigger: Trigger) -> None:
        if self.states[trigger] is not TriggerState.PENDING:
            return
        self._cancel_timer(trigger)
        self.states[trigger] = TriggerState.ARMED
        logger.info("%s trigger recovered before its grace period ended", trigger.value)
        notice = RECOVERY_NOTICES.get(trigger)
        if notice is not None:
            self._notify(*notice, Severity.SUCCESS)

    async def _fire_after(self, trigger: Trigger, delay: float) -> None:
        await asyncio.sleep(delay)
        self._timers.pop(trigger, None)
        if self._disposed or not self._is_active():
            self.states[trigger] = TriggerState.ARMED
            return
        self.states[trigger] = TriggerState.FIRED
        logger.info("%s trigger fired; requesting %s pause", trigger.value, TRIGGER_REASONS[trigger].value)
        self._launch_pause(trigger)

    def _launch_pause(self, trigger: Trigger) -> None:
        # Started pauses are never cancelled by dispose(), so data is not lost.
        task = asyncio.get_running_loop().create_task(self._run_pause(trigger))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _run_pause(self, trigger: Trigger) -> None:
        try:
            await self._pause(TRIGGER_REASONS[trigger])
        except Exception as exc:
            logger.exception("%s pause failed: %s", trigger.value, exc)
        finally:
            if not self._is_active():
                self.states[trigger] = TriggerState.ARMED

    def rearm(self) -> None:
        """Return every trigger to armed, e.g. after a status change."""
        for trigger in list(self._timers):
            self._cancel_timer(trigger)
        for trigger in Trigger:
            self.states[trigger] = TriggerState.ARMED

    def _cancel_timer(self, trigger: Trigger) -> None:
        timer = self._timers.pop(trigger, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    def _notify(self, title: str, description: str, severity: Severity) -> None:
        try:
            self._notifier.notify(title, description, severity)
        except Exception as exc:
            logger.warning("Monitor notice could not be delivered: %s", exc)

    async def wait_for_pauses(self) -> None:
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    def dispose(self) -> None:
        self._disposed = True
        for trigger in list(self._timers):
            self._cancel_timer(trigger)
