"""Elapsed-time tracking for an active live session."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable


logger = logging.getLogger("confide")


def format_time(seconds: int) -> str:
    minutes, secs = divmod(max(0, int(seconds)), 60)
    return f"{minutes:02d}:{secs:02d}"


class SessionClock:
    """Counts active seconds and fires the warning and time-up boundaries.

    The clock owns its ticking task.  `tick()` is a no-op unless the
    session is active, and the time-up callback fires at most once.
    """

    def __init__(
        self,
        *,
        max_duration_seconds: int,
        warning_offset_seconds: int,
        is_active: Callable[[], bool],
        on_time_up: Callable[[], Awaitable[Any]],
        on_warning: Callable[[int], Any] | None = None,
        on_tick: Callable[[int], Any] | None = None,
        on_minute: Callable[[int], Awaitable[Any]] | None = None,
        elapsed_seconds: int = 0,
        tick_interval: float = 1.0,
    ) -> None:
        self.max_duration_seconds = max_duration_seconds
        self.warning_seconds = max(0, max_duration_seconds - warning_offset_seconds)
        self.elapsed_seconds = elapsed_seconds
        self.tick_interval = tick_interval
        self._is_active = is_active
        self._on_time_up = on_time_up
        self._on_warning = on_warning
        self._on_tick = on_tick
        self._on_minute = on_minute
        # A resumed session that already crossed the threshold was warned before.
        self.warned = elapsed_seconds >= self.warning_seconds
        self.expired = elapsed_seconds >= max_duration_seconds
        self._task: asyncio.Task[None] | None = None
        self._disposed = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def remaining_seconds(self) -> int:
        return max(0, self.max_duration_seconds - self.elapsed_seconds)

    @property
    def minutes_elapsed(self) -> int:
        return self.elapsed_seconds // 60

    def snapshot(self) -> dict:
        return {
            "elapsed_seconds": self.elapsed_seconds,
            "remaining_seconds": self.remaining_seconds,
            "formatted": format_time(self.elapsed_seconds),
            "formatted_remaining": format_time(self.remaining_seconds),
            "progress_percentage": round(self.elapsed_seconds / self.max_duration_seconds * 100, 2)
            if self.max_duration_seconds
            else 100.0,
        }

    def advance_to(self, elapsed_seconds: int) -> None:
        """Move the clock forward to time counted elsewhere.  Never goes back."""
        if elapsed_seconds <= self.elapsed_seconds:
            return
        self.elapsed_seconds = elapsed_seconds
        self.warned = self.warned or elapsed_seconds >= self.warning_seconds
        if elapsed_seconds >= self.max_duration_seconds:
            self.expired = True
            self.stop()

    def start(self) -> None:
        if self._disposed or self.expired or self.running:
            return
        self._task = asyncio.create_task(self._run())

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def dispose(self) -> None:
        self._disposed = True
        self.stop()

    async def _run(self) -> None:
        try:
            while not self.expired:
                await asyncio.sleep(self.tick_interval)
                await self.tick()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Session clock stopped after a tick failure: %s", exc)

    async def tick(self) -> bool:
        """Advance one second.  Returns False when nothing happened."""
        if self.expired or not self._is_active():
            return False
        self.elapsed_seconds += 1
        if self._on_tick is not None:
            self._on_tick(self.elapsed_seconds)

        if not self.warned and self.elapsed_seconds >= self.warning_seconds:
            self.warned = True
            if self._on_warning is not None:
                self._on_warning(self.remaining_seconds)

        if self.elapsed_seconds >= self.max_duration_seconds:
            self.expired = True
            self.stop()
            # Completion runs to the end even if the clock task is cancelled.
            await asyncio.shield(self._on_time_up())
            return True

        if self._on_minute is not None and self.elapsed_seconds % 60 == 0:
            await self._on_minute(self.minutes_elapsed)
        return True
