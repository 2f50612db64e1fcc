"""Process-wide index of connected live sessions.

One registry is created at startup and stored on `app.state`.  The REST
pause endpoint looks sessions up here so that a pause requested over
HTTP goes through the same orchestrator lock as one raised by the
browser.
"""

from __future__ import annotations

import asyncio
import logging

from .records import PauseReason
from .session import LiveSession


logger = logging.getLogger("confide")


class LiveSessionRegistry:
    def __init__(self) -> None:
        self._sessions: dict[str, LiveSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> LiveSession | None:
        return self._sessions.get(str(session_id))

    def register(self, live: LiveSession) -> None:
        """Track `live`, replacing any older connection for the same session."""
        previous = self._sessions.get(live.session_id)
        if previous is not None and previous is not live:
            logger.info("Session %s reconnected; retiring the previous connection", live.session_id)
            live.adopt_elapsed(previous.clock.elapsed_seconds)
            previous.dispose()
            previous.channel.close()
        self._sessions[live.session_id] = live

    def unregister(self, live: LiveSession) -> None:
        if self._sessions.get(live.session_id) is live:
            del self._sessions[live.session_id]

    async def pause(self, session_id: str, reason: PauseReason = PauseReason.MANUAL) -> bool | None:
        """Pause a connected session.  Returns None when it is not connected."""
        live = self.get(session_id)
        if live is None:
            return None
        return await live.pause(reason)

    async def close_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for live in sessions:
            await live.handle_disconnect()
            live.dispose()
            live.channel.close()
        if sessions:
            await asyncio.gather(*(live.wait_idle() for live in sessions), return_exceptions=True)
