"""Collaborator interfaces used by the live session components.

The production implementations push events onto an `EventChannel` that
the websocket endpoint drains towards the browser, which owns the actual
audio playback, routing, and toast rendering.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

from .protocol import (
    SERVER_AUDIO_STOP,
    SERVER_NOTICE,
    SERVER_REDIRECT,
)


logger = logging.getLogger("confide")


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class AudioController(Protocol):
    def stop_all_playback(self) -> None: ...


class Navigator(Protocol):
    @property
    def current_path(self) -> str: ...

    def redirect_to(self, path: str) -> None: ...


class Notifier(Protocol):
    def notify(self, title: str, description: str, severity: Severity = Severity.INFO) -> None: ...


ManagedPause = Callable[[], Awaitable[bool]]


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class EventChannel:
    """Single-consumer queue of server events for one live connection."""

    def __init__(self) -> None:
        self._events: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: dict[str, Any]) -> None:
        if self._closed:
            logger.debug("Dropping %s event on a closed channel", event.get("type"))
            return
        self._events.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._events.put_nowait(None)

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event


class ChannelAudio:
    """Asks the browser to halt all speech output."""

    def __init__(self, channel: EventChannel) -> None:
        self._channel = channel

    def stop_all_playback(self) -> None:
        self._channel.emit({"type": SERVER_AUDIO_STOP})


class ChannelNavigator:
    def __init__(self, channel: EventChannel, current_path: str = "/conversation") -> None:
        self._channel = channel
        self._current_path = current_path

    @property
    def current_path(self) -> str:
        return self._current_path

    def redirect_to(self, path: str) -> None:
        self._current_path = path
        self._channel.emit({"type": SERVER_REDIRECT, "path": path})


class ChannelNotifier:
    def __init__(self, channel: EventChannel) -> None:
        self._channel = channel

    def notify(self, title: str, description: str, severity: Severity = Severity.INFO) -> None:
        self._channel.emit(
            {
                "type": SERVER_NOTICE,
                "title": title,
                "description": description,
                "severity": Severity(severity).value,
            }
        )
