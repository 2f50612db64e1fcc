"""Message protocol definitions for the Confide session WebSocket.

The browser reports chat turns and environment signals (page
visibility, connectivity, page lifecycle) and issues explicit pause,
resume, and end commands.  The server answers with state-change events:
status and clock updates, notices, alerts, and the side effects it wants
the browser to carry out (stop audio, navigate away).

The dataclasses document the expected structure of each message.
"""

from dataclasses import dataclass, field
from typing import List, Optional


# Types of events sent by the client
CLIENT_MESSAGE = "client.message"
CLIENT_VISIBILITY = "client.visibility"
CLIENT_NETWORK = "client.network"
CLIENT_PAGE_HIDE = "client.pagehide"
CLIENT_PAGE_SHOW = "client.pageshow"
CLIENT_BEFORE_UNLOAD = "client.beforeunload"
CLIENT_PAUSE = "client.pause"
CLIENT_RESUME = "client.resume"
CLIENT_END = "client.end"

# Types of events sent by the server
SERVER_STATUS = "server.status"
SERVER_CLOCK = "server.clock"
SERVER_MESSAGE = "server.message"
SERVER_NOTICE = "server.notice"
SERVER_ALERT = "server.alert"
SERVER_ANALYSIS = "server.analysis"
SERVER_AUDIO_STOP = "server.audio_stop"
SERVER_REDIRECT = "server.redirect"
SERVER_UNLOAD_PROMPT = "server.unload_prompt"
SERVER_ERROR = "error"


@dataclass
class ClientMessage:
    """A chat turn.  Assistant turns are relayed from the LLM collaborator."""

    content: str
    role: str = "user"


@dataclass
class ClientVisibility:
    """Page visibility change; `state` is `hidden` or `visible`."""

    state: str


@dataclass
class ClientNetwork:
    """Connectivity change reported by the browser."""

    online: bool


@dataclass
class ServerStatus:
    """Session status change (active, paused, completed, terminated)."""

    state: str
    session_id: str


@dataclass
class ServerClock:
    """Elapsed and remaining active time, sent on every tick."""

    elapsed_seconds: int
    remaining_seconds: int
    formatted: str


@dataclass
class ServerNotice:
    """A user-facing toast."""

    title: str
    description: str
    severity: str = "info"


@dataclass
class ServerAlert:
    """A time-based conversational prompt from the progress analyzer."""

    kind: str
    message: str
    window: str


@dataclass
class ServerAnalysis:
    """Latest progress analysis for the session."""

    stage: str
    key_insights: List[str] = field(default_factory=list)
    needs_attention: List[str] = field(default_factory=list)


@dataclass
class ServerRedirect:
    """Navigate the browser away from the live view."""

    path: str


@dataclass
class ServerUnloadPrompt:
    """Confirmation text for the browser's unload dialog."""

    message: Optional[str]


@dataclass
class ServerError:
    """Represents an error message to the client."""

    message: str
