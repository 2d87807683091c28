"""
Type definitions for koe.

Agent events, synthesis/playback states, and the outbound event union.
Everything that crosses a module boundary is declared here.
"""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, List, Optional


# =============================================================================
# AGENT EVENTS (upstream)
# =============================================================================

class AgentEventKind(Enum):
    """Closed set of upstream agent event kinds."""
    MODEL_STREAM = auto()   # on_chat_model_stream
    TOOL_START = auto()     # on_tool_start
    TOOL_END = auto()       # on_tool_end
    CHAIN_END = auto()      # on_chain_end
    ERROR = auto()          # error
    OTHER = auto()          # any other named event


EVENT_NAMES = {
    "on_chat_model_stream": AgentEventKind.MODEL_STREAM,
    "on_tool_start": AgentEventKind.TOOL_START,
    "on_tool_end": AgentEventKind.TOOL_END,
    "on_chain_end": AgentEventKind.CHAIN_END,
    "error": AgentEventKind.ERROR,
}


@dataclass(frozen=True)
class AgentEvent:
    """
    One decoded frame from the agent completion stream.

    `payload` is the original object, kept verbatim for forwarding.
    `tool_calls` / `retrieval_calls` are already normalized -- downstream
    code never looks at the legacy field names.
    """
    kind: AgentEventKind
    name: str
    payload: Dict[str, Any]
    text_delta: Optional[str] = None
    tool_calls: Optional[List[Any]] = None
    retrieval_calls: Optional[List[Any]] = None


# =============================================================================
# OUTBOUND EVENTS (server -> client)
# =============================================================================

class OutboundType:
    """Values of the `type` tag on outbound events."""
    TEXT = "text"
    TEXT_DONE = "text_done"
    AUDIO = "audio"
    AUDIO_DONE = "audio_done"
    ERROR = "error"


# Outbound events are plain dicts so passthrough fields survive untouched.
OutboundEvent = Dict[str, Any]


def text_done_event() -> OutboundEvent:
    return {"type": OutboundType.TEXT_DONE}


def audio_event(audio_base64: str) -> OutboundEvent:
    return {"type": OutboundType.AUDIO, "data": audio_base64}


def audio_done_event() -> OutboundEvent:
    return {"type": OutboundType.AUDIO_DONE}


def error_event(message: str) -> OutboundEvent:
    return {"type": OutboundType.ERROR, "data": message}


# =============================================================================
# SYNTHESIS SESSION
# =============================================================================

class SessionState(Enum):
    """Lifecycle of one speech-synthesis socket."""
    UNINITIALIZED = auto()
    CONNECTING = auto()
    READY = auto()
    DRAINING = auto()     # final chunk + close signal sent, awaiting isFinal
    CLOSED = auto()


# =============================================================================
# TEXT BUFFER
# =============================================================================

@dataclass
class TextBuffer:
    """
    Per-request text accounting.

    full_transcript == flushed + pending at all times.
    """
    full_transcript: str = ""
    pending: str = ""
    flushed: str = ""

    def append(self, delta: str) -> None:
        self.full_transcript += delta
        self.pending += delta

    def consume(self, count: int) -> str:
        """Slice `count` characters off the front of pending."""
        chunk = self.pending[:count]
        self.pending = self.pending[count:]
        self.flushed += chunk
        return chunk

    def consume_all(self) -> str:
        return self.consume(len(self.pending))


# =============================================================================
# PLAYBACK (client)
# =============================================================================

class PlaybackState(Enum):
    """Client-side playback buffer lifecycle."""
    UNATTACHED = auto()
    BUFFER_OPEN = auto()
    APPENDING = auto()
    IDLE = auto()
    ENDED = auto()


# =============================================================================
# REQUESTS
# =============================================================================

@dataclass(frozen=True)
class TurnRequest:
    """Validated inbound request for one chat turn."""
    agent_id: str
    session_id: str
    prompt: str
    voice_id: Optional[str] = None
    cookies: str = ""


@dataclass
class ChatMessage:
    """Client-side view of one assistant reply, built from outbound events."""
    content: str = ""
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    retrieval_calls: List[Any] = field(default_factory=list)
    current_tool: str = ""
    error: Optional[str] = None
    text_done: bool = False
    audio_done: bool = False
    audio_chunks: int = 0
