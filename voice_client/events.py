"""
Wire protocol for the audio turn response.

Each event is framed Server-Sent-Events style:

    event: <user|openclaw|system>
    data: <JSON object>
    <blank line>

Exactly one terminal system event (done, error or empty_transcription)
closes a turn's stream; EventEmitter refuses to write anything after it.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field


SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class SystemStatus(str, Enum):
    TRANSCRIBING = "transcribing"
    TYPING = "typing"
    DONE = "done"
    ERROR = "error"
    EMPTY_TRANSCRIPTION = "empty_transcription"


TERMINAL_STATUSES = frozenset({
    SystemStatus.DONE,
    SystemStatus.ERROR,
    SystemStatus.EMPTY_TRANSCRIPTION,
})


class UserEvent(BaseModel):
    """Final transcript of the submitted audio."""

    type: Literal["user"] = "user"
    text: str
    confidence: float = Field(ge=0.0, le=1.0)
    timestamp: str = Field(default_factory=_timestamp)


class OpenClawEvent(BaseModel):
    """A delta of the agent's reply; done=True marks the end of the reply."""

    type: Literal["openclaw"] = "openclaw"
    text: str
    done: bool = False
    timestamp: str = Field(default_factory=_timestamp)


class SystemEvent(BaseModel):
    type: Literal["system"] = "system"
    status: SystemStatus
    message: Optional[str] = None
    timestamp: str = Field(default_factory=_timestamp)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


VoiceEvent = Union[UserEvent, OpenClawEvent, SystemEvent]


def format_sse(event: VoiceEvent) -> str:
    """Format a VoiceEvent as 'event: <type>\\ndata: <json>\\n\\n'."""
    return f"event: {event.type}\ndata: {event.model_dump_json(exclude_none=True)}\n\n"


class StreamClosedError(RuntimeError):
    """Raised when writing after the terminal event."""


class EventEmitter:
    """
    Serializes one turn's events in order and enforces the termination contract.

    The emitter does no I/O; callers yield the returned frames to the
    response body.
    """

    def __init__(self):
        self.events: list[VoiceEvent] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: VoiceEvent) -> str:
        if self._closed:
            raise StreamClosedError(f"stream already terminated; dropped {event.type} event")
        self.events.append(event)
        if isinstance(event, SystemEvent) and event.is_terminal:
            self._closed = True
        return format_sse(event)

    def system(self, status: SystemStatus, message: Optional[str] = None) -> str:
        return self.emit(SystemEvent(status=status, message=message))

    def user(self, text: str, confidence: float) -> str:
        return self.emit(UserEvent(text=text, confidence=confidence))

    def delta(self, text: str, done: bool = False) -> str:
        return self.emit(OpenClawEvent(text=text, done=done))
