"""
Session store for voice client sessions.

Owns every Session plus the auxiliary paused / turn-in-flight bookkeeping.
All mutation happens on the event loop thread; there is no suspension point
inside any method here, so each operation is atomic relative to other
coroutines.
"""
import itertools
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Set

from logging_setup import get_logger, Component
from .errors import SessionBusyError, SessionNotFoundError

if TYPE_CHECKING:
    from .idle import IdleScheduler


logger = get_logger(Component.SESSION_STORE)

_BASE36 = string.digits + string.ascii_lowercase


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_session_id() -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"voice-{int(time.time() * 1000)}-{suffix}"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Message:
    """One entry of a session's history. Never mutated after creation."""

    id: str
    role: Role
    content: str
    created_at: datetime


@dataclass
class Session:
    """A voice client conversation."""

    session_id: str
    profile: str
    created_at: datetime
    last_activity: datetime
    messages: List[Message] = field(default_factory=list)

    def __post_init__(self):
        if not self.session_id:
            raise ValueError("session_id is required")
        if not self.profile:
            raise ValueError("profile is required")

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def history(self) -> List[Dict[str, str]]:
        """Ordered role/content pairs for the agent."""
        return [{"role": m.role.value, "content": m.content} for m in self.messages]


class SessionStore:
    """
    In-memory registry of sessions keyed by identifier.

    The optional IdleScheduler is notified whenever a session's idle clock
    restarts or the session goes away; the store itself never sleeps.
    """

    def __init__(
        self,
        *,
        now: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = _new_session_id,
    ):
        self._now = now
        self._id_factory = id_factory
        self._sessions: Dict[str, Session] = {}
        self._paused: Set[str] = set()
        self._turns_in_flight: Dict[str, int] = {}
        self._turn_seq = itertools.count(1)
        self._message_seq = itertools.count(1)
        self._scheduler: Optional["IdleScheduler"] = None

    def attach_scheduler(self, scheduler: "IdleScheduler") -> None:
        self._scheduler = scheduler

    def now(self) -> datetime:
        return self._now()

    # --- lifecycle ---

    def create(self, profile: str) -> Session:
        """Create a new session with an empty history and arm its idle timer."""
        session_id = self._id_factory()
        while session_id in self._sessions:
            session_id = self._id_factory()

        now = self._now()
        session = Session(
            session_id=session_id,
            profile=profile,
            created_at=now,
            last_activity=now,
        )
        self._sessions[session_id] = session

        if self._scheduler is not None:
            self._scheduler.arm(session_id)

        logger.info(
            "Session created",
            session_id=session_id,
            profile=profile,
            total_sessions=len(self._sessions),
        )
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list_sessions(self) -> List[Session]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def clear(self, session_id: str) -> bool:
        """Remove a session and all bookkeeping. Returns False if unknown."""
        if self._scheduler is not None:
            self._scheduler.cancel(session_id)
        self._paused.discard(session_id)
        self._turns_in_flight.pop(session_id, None)
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        logger.info(
            "Session cleared",
            session_id=session_id,
            total_sessions=len(self._sessions),
        )
        return True

    def clear_all(self) -> None:
        for session_id in list(self._sessions):
            self.clear(session_id)

    # --- activity / idle bookkeeping ---

    def is_paused(self, session_id: str) -> bool:
        return session_id in self._paused

    def idle_seconds(self, session_id: str) -> float:
        session = self.require(session_id)
        return (self._now() - session.last_activity).total_seconds()

    def touch(self, session_id: str) -> None:
        """Refresh lastActivity and restart the idle timer."""
        session = self.require(session_id)
        session.last_activity = self._now()
        if self._scheduler is not None:
            self._scheduler.arm(session_id)

    def resume_if_paused(self, session_id: str) -> bool:
        """
        Clear the paused flag if set. Returns True if the session was paused.

        On an active session this only refreshes lastActivity.
        """
        session = self.require(session_id)
        session.last_activity = self._now()
        if session_id not in self._paused:
            return False

        self._paused.discard(session_id)
        logger.info("Session resumed", session_id=session_id)
        if self._scheduler is not None:
            self._scheduler.arm(session_id)
            self._scheduler.notify_resumed(session_id)
        return True

    def mark_paused(self, session_id: str) -> bool:
        """Set the paused flag. Returns False if unknown or already paused."""
        if session_id not in self._sessions or session_id in self._paused:
            return False
        self._paused.add(session_id)
        return True

    # --- history ---

    def add_message(self, session_id: str, role: Role, content: str) -> Message:
        """Append to history; resumes a paused session."""
        session = self.require(session_id)
        self.resume_if_paused(session_id)

        now = self._now()
        message = Message(
            id=f"msg-{int(now.timestamp() * 1000)}-{role.value}-{next(self._message_seq)}",
            role=role,
            content=content,
            created_at=now,
        )
        session.messages.append(message)
        self.touch(session_id)
        return message

    def history(self, session_id: str) -> List[Dict[str, str]]:
        session = self._sessions.get(session_id)
        return session.history() if session else []

    # --- turn guard ---

    def begin_turn(self, session_id: str) -> int:
        """
        Claim the session for one turn and return its sequence number.

        Raises SessionBusyError if a turn is already streaming.
        """
        self.require(session_id)
        if session_id in self._turns_in_flight:
            raise SessionBusyError(session_id)
        seq = next(self._turn_seq)
        self._turns_in_flight[session_id] = seq
        return seq

    def end_turn(self, session_id: str, seq: Optional[int] = None) -> None:
        """Release the claim. With `seq`, only that turn's claim is released."""
        if seq is not None and self._turns_in_flight.get(session_id) != seq:
            return
        self._turns_in_flight.pop(session_id, None)

    def turn_in_flight(self, session_id: str) -> bool:
        return session_id in self._turns_in_flight
