"""
Idle handling for voice client sessions.

Two mechanisms pause a session that has seen no activity for the idle
window:
- a per-session timer, re-armed on every touch, that fires once per window
- a periodic sweep over all sessions, bounding staleness to the sweep interval
  even if a timer was cancelled or never scheduled

Pausing is invisible on the wire; it only flips the store's paused flag and
notifies registered callbacks.
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional

from logging_setup import get_logger, Component
from .session import SessionStore


logger = get_logger(Component.IDLE_SCHEDULER)

SessionCallback = Callable[[str], None]


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class IdleScheduler:
    """Pauses idle sessions in a SessionStore."""

    def __init__(
        self,
        store: SessionStore,
        *,
        idle_timeout_seconds: float = 300,
        sweep_interval_seconds: float = 30,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.store = store
        self.idle_timeout_seconds = idle_timeout_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._sleep = sleep
        self._timers: Dict[str, asyncio.Task] = {}
        self._sweep_task: Optional[asyncio.Task] = None
        self._on_pause: List[SessionCallback] = []
        self._on_resume: List[SessionCallback] = []
        store.attach_scheduler(self)

    def on_pause(self, callback: SessionCallback) -> None:
        self._on_pause.append(callback)

    def on_resume(self, callback: SessionCallback) -> None:
        self._on_resume.append(callback)

    # --- sweep lifecycle ---

    def start(self) -> None:
        """Start the periodic sweep. Requires a running event loop."""
        if self._sweep_task is None:
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())
            logger.info(
                "Idle sweep started",
                idle_timeout_seconds=self.idle_timeout_seconds,
                sweep_interval_seconds=self.sweep_interval_seconds,
            )

    async def stop(self) -> None:
        """Stop the sweep and cancel every per-session timer."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
            logger.info("Idle sweep stopped")

        for session_id in list(self._timers):
            self.cancel(session_id)

    @property
    def running(self) -> bool:
        return self._sweep_task is not None

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await self._sleep(self.sweep_interval_seconds)
                self.sweep_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception("Error in idle sweep", error=str(e))

    def sweep_once(self) -> List[str]:
        """Pause every active session idle for at least the window. Returns paused ids."""
        paused = []
        for session in self.store.list_sessions():
            session_id = session.session_id
            if self.store.is_paused(session_id):
                continue
            if self.store.idle_seconds(session_id) >= self.idle_timeout_seconds:
                if self.pause(session_id, reason="sweep"):
                    paused.append(session_id)
        if paused:
            logger.info("Idle sweep paused sessions", count=len(paused))
        return paused

    # --- per-session timers ---

    def arm(self, session_id: str) -> None:
        """(Re)start the idle timer for a session."""
        self.cancel(session_id)

        async def _timer():
            delay = self.idle_timeout_seconds
            while True:
                await self._sleep(delay)
                if session_id not in self.store or self.store.is_paused(session_id):
                    self._timers.pop(session_id, None)
                    return
                idle = self.store.idle_seconds(session_id)
                if idle >= self.idle_timeout_seconds:
                    self._timers.pop(session_id, None)
                    self.pause(session_id, reason="timer")
                    return
                # Activity happened without a re-arm; wait out the remainder.
                delay = self.idle_timeout_seconds - idle

        # Only schedule when an event loop is running (sync callers rely on the sweep).
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._timers[session_id] = loop.create_task(_timer())

    def cancel(self, session_id: str) -> None:
        task = self._timers.pop(session_id, None)
        if task is not None and task is not _current_task():
            task.cancel()

    def has_timer(self, session_id: str) -> bool:
        return session_id in self._timers

    # --- transitions ---

    def pause(self, session_id: str, *, reason: str = "idle") -> bool:
        """Mark a session paused, cancel its timer and notify callbacks."""
        if not self.store.mark_paused(session_id):
            return False
        self.cancel(session_id)
        logger.info(
            "Session paused",
            session_id=session_id,
            reason=reason,
            idle_timeout_seconds=self.idle_timeout_seconds,
        )
        self._notify(self._on_pause, session_id, "pause")
        return True

    def notify_resumed(self, session_id: str) -> None:
        self._notify(self._on_resume, session_id, "resume")

    def _notify(self, callbacks: List[SessionCallback], session_id: str, kind: str) -> None:
        for callback in callbacks:
            try:
                callback(session_id)
            except Exception as e:
                # Listener failures must not break idle bookkeeping.
                logger.exception(
                    "Session callback failed",
                    session_id=session_id,
                    kind=kind,
                    error=str(e),
                    error_type=type(e).__name__,
                )
