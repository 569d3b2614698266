"""
Turn orchestration: audio in, streamed reply out.

    Validating -> Transcribing -> (EmptyTranscription | Typing) -> Streaming -> (Done | Error)

Validation and body buffering happen before any byte of the response is
written, so their failures surface as plain HTTP errors (see errors.py).
Everything after that is reported in-band: the event stream always ends with
exactly one terminal system event.

The orchestrator never keeps a Session object across an await; it goes back
to the store by session id after every suspension point.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Optional

from logging_setup import get_logger, Component
from .agent import FALLBACK_REPLY, Agent, AgentRequest, AgentResult
from .config import VoiceClientConfig
from .delta import DeltaTracker
from .errors import (
    AudioTooLargeError,
    ProfileNotAllowedError,
    ProfileRequiredError,
    SessionIdRequiredError,
)
from .events import EventEmitter, SystemStatus
from .session import Role, SessionStore
from .transcription import Transcriber


logger = get_logger(Component.TURN)

EMPTY_TRANSCRIPTION_REPLY = "I didn't catch that. Could you try again?"

# Snapshots buffered between the agent callback and the stream writer.
PARTIAL_QUEUE_SIZE = 64

_END = object()


@dataclass(frozen=True)
class TurnContext:
    """A validated turn, holding the session's turn claim until released."""

    session_id: str
    profile: str
    session_key: str
    seq: int


async def read_limited(
    chunks: AsyncIterable[bytes],
    max_bytes: int,
    declared_length: Optional[int] = None,
) -> bytes:
    """
    Buffer a request body, refusing anything over `max_bytes`.

    A Content-Length over the limit is rejected before reading.
    """
    if declared_length is not None and declared_length > max_bytes:
        raise AudioTooLargeError(max_bytes)

    parts = []
    total = 0
    async for chunk in chunks:
        total += len(chunk)
        if total > max_bytes:
            raise AudioTooLargeError(max_bytes)
        parts.append(chunk)
    return b"".join(parts)


def _clamp_confidence(value: float) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    return min(1.0, max(0.0, value))


class TurnOrchestrator:
    """Drives one audio turn against one session."""

    def __init__(
        self,
        store: SessionStore,
        transcriber: Transcriber,
        agent: Agent,
        config: VoiceClientConfig,
    ):
        self.store = store
        self.transcriber = transcriber
        self.agent = agent
        self.config = config

    # --- Validating ---

    def begin(
        self,
        profile: Optional[str],
        session_id: Optional[str],
        session_key_header: Optional[str] = None,
    ) -> TurnContext:
        """
        Validate a turn request and claim the session.

        Raises the pre-stream errors in the order the client should see them:
        missing profile, forbidden profile, missing session id, unknown
        session, turn already in flight.
        """
        if not profile:
            raise ProfileRequiredError()
        if not self.config.is_profile_allowed(profile):
            raise ProfileNotAllowedError(profile)
        if not session_id:
            raise SessionIdRequiredError()

        self.store.require(session_id)
        seq = self.store.begin_turn(session_id)
        self.store.resume_if_paused(session_id)

        return TurnContext(
            session_id=session_id,
            profile=profile,
            session_key=self.config.resolve_session_key(profile, session_key_header),
            seq=seq,
        )

    def release(self, ctx: TurnContext) -> None:
        self.store.end_turn(ctx.session_id, ctx.seq)

    async def read_audio(
        self,
        ctx: TurnContext,
        chunks: AsyncIterable[bytes],
        declared_length: Optional[int] = None,
    ) -> bytes:
        try:
            audio = await read_limited(chunks, self.config.max_audio_bytes, declared_length)
        except AudioTooLargeError:
            logger.warning(
                "Audio rejected: too large",
                session_id=ctx.session_id,
                turn=ctx.seq,
                max_bytes=self.config.max_audio_bytes,
            )
            self.release(ctx)
            raise
        except BaseException:
            self.release(ctx)
            raise
        logger.info(
            "Audio received",
            session_id=ctx.session_id,
            turn=ctx.seq,
            profile=ctx.profile,
            audio_bytes=len(audio),
        )
        return audio

    # --- Transcribing .. Done | Error ---

    async def stream(self, ctx: TurnContext, audio: bytes) -> AsyncIterator[str]:
        """
        Run the turn and yield SSE frames.

        Releases the session's turn claim when the stream ends, including
        when the client disconnects and the generator is closed early.
        """
        turn_logger = logger.with_session(ctx.session_id)
        emitter = EventEmitter()
        agent_task: Optional[asyncio.Task] = None
        start_ts = time.time()
        outcome = "cancelled"

        try:
            yield emitter.system(SystemStatus.TRANSCRIBING)

            try:
                transcription = await self.transcriber.transcribe(audio, ctx.profile)
            except Exception as e:
                outcome = "transcription_error"
                turn_logger.error(
                    "Transcription failed",
                    turn=ctx.seq,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                yield emitter.system(SystemStatus.ERROR, str(e) or "Transcription failed")
                return

            text = (transcription.text or "").strip()
            confidence = _clamp_confidence(transcription.confidence)
            if ctx.session_id in self.store:
                self.store.touch(ctx.session_id)
            turn_logger.info(
                "Transcription received",
                turn=ctx.seq,
                text_length=len(text),
                confidence=round(confidence, 3),
                latency_ms=int((time.time() - start_ts) * 1000),
            )
            yield emitter.user(text, confidence)

            if not text:
                outcome = "empty_transcription"
                yield emitter.system(SystemStatus.EMPTY_TRANSCRIPTION, EMPTY_TRANSCRIPTION_REPLY)
                return

            history = self.store.history(ctx.session_id)
            self.store.add_message(ctx.session_id, Role.USER, text)
            yield emitter.system(SystemStatus.TYPING)

            # Streaming: agent snapshots flow through a bounded queue into the tracker.
            tracker = DeltaTracker()
            partials: asyncio.Queue = asyncio.Queue(maxsize=PARTIAL_QUEUE_SIZE)

            def offer(item) -> None:
                # Snapshots are cumulative, so the newest supersedes the oldest.
                if partials.full():
                    partials.get_nowait()
                partials.put_nowait(item)

            def on_partial(snapshot: str) -> None:
                offer(snapshot)

            async def run_agent() -> AgentResult:
                try:
                    return await self.agent.respond(
                        AgentRequest(
                            prompt=text,
                            session_id=ctx.session_id,
                            profile=ctx.profile,
                            history=history,
                            session_key=ctx.session_key,
                        ),
                        on_partial=on_partial,
                    )
                finally:
                    offer(_END)

            agent_start_ts = time.time()
            agent_task = asyncio.get_running_loop().create_task(run_agent())

            while True:
                snapshot = await partials.get()
                if snapshot is _END:
                    break
                delta = tracker.feed(snapshot)
                if delta:
                    yield emitter.delta(delta)

            try:
                result = await agent_task
            except Exception as e:
                result = AgentResult(error=str(e) or type(e).__name__)

            if result.error:
                outcome = "agent_error"
                turn_logger.warning("Agent reported an error", turn=ctx.seq, error=result.error)
                yield emitter.system(SystemStatus.ERROR, result.error)
                return

            # Single-result agents deliver text only here; treat it as the last snapshot.
            # The stored reply is always exactly what was streamed.
            final_text = result.text or ""
            if not tracker.text:
                final_text = final_text.strip() or FALLBACK_REPLY
            if final_text.startswith(tracker.text):
                delta = tracker.feed(final_text)
                if delta:
                    yield emitter.delta(delta)
            reply = tracker.text
            yield emitter.delta(tracker.finish(), done=True)

            self.store.add_message(ctx.session_id, Role.ASSISTANT, reply)
            turn_logger.info(
                "Agent reply recorded",
                turn=ctx.seq,
                reply_length=len(reply),
                latency_ms=int((time.time() - agent_start_ts) * 1000),
            )
            outcome = "done"
            yield emitter.system(SystemStatus.DONE)

        except Exception as e:
            outcome = "internal_error"
            turn_logger.exception("Turn failed", turn=ctx.seq, error=str(e))
            if not emitter.closed:
                yield emitter.system(SystemStatus.ERROR, getattr(e, "message", None) or str(e) or "Turn failed")
        finally:
            if agent_task is not None and not agent_task.done():
                agent_task.cancel()
            self.release(ctx)
            turn_logger.info(
                "Turn finished",
                turn=ctx.seq,
                outcome=outcome,
                events=len(emitter.events),
                latency_ms=int((time.time() - start_ts) * 1000),
            )
