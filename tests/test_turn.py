"""
Turn orchestration tests.

Drives TurnOrchestrator directly with fake collaborators and checks the
exact event sequence of each path through a turn.
"""
import asyncio
import json

import pytest

from voice_client.agent import FALLBACK_REPLY, AgentResult, call_partial
from voice_client.config import VoiceClientConfig
from voice_client.errors import (
    AudioTooLargeError,
    ProfileNotAllowedError,
    ProfileRequiredError,
    SessionBusyError,
    SessionIdRequiredError,
    SessionNotFoundError,
    TranscriptionError,
)
from voice_client.session import Role, SessionStore
from voice_client.transcription import Transcription
from voice_client.turn import EMPTY_TRANSCRIPTION_REPLY, TurnOrchestrator, read_limited


class FakeTranscriber:
    def __init__(self, text="hello", confidence=0.9, error=None):
        self.text = text
        self.confidence = confidence
        self.error = error
        self.calls = []

    async def transcribe(self, audio, profile):
        self.calls.append((audio, profile))
        if self.error is not None:
            raise self.error
        return Transcription(text=self.text, confidence=self.confidence)


class FakeAgent:
    """Replays `snapshots` through the callback, then returns `result`."""

    def __init__(self, snapshots=(), result=None, error=None, hang=False):
        self.snapshots = list(snapshots)
        self.result = result if result is not None else AgentResult(
            text=self.snapshots[-1] if self.snapshots else None
        )
        self.error = error
        self.hang = hang
        self.requests = []
        self.cancelled = False

    async def respond(self, request, on_partial=None):
        self.requests.append(request)
        for snapshot in self.snapshots:
            await call_partial(on_partial, snapshot)
        if self.hang:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        if self.error is not None:
            raise self.error
        return self.result


def _parse(frames):
    events = []
    for frame in frames:
        event_line, data_line = frame.strip("\n").split("\n")
        events.append((event_line[len("event: "):], json.loads(data_line[len("data: "):])))
    return events


def _summary(events):
    """Compact (type, detail) view of an event list."""
    out = []
    for name, data in events:
        if name == "system":
            out.append(("system", data["status"]))
        elif name == "user":
            out.append(("user", data["text"]))
        else:
            out.append(("openclaw", data["text"], data["done"]))
    return out


@pytest.fixture
def config():
    return VoiceClientConfig(
        allowed_profiles=["Alice", "Bob"],
        session_keys={"Bob": "agent:main:main"},
        max_audio_bytes=16,
    )


@pytest.fixture
def store():
    return SessionStore()


def _orchestrator(store, config, transcriber=None, agent=None):
    return TurnOrchestrator(store, transcriber or FakeTranscriber(), agent or FakeAgent(), config)


async def _run(orchestrator, ctx, audio=b"audio"):
    return _parse([frame async for frame in orchestrator.stream(ctx, audio)])


class TestBegin:
    def test_missing_profile(self, store, config):
        session = store.create("Alice")
        with pytest.raises(ProfileRequiredError):
            _orchestrator(store, config).begin(None, session.session_id)

    def test_profile_not_allowed(self, store, config):
        session = store.create("Mallory")
        with pytest.raises(ProfileNotAllowedError):
            _orchestrator(store, config).begin("Mallory", session.session_id)

    def test_profile_checked_before_session_id(self, store, config):
        with pytest.raises(ProfileNotAllowedError):
            _orchestrator(store, config).begin("Mallory", None)

    def test_missing_session_id(self, store, config):
        with pytest.raises(SessionIdRequiredError) as exc_info:
            _orchestrator(store, config).begin("Alice", "")
        assert exc_info.value.message == "sessionId query parameter required"

    def test_unknown_session(self, store, config):
        with pytest.raises(SessionNotFoundError):
            _orchestrator(store, config).begin("Alice", "voice-missing")

    def test_concurrent_turn_rejected(self, store, config):
        orchestrator = _orchestrator(store, config)
        session = store.create("Alice")
        orchestrator.begin("Alice", session.session_id)

        with pytest.raises(SessionBusyError):
            orchestrator.begin("Alice", session.session_id)

    def test_resolves_session_key(self, store, config):
        orchestrator = _orchestrator(store, config)
        alice = store.create("Alice")
        bob = store.create("Bob")

        assert orchestrator.begin("Alice", alice.session_id).session_key == "voice-client:Alice"
        assert orchestrator.begin("Bob", bob.session_id).session_key == "agent:main:main"

    def test_header_session_key_wins(self, store, config):
        session = store.create("Bob")
        ctx = _orchestrator(store, config).begin("Bob", session.session_id, "shared")
        assert ctx.session_key == "shared"

    def test_begin_resumes_paused_session(self, store, config):
        session = store.create("Alice")
        store.mark_paused(session.session_id)

        _orchestrator(store, config).begin("Alice", session.session_id)

        assert not store.is_paused(session.session_id)


class TestReadAudio:
    @staticmethod
    async def _chunks(*parts):
        for part in parts:
            yield part

    @pytest.mark.asyncio
    async def test_read_limited_joins_chunks(self):
        assert await read_limited(self._chunks(b"ab", b"cd"), 4) == b"abcd"

    @pytest.mark.asyncio
    async def test_read_limited_rejects_declared_length(self):
        with pytest.raises(AudioTooLargeError):
            await read_limited(self._chunks(), 4, declared_length=5)

    @pytest.mark.asyncio
    async def test_read_limited_rejects_streamed_overflow(self):
        with pytest.raises(AudioTooLargeError):
            await read_limited(self._chunks(b"abc", b"de"), 4)

    @pytest.mark.asyncio
    async def test_oversized_audio_releases_claim(self, store, config):
        orchestrator = _orchestrator(store, config)
        session = store.create("Alice")
        ctx = orchestrator.begin("Alice", session.session_id)

        with pytest.raises(AudioTooLargeError):
            await orchestrator.read_audio(ctx, self._chunks(b"x" * 17))

        assert not store.turn_in_flight(session.session_id)


class TestStream:
    @pytest.mark.asyncio
    async def test_streaming_reply(self, store, config):
        agent = FakeAgent(snapshots=["Hel", "Hello", "Hello there"])
        orchestrator = _orchestrator(store, config, FakeTranscriber("  hi bot  ", 0.82), agent)
        session = store.create("Alice")
        ctx = orchestrator.begin("Alice", session.session_id)

        events = await _run(orchestrator, ctx)

        assert _summary(events) == [
            ("system", "transcribing"),
            ("user", "hi bot"),
            ("system", "typing"),
            ("openclaw", "Hel", False),
            ("openclaw", "lo", False),
            ("openclaw", " there", False),
            ("openclaw", "", True),
            ("system", "done"),
        ]
        assert events[1][1]["confidence"] == 0.82
        assert store.history(session.session_id) == [
            {"role": "user", "content": "hi bot"},
            {"role": "assistant", "content": "Hello there"},
        ]
        assert not store.turn_in_flight(session.session_id)

    @pytest.mark.asyncio
    async def test_single_result_agent(self, store, config):
        agent = FakeAgent(result=AgentResult(text="All in one go."))
        orchestrator = _orchestrator(store, config, agent=agent)
        session = store.create("Alice")

        events = await _run(orchestrator, orchestrator.begin("Alice", session.session_id))

        assert _summary(events)[-3:] == [
            ("openclaw", "All in one go.", False),
            ("openclaw", "", True),
            ("system", "done"),
        ]

    @pytest.mark.asyncio
    async def test_final_text_extends_streamed_text(self, store, config):
        agent = FakeAgent(snapshots=["Hello"], result=AgentResult(text="Hello world"))
        orchestrator = _orchestrator(store, config, agent=agent)
        session = store.create("Alice")

        events = await _run(orchestrator, orchestrator.begin("Alice", session.session_id))

        deltas = [d["text"] for name, d in events if name == "openclaw"]
        assert deltas == ["Hello", " world", ""]

    @pytest.mark.asyncio
    async def test_empty_transcription(self, store, config):
        agent = FakeAgent(result=AgentResult(text="unused"))
        orchestrator = _orchestrator(store, config, FakeTranscriber("   ", 0.1), agent)
        session = store.create("Alice")

        events = await _run(orchestrator, orchestrator.begin("Alice", session.session_id))

        assert _summary(events) == [
            ("system", "transcribing"),
            ("user", ""),
            ("system", "empty_transcription"),
        ]
        assert events[-1][1]["message"] == EMPTY_TRANSCRIPTION_REPLY
        assert agent.requests == []
        assert store.history(session.session_id) == []
        assert not store.turn_in_flight(session.session_id)

    @pytest.mark.asyncio
    async def test_transcription_failure(self, store, config):
        transcriber = FakeTranscriber(error=TranscriptionError("Soniox transcription failed: 500"))
        orchestrator = _orchestrator(store, config, transcriber)
        session = store.create("Alice")

        events = await _run(orchestrator, orchestrator.begin("Alice", session.session_id))

        assert _summary(events) == [("system", "transcribing"), ("system", "error")]
        assert events[-1][1]["message"] == "Soniox transcription failed: 500"
        assert store.history(session.session_id) == []
        assert not store.turn_in_flight(session.session_id)

    @pytest.mark.asyncio
    async def test_agent_error_result(self, store, config):
        agent = FakeAgent(snapshots=["Par"], result=AgentResult(error="model overloaded"))
        orchestrator = _orchestrator(store, config, agent=agent)
        session = store.create("Alice")

        events = await _run(orchestrator, orchestrator.begin("Alice", session.session_id))

        assert _summary(events) == [
            ("system", "transcribing"),
            ("user", "hello"),
            ("system", "typing"),
            ("openclaw", "Par", False),
            ("system", "error"),
        ]
        assert events[-1][1]["message"] == "model overloaded"
        assert store.history(session.session_id) == [{"role": "user", "content": "hello"}]

    @pytest.mark.asyncio
    async def test_agent_exception(self, store, config):
        agent = FakeAgent(error=RuntimeError("agent crashed"))
        orchestrator = _orchestrator(store, config, agent=agent)
        session = store.create("Alice")

        events = await _run(orchestrator, orchestrator.begin("Alice", session.session_id))

        assert events[-1][0] == "system"
        assert events[-1][1]["status"] == "error"
        assert events[-1][1]["message"] == "agent crashed"
        assert [name for name, _ in events].count("system") == 3

    @pytest.mark.asyncio
    async def test_empty_agent_reply_uses_fallback(self, store, config):
        agent = FakeAgent(result=AgentResult(text="   "))
        orchestrator = _orchestrator(store, config, agent=agent)
        session = store.create("Alice")

        events = await _run(orchestrator, orchestrator.begin("Alice", session.session_id))

        deltas = [(d["text"], d["done"]) for name, d in events if name == "openclaw"]
        assert deltas == [(FALLBACK_REPLY, False), ("", True)]
        assert store.history(session.session_id)[-1] == {"role": "assistant", "content": FALLBACK_REPLY}

    @pytest.mark.parametrize(
        "snapshots, final_text, expected",
        [
            (["   "], "   ", "   "),
            ([" Hi"], " Hi", " Hi"),
            ([" Hi"], "Hi", " Hi"),
            (["Hello"], "Goodbye", "Hello"),
            ([], "  Hi there ", "Hi there"),
        ],
    )
    @pytest.mark.asyncio
    async def test_stored_reply_matches_streamed_text(self, store, config, snapshots, final_text, expected):
        agent = FakeAgent(snapshots=snapshots, result=AgentResult(text=final_text))
        orchestrator = _orchestrator(store, config, agent=agent)
        session = store.create("Alice")

        events = await _run(orchestrator, orchestrator.begin("Alice", session.session_id))

        streamed = "".join(d["text"] for name, d in events if name == "openclaw")
        assert streamed == expected
        assert store.history(session.session_id)[-1] == {"role": "assistant", "content": streamed}
        assert events[-1][1]["status"] == "done"

    @pytest.mark.asyncio
    async def test_agent_calling_back_without_await(self, store, config):
        class PlainCallbackAgent(FakeAgent):
            async def respond(self, request, on_partial=None):
                on_partial("Good")
                on_partial("Good day")
                return AgentResult(text="Good day")

        orchestrator = _orchestrator(store, config, agent=PlainCallbackAgent())
        session = store.create("Alice")

        events = await _run(orchestrator, orchestrator.begin("Alice", session.session_id))

        deltas = [d["text"] for name, d in events if name == "openclaw"]
        assert deltas == ["Good", " day", ""]
        assert store.history(session.session_id)[-1]["content"] == "Good day"

    @pytest.mark.asyncio
    async def test_burst_of_snapshots_keeps_newest(self, store, config):
        snapshots = ["x" * n for n in range(1, 201)]
        agent = FakeAgent(snapshots=snapshots)
        orchestrator = _orchestrator(store, config, agent=agent)
        session = store.create("Alice")

        events = await _run(orchestrator, orchestrator.begin("Alice", session.session_id))

        streamed = "".join(d["text"] for name, d in events if name == "openclaw")
        assert streamed == snapshots[-1]
        assert store.history(session.session_id)[-1]["content"] == snapshots[-1]

    @pytest.mark.asyncio
    async def test_agent_gets_prior_history_and_prompt(self, store, config):
        agent = FakeAgent(result=AgentResult(text="Second answer"))
        orchestrator = _orchestrator(store, config, FakeTranscriber("second question"), agent)
        session = store.create("Bob")
        store.add_message(session.session_id, Role.USER, "first question")
        store.add_message(session.session_id, Role.ASSISTANT, "first answer")

        await _run(orchestrator, orchestrator.begin("Bob", session.session_id))

        request = agent.requests[0]
        assert request.prompt == "second question"
        assert request.profile == "Bob"
        assert request.session_key == "agent:main:main"
        assert request.history == [
            {"role": "user", "content": "first question"},
            {"role": "assistant", "content": "first answer"},
        ]

    @pytest.mark.asyncio
    async def test_exactly_one_terminal_event(self, store, config):
        agent = FakeAgent(snapshots=["a", "ab"])
        orchestrator = _orchestrator(store, config, agent=agent)
        session = store.create("Alice")

        events = await _run(orchestrator, orchestrator.begin("Alice", session.session_id))

        terminal = [
            d["status"] for name, d in events
            if name == "system" and d["status"] in ("done", "error", "empty_transcription")
        ]
        assert terminal == ["done"]
        assert events[-1][0] == "system"

    @pytest.mark.asyncio
    async def test_confidence_is_clamped(self, store, config):
        orchestrator = _orchestrator(store, config, FakeTranscriber("hi", 1.7))
        session = store.create("Alice")

        events = await _run(orchestrator, orchestrator.begin("Alice", session.session_id))

        assert events[1][1]["confidence"] == 1.0

    @pytest.mark.asyncio
    async def test_client_disconnect_cancels_agent(self, store, config):
        agent = FakeAgent(snapshots=["Thinking"], hang=True)
        orchestrator = _orchestrator(store, config, agent=agent)
        session = store.create("Alice")
        ctx = orchestrator.begin("Alice", session.session_id)

        stream = orchestrator.stream(ctx, b"audio")
        async for frame in stream:
            if frame.startswith("event: openclaw"):
                break
        await stream.aclose()
        for _ in range(5):
            await asyncio.sleep(0)

        assert agent.cancelled
        assert not store.turn_in_flight(session.session_id)
        assert store.history(session.session_id) == [{"role": "user", "content": "hello"}]

    @pytest.mark.asyncio
    async def test_session_cleared_mid_turn_ends_with_error(self, store, config):
        session = store.create("Alice")

        class ClearingAgent(FakeAgent):
            async def respond(self, request, on_partial=None):
                store.clear(request.session_id)
                return AgentResult(text="too late")

        orchestrator = _orchestrator(store, config, agent=ClearingAgent())

        events = await _run(orchestrator, orchestrator.begin("Alice", session.session_id))

        assert events[-1][0] == "system"
        assert events[-1][1]["status"] == "error"
        assert events[-1][1]["message"] == "Session not found"
