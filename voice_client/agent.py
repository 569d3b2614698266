"""
Conversational agent collaborator.

An Agent receives the transcribed prompt plus the session's prior turns and
either returns its reply in one piece or reports progress through a callback
with the cumulative text so far, followed by the same final AgentResult.

OpenAICompatAgent talks to any OpenAI-compatible /chat/completions endpoint
with stream=true and reports cumulative text as chunks arrive.
"""
from __future__ import annotations

import asyncio
import inspect
import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

import aiohttp

from logging_setup import get_logger, Component
from .errors import AgentError


logger = get_logger(Component.AGENT)

FALLBACK_REPLY = "I'm sorry, I couldn't generate a response."
ABORTED_ERROR = "Response generation was aborted"

PartialCallback = Callable[[str], Union[None, Awaitable[None]]]


@dataclass
class AgentRequest:
    prompt: str
    session_id: str
    profile: str
    history: List[Dict[str, str]] = field(default_factory=list)
    session_key: Optional[str] = None


@dataclass
class AgentResult:
    text: Optional[str] = None
    error: Optional[str] = None


class Agent(Protocol):
    async def respond(
        self,
        request: AgentRequest,
        on_partial: Optional[PartialCallback] = None,
    ) -> AgentResult:
        """
        Produce a reply for `request`.

        If `on_partial` is given the agent may call it repeatedly with the
        cumulative reply text, either plainly or through call_partial (which
        also awaits async callbacks). Failures are reported in
        AgentResult.error.
        """
        ...


async def call_partial(callback: Optional[PartialCallback], text: str) -> None:
    """Invoke a partial-reply callback that may be sync or async."""
    if callback is None:
        return
    result = callback(text)
    if inspect.isawaitable(result):
        await result


def build_system_prompt(agent_name: str, profile: str, history: List[Dict[str, str]]) -> str:
    """Persona prompt plus a plain-text transcript of earlier turns."""
    name = (agent_name or "").strip() or "assistant"
    prompt = (
        f"You are {name}, a helpful voice assistant. "
        "Keep responses brief and conversational (1-2 sentences max). "
        f"Be natural and friendly. The user is {profile}."
    )
    if history:
        lines = "\n".join(
            f"{'You' if entry['role'] == 'assistant' else 'User'}: {entry['content']}"
            for entry in history
        )
        prompt = f"{prompt}\n\nConversation so far:\n{lines}"
    return prompt


def parse_stream_line(line: str) -> Optional[Dict[str, Any]]:
    """
    Parse one line of an OpenAI-style SSE stream.

    Returns the decoded chunk, {"done": True} for the [DONE] marker, or None
    for blank/comment/non-data lines.
    """
    line = line.strip()
    if not line.startswith("data:"):
        return None
    payload = line[len("data:"):].strip()
    if not payload:
        return None
    if payload == "[DONE]":
        return {"done": True}
    return json.loads(payload)


class OpenAICompatAgent:
    """Streams replies from an OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        base_url: str,
        *,
        model: str = "default",
        api_key: Optional[str] = None,
        agent_name: str = "assistant",
        timeout_seconds: float = 120.0,
        session_factory: Callable[[], aiohttp.ClientSession] = aiohttp.ClientSession,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.agent_name = agent_name
        self.timeout_seconds = timeout_seconds
        self._session_factory = session_factory

    def _build_payload(self, request: AgentRequest) -> Dict[str, Any]:
        system_prompt = build_system_prompt(self.agent_name, request.profile, request.history)
        payload: Dict[str, Any] = {
            "model": self.model,
            "stream": True,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": request.prompt},
            ],
        }
        if request.session_key:
            payload["user"] = request.session_key
        return payload

    async def respond(
        self,
        request: AgentRequest,
        on_partial: Optional[PartialCallback] = None,
    ) -> AgentResult:
        session_logger = logger.with_session(request.session_id)
        headers = {"Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        start_ts = time.time()
        text = ""
        finished = False
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            async with self._session_factory() as http:
                async with http.post(
                    f"{self.base_url}/chat/completions",
                    json=self._build_payload(request),
                    headers=headers,
                    timeout=timeout,
                ) as resp:
                    if resp.status >= 400:
                        body = await resp.text()
                        raise AgentError(f"Agent request failed with status {resp.status}: {body[:200]}")
                    async for raw in resp.content:
                        chunk = parse_stream_line(raw.decode("utf-8", errors="replace"))
                        if chunk is None:
                            continue
                        if chunk.get("done"):
                            finished = True
                            break
                        if chunk.get("error"):
                            err = chunk["error"]
                            message = err.get("message") if isinstance(err, dict) else str(err)
                            raise AgentError(message or "Agent stream error")
                        for choice in chunk.get("choices") or []:
                            content = (choice.get("delta") or {}).get("content")
                            if content:
                                text += content
                                await call_partial(on_partial, text)
                            if choice.get("finish_reason"):
                                finished = True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            session_logger.error(
                "Agent response generation failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return AgentResult(error=str(e) or type(e).__name__)

        reply = text.strip() or None
        if reply is None and not finished:
            return AgentResult(error=ABORTED_ERROR)

        session_logger.info(
            "Agent response complete",
            reply_length=len(reply or ""),
            latency_ms=int((time.time() - start_ts) * 1000),
        )
        return AgentResult(text=reply)
