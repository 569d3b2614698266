"""
Speech-to-text collaborator.

The orchestrator only depends on the Transcriber protocol. SonioxTranscriber
implements it against Soniox's async REST API:

    upload file -> create transcription -> poll -> fetch transcript -> cleanup
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Protocol

import aiohttp

from logging_setup import get_logger, Component
from .errors import TranscriptionError


logger = get_logger(Component.STT)

SONIOX_API_URL = "https://api.soniox.com/v1"


@dataclass(frozen=True)
class Transcription:
    text: str
    confidence: float = 0.0


class Transcriber(Protocol):
    async def transcribe(self, audio: bytes, profile: str) -> Transcription:
        """Transcribe a complete audio buffer. Raises TranscriptionError on failure."""
        ...


def mean_confidence(tokens: List[dict]) -> float:
    """Average token confidence, 0.0 when there are no tokens."""
    if not tokens:
        return 0.0
    total = sum(float(t.get("confidence") or 0.0) for t in tokens)
    return total / len(tokens)


class SonioxTranscriber:
    """Batch transcription through the Soniox async API."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "stt-async-v4",
        language_hints: Optional[List[str]] = None,
        base_url: str = SONIOX_API_URL,
        poll_interval_seconds: float = 1.0,
        timeout_seconds: float = 120.0,
        filename: str = "recording.webm",
        session_factory: Callable[[], aiohttp.ClientSession] = aiohttp.ClientSession,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.api_key = api_key
        self.model = model
        self.language_hints = language_hints or ["en"]
        self.base_url = base_url.rstrip("/")
        self.poll_interval_seconds = poll_interval_seconds
        self.timeout_seconds = timeout_seconds
        self.filename = filename
        self._session_factory = session_factory
        self._sleep = sleep

    @property
    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def transcribe(self, audio: bytes, profile: str) -> Transcription:
        if not self.api_key:
            raise TranscriptionError("Soniox API key is required")

        start_ts = time.time()
        try:
            async with self._session_factory() as http:
                file_id = await self._upload(http, audio)
                transcription_id: Optional[str] = None
                try:
                    transcription_id = await self._create(http, file_id)
                    await self._wait(http, transcription_id)
                    transcript = await self._get_json(
                        http, f"/transcriptions/{transcription_id}/transcript"
                    )
                finally:
                    await self._cleanup(http, file_id, transcription_id)
        except TranscriptionError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, KeyError) as e:
            logger.error(
                "Transcription failed",
                profile=profile,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise TranscriptionError(f"Soniox transcription failed: {e}") from e

        text = (transcript.get("text") or "").strip()
        confidence = mean_confidence(transcript.get("tokens") or [])

        logger.info(
            "Transcription complete",
            profile=profile,
            audio_bytes=len(audio),
            text_length=len(text),
            confidence=round(confidence, 3),
            latency_ms=int((time.time() - start_ts) * 1000),
        )
        return Transcription(text=text, confidence=confidence)

    async def _upload(self, http: aiohttp.ClientSession, audio: bytes) -> str:
        form = aiohttp.FormData()
        form.add_field("file", audio, filename=self.filename)
        async with http.post(f"{self.base_url}/files", data=form, headers=self._headers) as resp:
            data = await self._json_or_raise(resp, "file upload")
        return data["id"]

    async def _create(self, http: aiohttp.ClientSession, file_id: str) -> str:
        payload = {
            "model": self.model,
            "file_id": file_id,
            "language_hints": self.language_hints,
        }
        async with http.post(f"{self.base_url}/transcriptions", json=payload, headers=self._headers) as resp:
            data = await self._json_or_raise(resp, "create transcription")
        return data["id"]

    async def _wait(self, http: aiohttp.ClientSession, transcription_id: str) -> None:
        deadline = time.monotonic() + self.timeout_seconds
        while True:
            data = await self._get_json(http, f"/transcriptions/{transcription_id}")
            status = data.get("status")
            if status == "completed":
                return
            if status == "error":
                raise TranscriptionError(
                    f"Soniox transcription failed: {data.get('error_message') or 'unknown error'}"
                )
            if time.monotonic() >= deadline:
                raise TranscriptionError(
                    f"Soniox transcription failed: timed out after {self.timeout_seconds:.0f}s"
                )
            await self._sleep(self.poll_interval_seconds)

    async def _get_json(self, http: aiohttp.ClientSession, path: str) -> dict:
        async with http.get(f"{self.base_url}{path}", headers=self._headers) as resp:
            return await self._json_or_raise(resp, f"GET {path}")

    async def _cleanup(
        self,
        http: aiohttp.ClientSession,
        file_id: str,
        transcription_id: Optional[str],
    ) -> None:
        """Best-effort deletion of the transcription and the uploaded file."""
        paths = []
        if transcription_id:
            paths.append(f"/transcriptions/{transcription_id}")
        paths.append(f"/files/{file_id}")
        for path in paths:
            try:
                async with http.delete(f"{self.base_url}{path}", headers=self._headers) as resp:
                    if resp.status >= 400:
                        logger.warning("Soniox cleanup rejected", path=path, status=resp.status)
            except aiohttp.ClientError as e:
                logger.warning("Soniox cleanup failed", path=path, error=str(e))

    @staticmethod
    async def _json_or_raise(resp: aiohttp.ClientResponse, what: str) -> dict:
        if resp.status >= 400:
            body = await resp.text()
            raise TranscriptionError(
                f"Soniox transcription failed: {what} returned {resp.status}: {body[:200]}"
            )
        return await resp.json()
