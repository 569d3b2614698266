"""
Voice client HTTP API.

- POST   {prefix}/audio?sessionId=<id>   audio in, SSE reply out
- POST   {prefix}/session/new            create a session for a profile
- GET    {prefix}/session?id=<id>        session info
- DELETE {prefix}/session?id=<id>        drop a session
- GET    {prefix}/profiles               allowed profiles

Validation failures raise VoiceClientError subclasses; server.py renders
them as {"error": message} with the error's status code.
"""

from __future__ import annotations

import json
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from starlette.background import BackgroundTask

from .errors import (
    InvalidRequestError,
    ProfileNotAllowedError,
    SessionIdRequiredError,
    SessionNotFoundError,
)
from .events import SSE_HEADERS
from .service import VoiceClientService


router = APIRouter(tags=["voice-client"])


def get_service(request: Request) -> VoiceClientService:
    return request.app.state.voice


class SessionResponse(BaseModel):
    sessionId: str
    createdAt: str
    profile: str


class SessionInfo(BaseModel):
    sessionId: str
    profile: str
    createdAt: str
    lastActivity: str
    messageCount: int
    paused: bool


class ProfileInfo(BaseModel):
    name: str
    allowed: bool


class ProfilesResponse(BaseModel):
    profiles: List[ProfileInfo]


class ClearResponse(BaseModel):
    status: str


def _declared_length(request: Request) -> Optional[int]:
    value = request.headers.get("content-length")
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


@router.post("/audio")
async def upload_audio(
    request: Request,
    session_id: Optional[str] = Query(None, alias="sessionId"),
    x_profile: Optional[str] = Header(None, alias="X-Profile"),
    x_session_key: Optional[str] = Header(None, alias="X-Session-Key"),
    service: VoiceClientService = Depends(get_service),
) -> StreamingResponse:
    """
    Transcribe the posted audio and stream the agent's reply.

    Everything up to and including buffering the body is validated before
    the response starts; afterwards failures arrive as system:error events.
    """
    orchestrator = service.orchestrator
    ctx = orchestrator.begin(x_profile, session_id, x_session_key)
    audio = await orchestrator.read_audio(ctx, request.stream(), _declared_length(request))

    return StreamingResponse(
        orchestrator.stream(ctx, audio),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
        # Releases the turn claim even if the body iterator never started.
        background=BackgroundTask(orchestrator.release, ctx),
    )


@router.post("/session/new", response_model=SessionResponse)
async def new_session(
    request: Request,
    service: VoiceClientService = Depends(get_service),
) -> SessionResponse:
    """Create a session. Body: {"profileName": "<name>"} ("profile" also accepted)."""
    raw = await request.body()
    try:
        data = json.loads(raw) if raw else {}
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidRequestError("Invalid JSON body")
    if not isinstance(data, dict):
        raise InvalidRequestError("Invalid JSON body")

    profile = data.get("profileName") or data.get("profile")
    if not profile or not isinstance(profile, str):
        raise InvalidRequestError("profileName required")
    if not service.config.is_profile_allowed(profile):
        raise ProfileNotAllowedError(profile)

    session = service.store.create(profile)
    return SessionResponse(
        sessionId=session.session_id,
        createdAt=session.created_at.isoformat(),
        profile=session.profile,
    )


@router.get("/session", response_model=SessionInfo)
async def get_session(
    session_id: Optional[str] = Query(None, alias="id"),
    service: VoiceClientService = Depends(get_service),
) -> SessionInfo:
    if not session_id:
        raise SessionIdRequiredError("Session ID required")

    session = service.store.require(session_id)
    return SessionInfo(
        sessionId=session.session_id,
        profile=session.profile,
        createdAt=session.created_at.isoformat(),
        lastActivity=session.last_activity.isoformat(),
        messageCount=session.message_count,
        paused=service.store.is_paused(session_id),
    )


@router.delete("/session", response_model=ClearResponse)
async def clear_session(
    session_id: Optional[str] = Query(None, alias="id"),
    service: VoiceClientService = Depends(get_service),
) -> ClearResponse:
    if not session_id:
        raise SessionIdRequiredError("Session ID required")
    if not service.store.clear(session_id):
        raise SessionNotFoundError(session_id)
    return ClearResponse(status="cleared")


@router.get("/profiles", response_model=ProfilesResponse)
async def list_profiles(
    service: VoiceClientService = Depends(get_service),
) -> ProfilesResponse:
    return ProfilesResponse(
        profiles=[ProfileInfo(name=name, allowed=True) for name in service.config.allowed_profiles]
    )
