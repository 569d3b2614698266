"""
Error taxonomy for the voice client gateway.

Pre-stream validation errors carry an HTTP status and are rendered as
{"error": message}. Once the event stream is open, collaborator failures are
reported as system:error events instead (see turn.py).
"""
from typing import Optional


class ErrorCode:
    """Stable error codes."""

    PROFILE_REQUIRED = "profile_required"
    PROFILE_NOT_ALLOWED = "profile_not_allowed"
    SESSION_ID_REQUIRED = "session_id_required"
    SESSION_NOT_FOUND = "session_not_found"
    SESSION_BUSY = "session_busy"
    AUDIO_TOO_LARGE = "audio_too_large"
    INVALID_REQUEST = "invalid_request"
    TRANSCRIPTION_FAILED = "transcription_failed"
    AGENT_FAILED = "agent_failed"


class VoiceClientError(Exception):
    """Base exception for gateway errors."""

    status_code: Optional[int] = None

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


class ProfileRequiredError(VoiceClientError):
    status_code = 400

    def __init__(self, message: str = "X-Profile header required"):
        super().__init__(ErrorCode.PROFILE_REQUIRED, message)


class ProfileNotAllowedError(VoiceClientError):
    status_code = 403

    def __init__(self, profile: str):
        super().__init__(ErrorCode.PROFILE_NOT_ALLOWED, "Profile not allowed")
        self.profile = profile


class SessionIdRequiredError(VoiceClientError):
    status_code = 400

    def __init__(self, message: str = "sessionId query parameter required"):
        super().__init__(ErrorCode.SESSION_ID_REQUIRED, message)


class SessionNotFoundError(VoiceClientError):
    """Raised when a session identifier is unknown to the store."""

    status_code = 404

    def __init__(self, session_id: str):
        super().__init__(ErrorCode.SESSION_NOT_FOUND, "Session not found")
        self.session_id = session_id


class SessionBusyError(VoiceClientError):
    """Raised when a second turn is submitted while one is still streaming."""

    status_code = 409

    def __init__(self, session_id: str):
        super().__init__(
            ErrorCode.SESSION_BUSY,
            "A turn is already in progress for this session",
        )
        self.session_id = session_id


class AudioTooLargeError(VoiceClientError):
    status_code = 413

    def __init__(self, max_bytes: int):
        super().__init__(ErrorCode.AUDIO_TOO_LARGE, "Audio file too large")
        self.max_bytes = max_bytes


class InvalidRequestError(VoiceClientError):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(ErrorCode.INVALID_REQUEST, message)


class TranscriptionError(VoiceClientError):
    """Raised by the transcription collaborator; never a sentinel result."""

    def __init__(self, message: str):
        super().__init__(ErrorCode.TRANSCRIPTION_FAILED, message)


class AgentError(VoiceClientError):
    """Raised by the agent client for transport-level failures."""

    def __init__(self, message: str):
        super().__init__(ErrorCode.AGENT_FAILED, message)
