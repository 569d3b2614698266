"""
FastAPI application for the voice client gateway.

Mounts the voice client router under the configured path, renders every
pre-stream failure as {"error": message}, and runs the idle sweep for the
lifetime of the app.
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from logging_setup import get_logger, Component
from .agent import Agent
from .api import router as voice_router
from .config import VoiceClientConfig, get_config
from .errors import VoiceClientError
from .service import VoiceClientService
from .session import SessionStore
from .transcription import Transcriber


logger = get_logger(Component.HTTP)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(
    config: Optional[VoiceClientConfig] = None,
    *,
    store: Optional[SessionStore] = None,
    transcriber: Optional[Transcriber] = None,
    agent: Optional[Agent] = None,
) -> FastAPI:
    config = config or get_config()
    service = VoiceClientService.build(
        config,
        store=store,
        transcriber=transcriber,
        agent=agent,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        logger.info(
            "Voice client gateway started",
            path=config.path,
            allowed_profiles=config.allowed_profiles,
        )
        try:
            yield
        finally:
            await service.stop()
            logger.info("Voice client gateway stopped")

    app = FastAPI(title="Voice Client Gateway", lifespan=lifespan)
    app.state.voice = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Profile", "X-Session-Key"],
    )

    @app.exception_handler(VoiceClientError)
    async def handle_voice_client_error(request: Request, exc: VoiceClientError):
        status_code = exc.status_code or 500
        logger.info(
            "Request rejected",
            path=request.url.path,
            status=status_code,
            code=exc.code,
        )
        return _error(status_code, exc.message)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _error(404, "Not found")
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return _error(400, "Invalid request")

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception(
            "Unhandled error",
            path=request.url.path,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return _error(500, "Internal server error")

    @app.get("/health")
    async def health():
        return {"status": "ok", "sessions": len(service.store)}

    app.include_router(voice_router, prefix=config.path)
    return app
