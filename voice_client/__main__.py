"""
Entry point for running the voice client gateway.

Usage:
    python -m voice_client

Binds to VOICE_CLIENT_BIND:VOICE_CLIENT_PORT (default 127.0.0.1:18790).
"""
import uvicorn

from logging_setup import setup_logging, get_logger, Component
from .config import get_config
from .server import create_app


if __name__ == "__main__":
    config = get_config()
    setup_logging(level=config.log_level, use_json=True)

    logger = get_logger(Component.VOICE_CLIENT)
    if not config.allowed_profiles:
        logger.warning("No allowed profiles configured; every request will be rejected")
    if not config.soniox_api_key:
        logger.warning("SONIOX_API_KEY not set; transcription will fail")

    uvicorn.run(
        create_app(config),
        host=config.bind,
        port=config.port,
        log_level=config.log_level.lower(),
    )
