#!/usr/bin/env python3
"""
koe - streaming text-to-speech for agent chat

Usage:
    python main.py              # start the server on $PORT (default 3040)

Requires ELEVENLABS_API_KEY (or per-user keys from the credentials
service) and AI_API_URL for the agent chat stream.
"""

import logging
import signal
import sys
import threading
import time

import uvicorn
from dotenv import load_dotenv

from koe.config import ConfigError, Settings
from koe.log import setup_logging, Logger, get_logger
from koe.server import app

# Load environment variables
load_dotenv()

logger = get_logger("koe")

_uvicorn_server: uvicorn.Server = None


def check_environment(settings: Settings) -> bool:
    """Warn about missing configuration; the server refuses affected routes."""
    ok = True
    if not settings.ai_api_url:
        logger.warning("AI_API_URL is not set -- /api/tts-chat-stream will return 500")
        ok = False
    if not settings.elevenlabs_api_key:
        logger.warning("ELEVENLABS_API_KEY is not set -- relying on the credentials service")
        ok = False
    return ok


def start_server(port: int) -> None:
    """Start the FastAPI server."""
    global _uvicorn_server
    config = uvicorn.Config(
        app,
        host="0.0.0.0",
        port=port,
        log_level="warning",  # Quiet uvicorn, we have our own logging
    )
    _uvicorn_server = uvicorn.Server(config)
    _uvicorn_server.run()


def main():
    """Main entry point."""
    try:
        settings = Settings.from_env()
    except ConfigError as e:
        setup_logging()
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    setup_logging(getattr(logging, settings.log_level, logging.INFO))
    check_environment(settings)

    Logger.server_starting(settings.port)
    server_thread = threading.Thread(
        target=start_server,
        args=(settings.port,),
        daemon=True,
    )
    server_thread.start()

    # Wait for server to start
    time.sleep(1)
    Logger.server_ready(f"http://localhost:{settings.port}")

    def _handle_sigterm(signum, frame):
        logger.info("SIGTERM received, stopping")
        if _uvicorn_server:
            _uvicorn_server.should_exit = True

    signal.signal(signal.SIGTERM, _handle_sigterm)

    try:
        while server_thread.is_alive():
            time.sleep(1)
    except KeyboardInterrupt:
        Logger.shutdown()
        if _uvicorn_server:
            _uvicorn_server.should_exit = True
            server_thread.join(timeout=5)


if __name__ == "__main__":
    main()
