"""
Booking assistant entry point.

Serves the HTTP/WebSocket API with uvicorn, or runs the offline console
demo for development.

Usage:
    API server:   python main.py
    Console mode: python main.py console [--scenario booking]
"""

import logging
import sys

from citabot.config import settings

logger = logging.getLogger(__name__)


def _run_server() -> None:
    """Start the FastAPI application under uvicorn."""
    import uvicorn

    from citabot.api.app import create_app

    logger.info("Starting API on %s:%d", settings.server.host, settings.server.port)
    uvicorn.run(
        create_app(),
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.log_level.lower(),
    )


def _run_console_mode(argv: list[str]) -> None:
    """Start the offline console demo."""
    from console_demo import main as console_main

    console_main(argv)


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "console":
        _run_console_mode(sys.argv[2:])
    else:
        _run_server()
