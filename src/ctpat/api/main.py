"""CTPAT Relay API service entry point.

``run()`` is the ``ctpat-api`` console script. ``build_app`` is an app
factory for ASGI servers:

    uvicorn --factory ctpat.api.main:build_app
"""

import logging

from fastapi import FastAPI

from ctpat.api import create_app
from ctpat.core.settings import configure_logging, load_settings

logger = logging.getLogger(__name__)


def build_app() -> FastAPI:
    """Load settings from the environment and create the application."""
    settings = load_settings()
    configure_logging(settings)
    return create_app(settings)


def run() -> None:
    """Run the API server using uvicorn."""
    import uvicorn

    settings = load_settings()
    configure_logging(settings)
    app = create_app(settings)

    logger.info("Starting CTPAT Relay API on %s:%d", settings.api_host, settings.api_port)

    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
