"""CTPAT Relay API service.

FastAPI application providing:
- Idempotent inspection submission
- Record lifecycle updates with audit history
- Report email requests and delivery queue operations

This module provides the app factory pattern for creating configured
FastAPI instances suitable for testing and production deployment.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from ctpat.api.middleware import ErrorHandlerMiddleware, RequestIDMiddleware
from ctpat.api.routers import queue_router, records_router
from ctpat.core.config import Settings
from ctpat.db import Database
from ctpat.services.mail import build_mail_channel
from ctpat.services.report import HtmlReportRenderer
from ctpat.services.storage import build_blob_store

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from ctpat.services.mail import MailChannel
    from ctpat.services.report import ReportRenderer
    from ctpat.services.storage import BlobStore

logger = logging.getLogger(__name__)

API_TITLE = "CTPAT Relay API"
API_DESCRIPTION = """
Inspection submission and report delivery service for CTPAT truck inspections.

## Namespaces

- **/records/** - Inspection submission, lifecycle updates, report emails
- **/queue/** - Delivery queue operations

## Documentation

- OpenAPI spec: `/api/openapi.json`
- Swagger UI: `/api/docs`
"""


def create_app(
    settings: Settings | None = None,
    *,
    database: Database | None = None,
    mail_channel: MailChannel | None = None,
    blob_store: BlobStore | None = None,
    renderer: ReportRenderer | None = None,
) -> FastAPI:
    """Create and configure a FastAPI application instance.

    Collaborators not passed explicitly are built from settings. Everything
    ends up on ``app.state`` for the request dependencies.

    Args:
        settings: Application settings; development defaults when omitted.
        database: Database to use instead of one built from settings.
        mail_channel: Mail channel to use instead of the configured provider.
        blob_store: Report storage to use instead of the configured S3 store.
        renderer: Report renderer to use instead of the WeasyPrint renderer.

    Returns:
        Configured FastAPI application ready to serve requests.

    Example:
        settings = load_settings()
        app = create_app(settings)

        # For testing
        app = create_app(settings, database=db, mail_channel=FakeMailChannel())
    """
    settings = settings or Settings()
    owns_database = database is None
    database = database or Database.from_settings(settings.database)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if owns_database and settings.database.is_sqlite and settings.is_development:
            await database.create_all()
        yield
        if owns_database:
            await database.dispose()

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=settings.app_version,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.database = database
    app.state.mail_channel = mail_channel or build_mail_channel(settings.smtp)
    app.state.blob_store = blob_store if blob_store is not None else build_blob_store(settings.s3)
    app.state.renderer = renderer or HtmlReportRenderer(app_name=settings.app_name)

    # Last added is outermost: request IDs are set before errors are rendered
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(RequestIDMiddleware)

    app.include_router(records_router)
    app.include_router(queue_router)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Liveness endpoint for container orchestration."""
        return {"status": "healthy", "version": settings.app_version}

    logger.info(
        "CTPAT Relay API application created (version=%s, mail_channel=%s, storage=%s)",
        settings.app_version,
        app.state.mail_channel.name,
        app.state.blob_store is not None,
    )
    return app
