"""FastAPI dependencies.

Collaborators are built once by ``create_app`` and kept on ``app.state``;
these helpers hand them to route handlers.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ctpat.core.config import Settings
from ctpat.db import Database
from ctpat.services.mail import MailChannel
from ctpat.services.report import ReportRenderer
from ctpat.services.storage import BlobStore


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_database(request: Request) -> Database:
    return request.app.state.database


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Get a database session for one request.

    Handlers commit explicitly; an exception rolls the session back.
    """
    async with get_database(request).session() as session:
        yield session


def get_mail_channel(request: Request) -> MailChannel:
    return request.app.state.mail_channel


def get_blob_store(request: Request) -> BlobStore | None:
    return request.app.state.blob_store


def get_renderer(request: Request) -> ReportRenderer | None:
    return request.app.state.renderer


AppSettings = Annotated[Settings, Depends(get_settings)]
AppDatabase = Annotated[Database, Depends(get_database)]
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
MailChannelDep = Annotated[MailChannel, Depends(get_mail_channel)]
BlobStoreDep = Annotated[BlobStore | None, Depends(get_blob_store)]
RendererDep = Annotated[ReportRenderer | None, Depends(get_renderer)]
