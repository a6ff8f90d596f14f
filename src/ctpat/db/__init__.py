"""CTPAT Relay database module.

Database models and migrations:
- SQLAlchemy 2.x ORM models
- Alembic migration configuration
- Async engines via psycopg (PostgreSQL) or aiosqlite (SQLite)

The engine and session factory live on a ``Database`` object built from
settings by the entry points and handed to the API and worker.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ctpat.db.models import Base

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from sqlalchemy.ext.asyncio import AsyncEngine

    from ctpat.core.config import DatabaseSettings


def _configure_sqlite_connection(dbapi_connection: Any, _connection_record: Any) -> None:
    """Prepare a new SQLite connection.

    The driver's implicit BEGIN is disabled so SAVEPOINT works, and foreign
    keys are switched on so ON DELETE CASCADE is honoured.
    """
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _begin_sqlite_transaction(conn: Any) -> None:
    # Take the write lock up front; a deferred read lock cannot be upgraded
    # while another writer is active.
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_from_settings(settings: DatabaseSettings) -> AsyncEngine:
    """Create an async engine for the configured backend.

    Args:
        settings: Database settings.

    Returns:
        AsyncEngine bound to the configured URL.
    """
    url = settings.async_url

    if settings.is_sqlite:
        kwargs: dict[str, Any] = {
            "echo": settings.echo,
            "connect_args": {"timeout": settings.pool_timeout},
        }
        # In-memory databases must share one connection
        if ":memory:" in url or url.rstrip("/").endswith("sqlite+aiosqlite:"):
            kwargs["poolclass"] = StaticPool
        engine = create_async_engine(url, **kwargs)
        event.listen(engine.sync_engine, "connect", _configure_sqlite_connection)
        event.listen(engine.sync_engine, "begin", _begin_sqlite_transaction)
        return engine

    return create_async_engine(
        url,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_timeout=settings.pool_timeout,
        pool_pre_ping=True,
        echo=settings.echo,
    )


class Database:
    """Owns the engine and session factory for one process."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> Database:
        """Build a Database from settings."""
        return cls(create_engine_from_settings(settings))

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get an async database session.

        The caller commits; any exception rolls the session back.

        Usage:
            async with database.session() as session:
                result = await session.execute(query)
                await session.commit()

        Yields:
            AsyncSession for database operations.
        """
        session = self.session_factory()
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def create_all(self) -> None:
        """Create all tables directly from model metadata.

        Used by tests and local SQLite development; deployments run the
        Alembic migrations instead.
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        """Close the engine. Call during application or worker shutdown."""
        await self.engine.dispose()


__all__ = ["Database", "create_engine_from_settings"]
