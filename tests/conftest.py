"""Pytest configuration and shared fixtures.

Tests run against a real SQLite database (aiosqlite) in a temporary file, so
the SQL the services issue is exercised for real. External collaborators
(mail channel, blob store, report renderer) are replaced by the in-memory
fakes in ``tests/fakes.py``.

SQLite sessions take the write lock when their transaction begins. Open and
close sessions one after another within a test; two sessions that both
write at the same time will wait on each other.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from ctpat.api import create_app
from ctpat.core.config import (
    DatabaseSettings,
    DeliverySettings,
    S3Settings,
    Settings,
    SMTPSettings,
)
from ctpat.db import Database
from ctpat.db.models import RecordStatus
from ctpat.services.records import ChecklistPoint, RecordSubmission
from tests.fakes import FakeBlobStore, FakeMailChannel, FakeRenderer


# ---------------------------------------------------------------------------
# Settings and database
# ---------------------------------------------------------------------------
@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """SQLite database file unique to the test."""
    return f"sqlite+aiosqlite:///{tmp_path / 'ctpat_test.db'}"


@pytest.fixture
def delivery_settings() -> DeliverySettings:
    """Queue settings with no backoff so retries are immediately claimable."""
    return DeliverySettings(
        max_retries=3,
        batch_size=10,
        send_timeout_seconds=5.0,
        base_backoff_seconds=0,
    )


@pytest.fixture
def settings(database_url: str, delivery_settings: DeliverySettings) -> Settings:
    """Development settings pointing at the test database."""
    return Settings(
        environment="dev",
        log_level="DEBUG",
        database=DatabaseSettings(url=database_url, pool_timeout=10),
        smtp=SMTPSettings(provider="smtp", host="localhost", from_address="reports@ctpat.test"),
        s3=S3Settings(enabled=False),
        delivery=delivery_settings,
    )


@pytest.fixture
async def database(settings: Settings) -> AsyncGenerator[Database, None]:
    """Database with the schema created, disposed after the test."""
    db = Database.from_settings(settings.database)
    await db.create_all()
    yield db
    await db.dispose()


# ---------------------------------------------------------------------------
# Collaborator fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def mail_channel() -> FakeMailChannel:
    return FakeMailChannel()


@pytest.fixture
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer()


# ---------------------------------------------------------------------------
# Data builders
# ---------------------------------------------------------------------------
def build_checklist(total: int, checked: int) -> list[ChecklistPoint]:
    """Checklist of ``total`` points whose first ``checked`` points are checked."""
    return [
        ChecklistPoint(point_id=f"p{i:02d}", label=f"Inspection point {i}", checked=i <= checked)
        for i in range(1, total + 1)
    ]


@pytest.fixture
def make_checklist() -> Callable[[int, int], list[ChecklistPoint]]:
    return build_checklist


@pytest.fixture
def make_submission() -> Callable[..., RecordSubmission]:
    """Factory for record submissions.

    Example:
        submission = make_submission(total=18, checked=9, status=RecordStatus.SUBMITTED)
    """

    def _make(
        *,
        total: int = 4,
        checked: int = 2,
        status: RecordStatus = RecordStatus.DRAFT,
        **fields,
    ) -> RecordSubmission:
        fields.setdefault("truck_number", "TRK-104")
        fields.setdefault("trailer_number", "TRL-88")
        fields.setdefault("inspector_name", "Dana Ortiz")
        fields.setdefault("recipient_email", "dispatch@carrier.test")
        return RecordSubmission(checklist=build_checklist(total, checked), status=status, **fields)

    return _make


@pytest.fixture
def checklist_payload() -> Callable[[int, int], list[dict]]:
    """Factory for JSON checklists as sent to the API."""

    def _payload(total: int = 4, checked: int = 2) -> list[dict]:
        return [
            {"point_id": p.point_id, "label": p.label, "checked": p.checked}
            for p in build_checklist(total, checked)
        ]

    return _payload


# ---------------------------------------------------------------------------
# API client fixture (in-process testing via ASGI transport)
# ---------------------------------------------------------------------------
@pytest.fixture
def test_app(
    settings: Settings,
    database: Database,
    mail_channel: FakeMailChannel,
    blob_store: FakeBlobStore,
    renderer: FakeRenderer,
):
    """FastAPI application wired to the test database and fakes."""
    return create_app(
        settings,
        database=database,
        mail_channel=mail_channel,
        blob_store=blob_store,
        renderer=renderer,
    )


@pytest.fixture
async def api_client(test_app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing the API.

    Uses httpx with ASGI transport for in-process testing.
    """
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
