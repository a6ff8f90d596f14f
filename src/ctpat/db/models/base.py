"""Base model definitions, portable column types and common enums.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Portable column types (JSONB on PostgreSQL, JSON elsewhere; UTC datetimes)
- Enum types shared by the record and queue models
"""

import enum
import uuid
from datetime import UTC, datetime
from typing import Annotated

from sqlalchemy import JSON, DateTime, MetaData, Uuid
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry
from sqlalchemy.types import TypeDecorator

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

# Shared metadata with naming convention
metadata = MetaData(naming_convention=NAMING_CONVENTION)

# Custom type registry for reusable type annotations
type_registry = registry()


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


class JSONB(TypeDecorator):
    """A portable JSONB type that works with both PostgreSQL and SQLite."""

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_JSONB())
        return dialect.type_descriptor(JSON())


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime column that always round-trips as UTC.

    SQLite has no timezone support, so values are stored there as naive UTC
    and re-tagged on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# UUID primary key generated client-side so inserts are portable
UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4),
]

# Timestamp with timezone, defaults to now
TimestampTZ = Annotated[
    datetime,
    mapped_column(UTCDateTime(), default=utcnow, nullable=False),
]

# Optional timestamp with timezone
OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(UTCDateTime(), nullable=True),
]


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Persist enum values (not member names) in the database."""
    return [member.value for member in enum_cls]


class Base(DeclarativeBase):
    """Declarative base for all CTPAT Relay models."""

    metadata = metadata
    registry = type_registry


# =============================================================================
# Common Enums
# =============================================================================


class RecordStatus(enum.Enum):
    """Inspection record lifecycle states.

    States:
        DRAFT: Inspection saved but not yet submitted
        SUBMITTED: Inspection completed and submitted
        ARCHIVED: Terminal; the record is read-only
    """

    DRAFT = "draft"
    SUBMITTED = "submitted"
    ARCHIVED = "archived"


class AuditAction(enum.Enum):
    """Actions recorded in a record's append-only audit log.

    Values:
        CREATED: Record was created
        MODIFIED: Checklist was replaced
        STATUS_CHANGED: Lifecycle transition (including same-state no-ops)
        ATTACHMENT_UPDATED: Rendered report stored or replaced
    """

    CREATED = "created"
    MODIFIED = "modified"
    STATUS_CHANGED = "status_changed"
    ATTACHMENT_UPDATED = "attachment_updated"


class JobStatus(enum.Enum):
    """Status of a delivery job.

    Values:
        PENDING: Waiting to be claimed (possibly after a backoff)
        IN_FLIGHT: Claimed by exactly one dispatcher
        SENT: Delivered; terminal
        FAILED: Retry budget exhausted; terminal
    """

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SENT = "sent"
    FAILED = "failed"
