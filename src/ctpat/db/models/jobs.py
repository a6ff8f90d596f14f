"""Delivery job model for the database-backed notification queue.

This provides a simple, reliable job queue on the primary database:
- Conditional status updates (and SKIP LOCKED on PostgreSQL) for exclusive claims
- Retry with exponential backoff
- Terminal failure after a bounded number of attempts
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import Enum, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ctpat.db.models.base import (
    Base,
    JobStatus,
    OptionalTimestampTZ,
    TimestampTZ,
    UTCDateTime,
    UUIDPrimaryKey,
    enum_values,
    utcnow,
)


class DeliveryJob(Base):
    """One pending or completed attempt to email an inspection report.

    A job belongs to its record: deleting the record removes its jobs.
    """

    __tablename__ = "delivery_jobs"

    job_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("inspection_records.record_id", ondelete="CASCADE"),
        nullable=False,
    )

    # Message content, frozen at enqueue time
    recipient: Mapped[str] = mapped_column(String(320), nullable=False)
    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    attachment_ref: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="job_status",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
        default=JobStatus.PENDING,
    )

    # Earliest time the job may be claimed (moved forward by backoff)
    run_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    # Claim tracking
    claimed_at: Mapped[OptionalTimestampTZ]
    claimed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Retry tracking
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Outcome
    sent_at: Mapped[OptionalTimestampTZ]
    message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        # Primary query for dispatchers: pending jobs ready to run, oldest first
        Index("ix_delivery_jobs_claim", "status", "run_at", "created_at"),
        Index("ix_delivery_jobs_record_id", "record_id"),
        # For purging old sent jobs
        Index("ix_delivery_jobs_sent_at", "sent_at"),
    )
