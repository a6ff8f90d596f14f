"""Pydantic schemas for delivery queue endpoints."""

from __future__ import annotations

# NOTE: datetime and UUID must remain at runtime for Pydantic validation
from datetime import datetime  # noqa: TC003
from uuid import UUID  # noqa: TC003

from pydantic import BaseModel, ConfigDict, Field

from ctpat.db.models import JobStatus


class JobResponse(BaseModel):
    """One delivery job."""

    job_id: UUID
    record_id: UUID
    recipient: str
    subject: str
    status: JobStatus
    attachment_ref: str | None = None
    retry_count: int = Field(..., description="Failed attempts so far")
    max_retries: int = Field(..., description="Failed attempts allowed before giving up")
    last_error: str | None = Field(None, description="Error of the most recent failed attempt")
    run_at: datetime = Field(..., description="Earliest time of the next attempt")
    claimed_by: str | None = None
    message_id: str | None = None
    created_at: datetime
    updated_at: datetime
    sent_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class JobListResponse(BaseModel):
    """Listing of delivery jobs, newest first."""

    items: list[JobResponse]
    total: int = Field(..., description="Number of jobs returned")


class QueueStatsResponse(BaseModel):
    """Job counts by status plus mail channel readiness."""

    pending: int
    in_flight: int
    sent: int
    failed: int
    total: int
    channel_ready: bool = Field(..., description="Whether the mail channel can send")


class DispatchResponse(BaseModel):
    """Outcome of one dispatcher batch."""

    sent: int
    failed: int
    retried: int
    skipped_reason: str | None = None
