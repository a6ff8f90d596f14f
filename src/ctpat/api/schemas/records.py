"""Pydantic schemas for inspection record endpoints.

These schemas define the request/response models for submitting, listing,
updating and deleting inspection records, and for requesting the report
email.
"""

from __future__ import annotations

# NOTE: datetime and UUID must remain at runtime for Pydantic validation
from datetime import datetime  # noqa: TC003
from uuid import UUID  # noqa: TC003

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from ctpat.db.models import RecordStatus

# -----------------------------------------------------------------------------
# Checklist
# -----------------------------------------------------------------------------


class ChecklistPointInput(BaseModel):
    """One inspection point as sent by the client."""

    point_id: str = Field(..., max_length=100, description="Stable point identifier")
    label: str = Field(..., max_length=500, description="Point label shown to the inspector")
    checked: bool = Field(False, description="Whether the point passed inspection")

    model_config = ConfigDict(extra="forbid")


class ChecklistPointResponse(BaseModel):
    """One stored inspection point."""

    point_id: str
    label: str
    checked: bool


# -----------------------------------------------------------------------------
# Create
# -----------------------------------------------------------------------------


class CreateRecordRequest(BaseModel):
    """Request schema for submitting an inspection.

    The idempotency key travels in the ``Idempotency-Key`` header, not in
    the body.
    """

    checklist: list[ChecklistPointInput] = Field(
        ..., description="Ordered inspection points; must not be empty"
    )
    status: RecordStatus = Field(
        RecordStatus.DRAFT,
        description="Initial status, draft or submitted",
    )
    truck_number: str | None = Field(None, max_length=50, description="Truck number")
    trailer_number: str | None = Field(None, max_length=50, description="Trailer number")
    seal_number: str | None = Field(None, max_length=50, description="Seal number")
    inspector_name: str | None = Field(None, max_length=200, description="Inspector name")
    verified_by_name: str | None = Field(None, max_length=200, description="Verifier name")
    recipient_email: EmailStr | None = Field(
        None, description="Default recipient of the report email"
    )
    notes: str | None = Field(None, max_length=5000, description="Free-form notes")

    model_config = ConfigDict(extra="forbid")


class CreateRecordResponse(BaseModel):
    """Response schema for a submission (new or duplicate)."""

    id: UUID = Field(..., description="Record identifier")
    status: RecordStatus = Field(..., description="Current status")
    completion_ratio: float = Field(..., description="Checked points / total points")
    is_duplicate: bool = Field(..., description="True when the idempotency key matched")
    attachment_url: str | None = Field(None, description="Public locator of the stored report")


# -----------------------------------------------------------------------------
# Read
# -----------------------------------------------------------------------------


class AuditEntryResponse(BaseModel):
    """One entry of a record's audit log."""

    position: int
    action: str
    occurred_at: datetime
    from_status: str | None = None
    to_status: str | None = None
    detail: str | None = None

    model_config = ConfigDict(from_attributes=True)


class RecordResponse(BaseModel):
    """Full record, including checklist and audit log."""

    id: UUID = Field(..., description="Record identifier")
    status: RecordStatus = Field(..., description="Current status")
    idempotency_key: str | None = Field(None, description="Client idempotency key")
    truck_number: str | None = None
    trailer_number: str | None = None
    seal_number: str | None = None
    inspector_name: str | None = None
    verified_by_name: str | None = None
    recipient_email: str | None = None
    notes: str | None = None
    checklist: list[ChecklistPointResponse] = Field(default_factory=list)
    completion_ratio: float = Field(..., description="Checked points / total points")
    attachment_ref: str | None = Field(None, description="Storage reference of the report")
    attachment_url: str | None = Field(None, description="Public locator of the report")
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = Field(None, description="First entry into submitted")
    audit_log: list[AuditEntryResponse] = Field(default_factory=list)


class RecordSummaryItem(BaseModel):
    """Record row in a listing (less detail than the full record)."""

    id: UUID
    status: RecordStatus
    truck_number: str | None = None
    trailer_number: str | None = None
    inspector_name: str | None = None
    completion_ratio: float
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


class RecordListResponse(BaseModel):
    """Paginated record listing."""

    items: list[RecordSummaryItem] = Field(..., description="Records on this page")
    total: int = Field(..., description="Total number of matching records")
    page: int = Field(..., description="1-based page number")
    limit: int = Field(..., description="Page size actually applied")
    pages: int = Field(..., description="Total number of pages")


class RecordStatsResponse(BaseModel):
    """Headline record counts."""

    total: int
    this_month: int
    this_week: int
    by_status: dict[str, int]


# -----------------------------------------------------------------------------
# Update / delete
# -----------------------------------------------------------------------------


class UpdateRecordRequest(BaseModel):
    """Request schema for PATCH: a status change, a new checklist, or both.

    When both are present the checklist is applied first, so a record can be
    completed and submitted in one request.
    """

    status: RecordStatus | None = Field(None, description="Target status")
    checklist: list[ChecklistPointInput] | None = Field(
        None, description="Replacement checklist"
    )
    detail: str | None = Field(None, max_length=500, description="Note stored on the audit entry")

    model_config = ConfigDict(extra="forbid")


class DeleteRecordResponse(BaseModel):
    """Response schema for a hard delete."""

    id: UUID
    cancelled_jobs: int = Field(..., description="Delivery jobs removed with the record")
    attachment_deleted: bool = Field(..., description="Whether the stored report was removed")


# -----------------------------------------------------------------------------
# Notify
# -----------------------------------------------------------------------------


class NotifyRequest(BaseModel):
    """Request schema for queueing the report email."""

    recipient: EmailStr | None = Field(
        None, description="Destination; defaults to the record's recipient_email"
    )

    model_config = ConfigDict(extra="forbid")


class NotifyResponse(BaseModel):
    """Response schema for a queued report email."""

    job_id: UUID = Field(..., description="Delivery job identifier")
    status: str = Field("pending", description="Initial job status")
