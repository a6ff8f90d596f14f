"""API request/response schemas.

Pydantic models for request validation and response serialization.
"""

from ctpat.api.schemas.queue import (
    DispatchResponse,
    JobListResponse,
    JobResponse,
    QueueStatsResponse,
)
from ctpat.api.schemas.records import (
    AuditEntryResponse,
    ChecklistPointInput,
    ChecklistPointResponse,
    CreateRecordRequest,
    CreateRecordResponse,
    DeleteRecordResponse,
    NotifyRequest,
    NotifyResponse,
    RecordListResponse,
    RecordResponse,
    RecordStatsResponse,
    RecordSummaryItem,
    UpdateRecordRequest,
)

__all__ = [
    "AuditEntryResponse",
    "ChecklistPointInput",
    "ChecklistPointResponse",
    "CreateRecordRequest",
    "CreateRecordResponse",
    "DeleteRecordResponse",
    "DispatchResponse",
    "JobListResponse",
    "JobResponse",
    "NotifyRequest",
    "NotifyResponse",
    "QueueStatsResponse",
    "RecordListResponse",
    "RecordResponse",
    "RecordStatsResponse",
    "RecordSummaryItem",
    "UpdateRecordRequest",
]
