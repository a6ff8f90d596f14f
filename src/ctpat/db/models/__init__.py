"""SQLAlchemy ORM models for CTPAT Relay.

- base: Common metadata, portable column types and enums
- records: Inspection records and their audit entries
- jobs: Database-backed delivery queue
"""

from ctpat.db.models.base import AuditAction, Base, JobStatus, RecordStatus, metadata
from ctpat.db.models.jobs import DeliveryJob
from ctpat.db.models.records import InspectionRecord, RecordAuditEntry

__all__ = [
    "AuditAction",
    "Base",
    "DeliveryJob",
    "InspectionRecord",
    "JobStatus",
    "RecordAuditEntry",
    "RecordStatus",
    "metadata",
]
