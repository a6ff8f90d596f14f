"""Inspection record models: records and their append-only audit entries."""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from typing import Any

from sqlalchemy import Enum, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ctpat.db.models.base import (
    JSONB,
    AuditAction,
    Base,
    OptionalTimestampTZ,
    RecordStatus,
    TimestampTZ,
    UUIDPrimaryKey,
    enum_values,
)


class InspectionRecord(Base):
    """A submitted (or draft) CTPAT inspection.

    The checklist is stored as an ordered JSON array of
    ``{"point_id", "label", "checked"}`` objects; order maps onto the fixed
    external form and is never rearranged.
    """

    __tablename__ = "inspection_records"

    record_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    # Client-supplied retry token; unique when present
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)

    status: Mapped[RecordStatus] = mapped_column(
        Enum(
            RecordStatus,
            name="record_status",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
        default=RecordStatus.DRAFT,
    )

    # Vehicle and inspector header
    truck_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    trailer_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    seal_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    inspector_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    verified_by_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    recipient_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    checklist: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, nullable=False)
    completion_ratio: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    # Rendered report in blob storage; written only by the lifecycle service
    attachment_ref: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    attachment_url: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    # Set once, on the first transition into SUBMITTED
    completed_at: Mapped[OptionalTimestampTZ]

    audit_entries: Mapped[list[RecordAuditEntry]] = relationship(
        "RecordAuditEntry",
        back_populates="record",
        order_by="RecordAuditEntry.position",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_inspection_records_status_created_at", "status", "created_at"),
        Index("ix_inspection_records_truck_number_created_at", "truck_number", "created_at"),
        Index("ix_inspection_records_completed_at", "completed_at"),
    )


class RecordAuditEntry(Base):
    """One entry of a record's audit log.

    Entries are only ever inserted. ``position`` is contiguous per record and
    the unique constraint on ``(record_id, position)`` keeps concurrent
    appenders from interleaving.
    """

    __tablename__ = "record_audit_entries"

    entry_id: Mapped[UUIDPrimaryKey]

    record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("inspection_records.record_id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    action: Mapped[AuditAction] = mapped_column(
        Enum(
            AuditAction,
            name="audit_action",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
    )
    occurred_at: Mapped[TimestampTZ]
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)

    record: Mapped[InspectionRecord] = relationship(
        "InspectionRecord",
        back_populates="audit_entries",
    )

    __table_args__ = (
        UniqueConstraint("record_id", "position", name="uq_record_audit_entries_record_position"),
    )
