"""Record store for inspection records and their audit history.

Inspection records are created once per submission, mutated only through
checklist updates and the lifecycle service, and hard-deleted together with
their delivery jobs.

Every write appends to the record's audit log. Audit entries carry a
contiguous ``position`` per record so the log is strictly ordered even when
two writes land in the same clock tick.

Usage:
    from ctpat.services.records import RecordStore, RecordSubmission

    async with database.session() as session:
        store = RecordStore(session)
        record = await store.create(submission)
        await session.commit()
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from ctpat.core.errors import (
    DuplicateSubmissionError,
    InputValidationError,
    RecordLockedError,
    RecordNotFoundError,
)
from ctpat.db.models import AuditAction, InspectionRecord, RecordAuditEntry, RecordStatus
from ctpat.services.delivery_queue import DeliveryQueueService

if TYPE_CHECKING:
    import uuid
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from ctpat.services.storage import BlobStore

logger = logging.getLogger(__name__)

# Columns a caller may sort the listing by
SORTABLE_FIELDS = {
    "created_at": InspectionRecord.created_at,
    "updated_at": InspectionRecord.updated_at,
    "completed_at": InspectionRecord.completed_at,
    "truck_number": InspectionRecord.truck_number,
    "completion_ratio": InspectionRecord.completion_ratio,
}

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


@dataclass(frozen=True, slots=True)
class ChecklistPoint:
    """One inspection point as submitted by the client."""

    point_id: str
    label: str
    checked: bool = False


@dataclass(frozen=True, slots=True)
class RecordSubmission:
    """Payload of a create request.

    Attributes:
        checklist: Ordered inspection points; must not be empty.
        status: Initial status, ``draft`` or ``submitted``.
        idempotency_key: Optional client retry token.
    """

    checklist: Sequence[ChecklistPoint]
    status: RecordStatus = RecordStatus.DRAFT
    idempotency_key: str | None = None
    truck_number: str | None = None
    trailer_number: str | None = None
    seal_number: str | None = None
    inspector_name: str | None = None
    verified_by_name: str | None = None
    recipient_email: str | None = None
    notes: str | None = None


@dataclass(frozen=True, slots=True)
class RecordPage:
    """One page of a record listing."""

    items: list[InspectionRecord]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


@dataclass(frozen=True, slots=True)
class DeletedRecord:
    """Outcome of a hard delete."""

    record_id: uuid.UUID
    cancelled_jobs: int
    attachment_deleted: bool


@dataclass(frozen=True, slots=True)
class RecordSummary:
    """Headline counts for the stats view."""

    total: int
    this_month: int
    this_week: int
    by_status: dict[str, int] = field(default_factory=dict)


def normalize_checklist(points: Sequence[ChecklistPoint]) -> list[dict[str, Any]]:
    """Validate a checklist and convert it to its stored form.

    Order is preserved exactly as given.

    Raises:
        InputValidationError: If the checklist is empty, has blank ids or
            labels, or repeats a point id.
    """
    if not points:
        raise InputValidationError("Checklist must contain at least one point")

    seen: set[str] = set()
    normalized = []
    for index, point in enumerate(points):
        point_id = point.point_id.strip()
        if not point_id:
            raise InputValidationError(
                "Checklist point id must not be blank",
                detail={"index": index},
            )
        if not point.label.strip():
            raise InputValidationError(
                "Checklist point label must not be blank",
                detail={"index": index, "point_id": point_id},
            )
        if point_id in seen:
            raise InputValidationError(
                f"Duplicate checklist point id: {point_id}",
                detail={"point_id": point_id},
            )
        seen.add(point_id)
        normalized.append(
            {"point_id": point_id, "label": point.label, "checked": bool(point.checked)}
        )
    return normalized


def compute_completion_ratio(checklist: Sequence[dict[str, Any]]) -> float:
    """Fraction of checked points, in [0, 1]."""
    if not checklist:
        return 0.0
    checked = sum(1 for point in checklist if point.get("checked"))
    return checked / len(checklist)


def append_audit_entry(
    record: InspectionRecord,
    action: AuditAction,
    *,
    occurred_at: datetime,
    from_status: RecordStatus | None = None,
    to_status: RecordStatus | None = None,
    detail: str | None = None,
) -> RecordAuditEntry:
    """Append an entry to the record's audit log.

    The record must be loaded under the row lock held by the caller so the
    next position is computed from the current log length.
    """
    entry = RecordAuditEntry(
        position=len(record.audit_entries),
        action=action,
        occurred_at=occurred_at,
        from_status=from_status.value if from_status else None,
        to_status=to_status.value if to_status else None,
        detail=detail,
    )
    record.audit_entries.append(entry)
    return entry


class RecordStore:
    """Durable keyed storage for inspection records.

    Methods flush but never commit; the caller owns the transaction.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        blob_store: BlobStore | None = None,
        max_page_size: int = MAX_PAGE_SIZE,
    ) -> None:
        self.session = session
        self.blob_store = blob_store
        self.max_page_size = max_page_size

    async def create(self, submission: RecordSubmission) -> InspectionRecord:
        """Persist a new record.

        Raises:
            InputValidationError: If the payload is malformed.
            DuplicateSubmissionError: If the idempotency key is already taken.
        """
        if submission.status not in (RecordStatus.DRAFT, RecordStatus.SUBMITTED):
            raise InputValidationError(
                f"Records cannot be created as {submission.status.value}",
                detail={"status": submission.status.value},
            )
        checklist = normalize_checklist(submission.checklist)
        now = datetime.now(UTC)

        record = InspectionRecord(
            idempotency_key=submission.idempotency_key,
            status=submission.status,
            truck_number=submission.truck_number,
            trailer_number=submission.trailer_number,
            seal_number=submission.seal_number,
            inspector_name=submission.inspector_name,
            verified_by_name=submission.verified_by_name,
            recipient_email=submission.recipient_email,
            notes=submission.notes,
            checklist=checklist,
            completion_ratio=compute_completion_ratio(checklist),
            created_at=now,
            updated_at=now,
            completed_at=now if submission.status == RecordStatus.SUBMITTED else None,
            audit_entries=[],
        )
        append_audit_entry(
            record,
            AuditAction.CREATED,
            occurred_at=now,
            to_status=submission.status,
        )

        # The unique index on idempotency_key is the arbiter; the savepoint
        # keeps the outer transaction usable after a conflict.
        try:
            async with self.session.begin_nested():
                self.session.add(record)
        except IntegrityError as e:
            if submission.idempotency_key is None:
                raise
            raise DuplicateSubmissionError(submission.idempotency_key) from e

        logger.info(
            "Record created: record_id=%s, status=%s, points=%d, completion=%.2f",
            record.record_id,
            record.status.value,
            len(checklist),
            record.completion_ratio,
        )
        return record

    async def insert_or_fetch(self, submission: RecordSubmission) -> tuple[InspectionRecord, bool]:
        """Insert a record, or return the existing one holding the same key.

        Returns:
            Tuple of (record, created).
        """
        try:
            return await self.create(submission), True
        except DuplicateSubmissionError:
            existing = await self.get_by_idempotency_key(submission.idempotency_key or "")
            if existing is None:
                # Winner rolled back between our conflict and the lookup
                raise
            return existing, False

    async def get(self, record_id: uuid.UUID) -> InspectionRecord:
        """Load a record with its audit log.

        Raises:
            RecordNotFoundError: If no record has this id.
        """
        record = await self.session.get(InspectionRecord, record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        return record

    async def get_for_update(self, record_id: uuid.UUID) -> InspectionRecord:
        """Load a record under a row lock for a read-modify-write."""
        stmt = (
            select(InspectionRecord)
            .where(InspectionRecord.record_id == record_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        record = result.scalar_one_or_none()
        if record is None:
            raise RecordNotFoundError(record_id)
        return record

    async def get_by_idempotency_key(self, idempotency_key: str) -> InspectionRecord | None:
        stmt = select(InspectionRecord).where(InspectionRecord.idempotency_key == idempotency_key)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def update_checklist(
        self,
        record_id: uuid.UUID,
        checklist: Sequence[ChecklistPoint],
    ) -> InspectionRecord:
        """Replace the checklist and recompute the completion ratio.

        Raises:
            RecordNotFoundError: If the record does not exist.
            RecordLockedError: If the record is archived.
            InputValidationError: If the checklist is malformed.
        """
        normalized = normalize_checklist(checklist)
        record = await self.get_for_update(record_id)
        if record.status == RecordStatus.ARCHIVED:
            raise RecordLockedError(record_id, record.status.value)

        previous_ratio = record.completion_ratio
        now = datetime.now(UTC)
        record.checklist = normalized
        record.completion_ratio = compute_completion_ratio(normalized)
        record.updated_at = now
        append_audit_entry(
            record,
            AuditAction.MODIFIED,
            occurred_at=now,
            detail=f"checklist updated ({len(normalized)} points, "
            f"completion {previous_ratio:.2f} -> {record.completion_ratio:.2f})",
        )
        await self.session.flush()

        logger.info(
            "Checklist updated: record_id=%s, points=%d, completion=%.2f",
            record_id,
            len(normalized),
            record.completion_ratio,
        )
        return record

    async def list_records(
        self,
        *,
        status: RecordStatus | None = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> RecordPage:
        """List records with filtering, sorting and pagination.

        ``limit`` is clamped to the configured maximum page size.

        Raises:
            InputValidationError: On an unknown sort field or order.
        """
        column = SORTABLE_FIELDS.get(sort_by)
        if column is None:
            raise InputValidationError(
                f"Cannot sort by {sort_by}",
                detail={"allowed": sorted(SORTABLE_FIELDS)},
            )
        if sort_order not in ("asc", "desc"):
            raise InputValidationError("sort_order must be 'asc' or 'desc'")

        page = max(page, 1)
        limit = min(max(limit, 1), self.max_page_size)

        query = select(InspectionRecord)
        if status is not None:
            query = query.where(InspectionRecord.status == status)

        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.session.execute(count_query)).scalar() or 0

        ordering = column.asc() if sort_order == "asc" else column.desc()
        # Tie-break on id so pages never overlap
        query = (
            query.order_by(ordering, InspectionRecord.record_id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        result = await self.session.execute(query)
        return RecordPage(items=list(result.scalars().all()), total=total, page=page, limit=limit)

    async def delete(self, record_id: uuid.UUID) -> DeletedRecord:
        """Hard-delete a record.

        Dependent delivery jobs go first, then the record and its audit log,
        then the stored attachment. A failed attachment deletion is logged and
        does not undo the delete.

        Raises:
            RecordNotFoundError: If the record does not exist.
        """
        record = await self.get_for_update(record_id)
        attachment_ref = record.attachment_ref

        cancelled = await DeliveryQueueService(self.session).cancel_for_record(record_id)
        await self.session.delete(record)
        await self.session.flush()

        attachment_deleted = False
        if attachment_ref and self.blob_store is not None:
            try:
                await asyncio.to_thread(self.blob_store.delete, attachment_ref)
                attachment_deleted = True
            except Exception as e:
                logger.warning(
                    "Failed to delete stored report for deleted record: "
                    "record_id=%s, ref=%s, error=%s",
                    record_id,
                    attachment_ref,
                    e,
                )

        logger.info(
            "Record deleted: record_id=%s, cancelled_jobs=%d, attachment_deleted=%s",
            record_id,
            cancelled,
            attachment_deleted,
        )
        return DeletedRecord(
            record_id=record_id,
            cancelled_jobs=cancelled,
            attachment_deleted=attachment_deleted,
        )

    async def summary(self, *, now: datetime | None = None) -> RecordSummary:
        """Count records overall, this calendar month and the last seven days."""
        now = now or datetime.now(UTC)
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        week_start = now - timedelta(days=7)

        total_query = select(func.count(InspectionRecord.record_id))
        total = (await self.session.execute(total_query)).scalar() or 0
        this_month = (
            await self.session.execute(
                select(func.count(InspectionRecord.record_id)).where(
                    InspectionRecord.created_at >= month_start
                )
            )
        ).scalar() or 0
        this_week = (
            await self.session.execute(
                select(func.count(InspectionRecord.record_id)).where(
                    InspectionRecord.created_at >= week_start
                )
            )
        ).scalar() or 0

        status_rows = await self.session.execute(
            select(InspectionRecord.status, func.count(InspectionRecord.record_id)).group_by(
                InspectionRecord.status
            )
        )
        by_status = {status.value: 0 for status in RecordStatus}
        for status, count in status_rows.all():
            by_status[status.value] = count

        return RecordSummary(
            total=total,
            this_month=this_month,
            this_week=this_week,
            by_status=by_status,
        )
