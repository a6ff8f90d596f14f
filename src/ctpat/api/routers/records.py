"""Inspection records API router.

Handles submission (idempotent), listing, lifecycle updates, deletion and
report email requests for inspection records.

A record that is created as, or moved to, ``submitted`` gets its report
rendered and stored right after the change is committed. Rendering or
storage being down never fails the request.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated
from uuid import UUID

from fastapi import APIRouter, Header, Query, Response, status

from ctpat.api.dependencies import (
    AppSettings,
    BlobStoreDep,
    DbSession,
    RendererDep,
)
from ctpat.api.schemas.queue import JobListResponse, JobResponse
from ctpat.api.schemas.records import (
    AuditEntryResponse,
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
from ctpat.core.errors import InputValidationError
from ctpat.db.models import RecordStatus
from ctpat.services.delivery_queue import DeliveryQueueService
from ctpat.services.idempotency import IdempotencyGuard
from ctpat.services.lifecycle import InspectionLifecycleService
from ctpat.services.notifications import NotificationService
from ctpat.services.records import ChecklistPoint, RecordStore, RecordSubmission

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from ctpat.api.schemas.records import ChecklistPointInput
    from ctpat.core.config import Settings
    from ctpat.db.models import InspectionRecord
    from ctpat.services.report import ReportRenderer
    from ctpat.services.storage import BlobStore

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/records",
    tags=["records"],
    responses={404: {"description": "Record not found"}},
)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _to_points(points: Sequence[ChecklistPointInput]) -> list[ChecklistPoint]:
    return [
        ChecklistPoint(point_id=p.point_id, label=p.label, checked=p.checked) for p in points
    ]


def _record_to_response(record: InspectionRecord) -> RecordResponse:
    return RecordResponse(
        id=record.record_id,
        status=record.status,
        idempotency_key=record.idempotency_key,
        truck_number=record.truck_number,
        trailer_number=record.trailer_number,
        seal_number=record.seal_number,
        inspector_name=record.inspector_name,
        verified_by_name=record.verified_by_name,
        recipient_email=record.recipient_email,
        notes=record.notes,
        checklist=[ChecklistPointResponse(**point) for point in record.checklist],
        completion_ratio=record.completion_ratio,
        attachment_ref=record.attachment_ref,
        attachment_url=record.attachment_url,
        created_at=record.created_at,
        updated_at=record.updated_at,
        completed_at=record.completed_at,
        audit_log=[
            AuditEntryResponse(
                position=entry.position,
                action=entry.action.value,
                occurred_at=entry.occurred_at,
                from_status=entry.from_status,
                to_status=entry.to_status,
                detail=entry.detail,
            )
            for entry in record.audit_entries
        ],
    )


def _notifications(
    db: AsyncSession,
    settings: Settings,
    renderer: ReportRenderer | None,
    blob_store: BlobStore | None,
) -> NotificationService:
    return NotificationService(
        db,
        delivery=settings.delivery,
        renderer=renderer,
        blob_store=blob_store,
        app_name=settings.app_name,
    )


# -----------------------------------------------------------------------------
# Submission
# -----------------------------------------------------------------------------


@router.post(
    "",
    response_model=CreateRecordResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit an inspection",
    description=(
        "Creates a record. With an Idempotency-Key header, a retried request "
        "returns the original record with 200 and has no side effects."
    ),
    responses={200: {"description": "Duplicate submission; existing record returned"}},
)
async def create_record(
    request: CreateRecordRequest,
    response: Response,
    db: DbSession,
    settings: AppSettings,
    renderer: RendererDep,
    blob_store: BlobStoreDep,
    idempotency_key: Annotated[
        str | None,
        Header(alias="Idempotency-Key", description="Client retry token"),
    ] = None,
) -> CreateRecordResponse:
    """Submit an inspection record.

    Args:
        request: Record payload.
        response: Outgoing response (status switched to 200 on duplicates).
        db: Database session.
        settings: Application settings.
        renderer: Report renderer, if configured.
        blob_store: Report storage, if configured.
        idempotency_key: Optional client retry token.

    Returns:
        The new or existing record with ``is_duplicate``.
    """
    submission = RecordSubmission(
        checklist=_to_points(request.checklist),
        status=request.status,
        truck_number=request.truck_number,
        trailer_number=request.trailer_number,
        seal_number=request.seal_number,
        inspector_name=request.inspector_name,
        verified_by_name=request.verified_by_name,
        recipient_email=request.recipient_email,
        notes=request.notes,
    )

    result = await IdempotencyGuard(db).submit(idempotency_key, submission)
    await db.commit()

    record = result.record
    if result.is_duplicate:
        response.status_code = status.HTTP_200_OK
    elif record.status == RecordStatus.SUBMITTED:
        if await _notifications(db, settings, renderer, blob_store).attach_report(record.record_id):
            await db.commit()

    return CreateRecordResponse(
        id=record.record_id,
        status=record.status,
        completion_ratio=record.completion_ratio,
        is_duplicate=result.is_duplicate,
        attachment_url=record.attachment_url,
    )


# -----------------------------------------------------------------------------
# Read
# -----------------------------------------------------------------------------


@router.get(
    "",
    response_model=RecordListResponse,
    summary="List inspection records",
)
async def list_records(
    db: DbSession,
    settings: AppSettings,
    status_filter: Annotated[
        RecordStatus | None, Query(alias="status", description="Filter by status")
    ] = None,
    sort_by: Annotated[str, Query(description="Sort column")] = "created_at",
    sort_order: Annotated[str, Query(pattern="^(asc|desc)$")] = "desc",
    page: Annotated[int, Query(ge=1, description="1-based page number")] = 1,
    limit: Annotated[int | None, Query(ge=1, description="Page size")] = None,
) -> RecordListResponse:
    """List records with filtering, sorting and pagination.

    Page sizes above the configured maximum are clamped.
    """
    store = RecordStore(db, max_page_size=settings.listing.max_page_size)
    result = await store.list_records(
        status=status_filter,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit or settings.listing.default_page_size,
    )
    return RecordListResponse(
        items=[
            RecordSummaryItem(
                id=r.record_id,
                status=r.status,
                truck_number=r.truck_number,
                trailer_number=r.trailer_number,
                inspector_name=r.inspector_name,
                completion_ratio=r.completion_ratio,
                created_at=r.created_at,
                updated_at=r.updated_at,
                completed_at=r.completed_at,
            )
            for r in result.items
        ],
        total=result.total,
        page=result.page,
        limit=result.limit,
        pages=result.pages,
    )


@router.get(
    "/stats",
    response_model=RecordStatsResponse,
    summary="Record counts",
)
async def record_stats(db: DbSession) -> RecordStatsResponse:
    summary = await RecordStore(db).summary()
    return RecordStatsResponse(
        total=summary.total,
        this_month=summary.this_month,
        this_week=summary.this_week,
        by_status=summary.by_status,
    )


@router.get(
    "/{record_id}",
    response_model=RecordResponse,
    summary="Get an inspection record",
)
async def get_record(record_id: UUID, db: DbSession) -> RecordResponse:
    record = await RecordStore(db).get(record_id)
    return _record_to_response(record)


# -----------------------------------------------------------------------------
# Update / delete
# -----------------------------------------------------------------------------


@router.patch(
    "/{record_id}",
    response_model=RecordResponse,
    summary="Update checklist and/or status",
    responses={409: {"description": "Invalid transition or archived record"}},
)
async def update_record(
    record_id: UUID,
    request: UpdateRecordRequest,
    db: DbSession,
    settings: AppSettings,
    renderer: RendererDep,
    blob_store: BlobStoreDep,
) -> RecordResponse:
    """Apply a checklist replacement and/or a status transition atomically.

    Raises:
        InputValidationError: If neither field is present.
        InvalidTransitionError: If the transition is not allowed.
        RecordLockedError: If the checklist of an archived record is changed.
    """
    if request.status is None and request.checklist is None:
        raise InputValidationError("Provide a status, a checklist, or both")

    store = RecordStore(db)
    record = None
    if request.checklist is not None:
        record = await store.update_checklist(record_id, _to_points(request.checklist))

    entered_submitted = False
    if request.status is not None:
        lifecycle = InspectionLifecycleService(db, blob_store=blob_store)
        transition = await lifecycle.transition(record_id, request.status, detail=request.detail)
        record = transition.record
        entered_submitted = transition.changed and transition.new_status == RecordStatus.SUBMITTED

    await db.commit()

    if entered_submitted:
        if await _notifications(db, settings, renderer, blob_store).attach_report(record_id):
            await db.commit()

    if record is None:
        record = await store.get(record_id)
    return _record_to_response(record)


@router.delete(
    "/{record_id}",
    response_model=DeleteRecordResponse,
    summary="Delete an inspection record",
    description="Hard delete. Pending and past delivery jobs are removed first.",
)
async def delete_record(
    record_id: UUID,
    db: DbSession,
    blob_store: BlobStoreDep,
) -> DeleteRecordResponse:
    deleted = await RecordStore(db, blob_store=blob_store).delete(record_id)
    await db.commit()
    return DeleteRecordResponse(
        id=deleted.record_id,
        cancelled_jobs=deleted.cancelled_jobs,
        attachment_deleted=deleted.attachment_deleted,
    )


# -----------------------------------------------------------------------------
# Notification
# -----------------------------------------------------------------------------


@router.post(
    "/{record_id}/notify",
    response_model=NotifyResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue the report email",
    description="Enqueues delivery only; the dispatcher sends it asynchronously.",
)
async def notify_record(
    record_id: UUID,
    db: DbSession,
    settings: AppSettings,
    renderer: RendererDep,
    blob_store: BlobStoreDep,
    request: NotifyRequest | None = None,
) -> NotifyResponse:
    recipient = request.recipient if request is not None else None
    job_id = await _notifications(db, settings, renderer, blob_store).notify(record_id, recipient)
    await db.commit()
    return NotifyResponse(job_id=job_id)


@router.get(
    "/{record_id}/jobs",
    response_model=JobListResponse,
    summary="Delivery history of a record",
)
async def list_record_jobs(
    record_id: UUID,
    db: DbSession,
    settings: AppSettings,
) -> JobListResponse:
    await RecordStore(db).get(record_id)
    queue = DeliveryQueueService.from_settings(db, settings.delivery)
    jobs = await queue.list_jobs(record_id=record_id)
    return JobListResponse(
        items=[JobResponse.model_validate(job) for job in jobs],
        total=len(jobs),
    )
