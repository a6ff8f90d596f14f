"""Delivery queue API router.

Operator endpoints for the report email queue: counts, job listing, an
on-demand dispatcher run, and manual retry of terminally failed jobs.
"""

from __future__ import annotations

import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Query

from ctpat.api.dependencies import (
    AppDatabase,
    AppSettings,
    BlobStoreDep,
    DbSession,
    MailChannelDep,
)
from ctpat.api.schemas.queue import (
    DispatchResponse,
    JobListResponse,
    JobResponse,
    QueueStatsResponse,
)
from ctpat.db.models import JobStatus
from ctpat.services.delivery_queue import DeliveryQueueService
from ctpat.services.dispatcher import Dispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/queue", tags=["queue"])


@router.get(
    "/stats",
    response_model=QueueStatsResponse,
    summary="Queue counts by status",
)
async def queue_stats(
    db: DbSession,
    settings: AppSettings,
    mail_channel: MailChannelDep,
) -> QueueStatsResponse:
    stats = await DeliveryQueueService.from_settings(db, settings.delivery).get_stats()
    return QueueStatsResponse(
        pending=stats.pending,
        in_flight=stats.in_flight,
        sent=stats.sent,
        failed=stats.failed,
        total=stats.total,
        channel_ready=mail_channel.is_ready(),
    )


@router.get(
    "/jobs",
    response_model=JobListResponse,
    summary="List delivery jobs",
)
async def list_jobs(
    db: DbSession,
    settings: AppSettings,
    status_filter: Annotated[
        JobStatus | None, Query(alias="status", description="Filter by status")
    ] = None,
    limit: Annotated[int, Query(ge=1, le=500, description="Maximum jobs returned")] = 100,
) -> JobListResponse:
    queue = DeliveryQueueService.from_settings(db, settings.delivery)
    jobs = await queue.list_jobs(status=status_filter, limit=limit)
    return JobListResponse(
        items=[JobResponse.model_validate(job) for job in jobs],
        total=len(jobs),
    )


@router.post(
    "/dispatch",
    response_model=DispatchResponse,
    summary="Run one dispatcher batch now",
)
async def dispatch(
    database: AppDatabase,
    settings: AppSettings,
    mail_channel: MailChannelDep,
    blob_store: BlobStoreDep,
    max_jobs: Annotated[int | None, Query(ge=1, le=500, description="Batch size")] = None,
) -> DispatchResponse:
    """Claim and deliver one batch synchronously.

    The dispatcher opens its own sessions, one per claim and per outcome.
    """
    dispatcher = Dispatcher(
        database.session_factory,
        mail_channel,
        settings.delivery,
        blob_store=blob_store,
        worker_id="api-dispatch",
    )
    result = await dispatcher.run_batch(max_jobs)
    return DispatchResponse(
        sent=result.sent,
        failed=result.failed,
        retried=result.retried,
        skipped_reason=result.skipped_reason,
    )


@router.post(
    "/jobs/{job_id}/retry",
    response_model=JobResponse,
    summary="Retry a failed job",
    responses={
        404: {"description": "Job not found"},
        409: {"description": "Job is not in failed status"},
    },
)
async def retry_job(job_id: UUID, db: DbSession, settings: AppSettings) -> JobResponse:
    job = await DeliveryQueueService.from_settings(db, settings.delivery).retry_failed_job(job_id)
    await db.commit()
    logger.info("Operator retry requested: job_id=%s", job_id)
    return JobResponse.model_validate(job)
