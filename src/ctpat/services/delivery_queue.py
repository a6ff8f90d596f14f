"""Database-backed delivery queue for inspection report emails.

Each job is one email about one inspection record. Jobs move through:

    pending -> in_flight -> sent
                         -> pending (retry with backoff)
                         -> failed  (retry budget exhausted)

Claiming is the concurrency-critical step. Candidates are selected oldest
first (with ``FOR UPDATE SKIP LOCKED`` on PostgreSQL) and each is then taken
with a conditional ``UPDATE ... WHERE status = 'pending'``. Only rows whose
update matched are returned, so no two callers ever hold the same job.

Usage:
    from ctpat.services.delivery_queue import DeliveryQueueService

    async with database.session() as session:
        queue = DeliveryQueueService.from_settings(session, settings.delivery)
        jobs = await queue.claim_batch(10, "worker-1")
        await session.commit()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError

from ctpat.core.errors import (
    InputValidationError,
    InvalidJobStateError,
    JobNotFoundError,
    JobQueueError,
    RecordNotFoundError,
)
from ctpat.db.models import DeliveryJob, InspectionRecord, JobStatus

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from ctpat.core.config import DeliverySettings

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_BACKOFF = 30
DEFAULT_ERROR_MAX_LENGTH = 500


def truncate_error(error: str, max_length: int = DEFAULT_ERROR_MAX_LENGTH) -> str:
    """Bound stored error text so verbose tracebacks cannot grow rows."""
    if len(error) <= max_length:
        return error
    return error[: max_length - 3] + "..."


@dataclass(frozen=True, slots=True)
class QueueStats:
    """Job counts by status."""

    pending: int
    in_flight: int
    sent: int
    failed: int

    @property
    def total(self) -> int:
        return self.pending + self.in_flight + self.sent + self.failed


class DeliveryQueueService:
    """Durable queue of notification jobs with bounded retries.

    Attributes:
        session: SQLAlchemy async session for database operations.
        max_retries: Failed attempts before a job becomes terminal.
        base_backoff_seconds: Backoff base, doubled per failed attempt.
        error_max_length: Stored error text is truncated to this length.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_backoff_seconds: int = DEFAULT_BASE_BACKOFF,
        error_max_length: int = DEFAULT_ERROR_MAX_LENGTH,
    ) -> None:
        self.session = session
        self.max_retries = max_retries
        self.base_backoff_seconds = base_backoff_seconds
        self.error_max_length = error_max_length

    @classmethod
    def from_settings(
        cls, session: AsyncSession, settings: DeliverySettings
    ) -> DeliveryQueueService:
        return cls(
            session,
            max_retries=settings.max_retries,
            base_backoff_seconds=settings.base_backoff_seconds,
            error_max_length=settings.error_max_length,
        )

    async def enqueue(
        self,
        record_id: uuid.UUID,
        recipient: str,
        subject: str,
        body: str,
        attachment_ref: str | None = None,
    ) -> uuid.UUID:
        """Add a delivery job for a record.

        Returns:
            UUID of the created job.

        Raises:
            InputValidationError: If recipient or subject is blank.
            RecordNotFoundError: If the record does not exist.
            JobQueueError: If job creation fails.
        """
        if not recipient.strip():
            raise InputValidationError("Recipient must not be blank")
        if not subject.strip():
            raise InputValidationError("Subject must not be blank")

        if await self.session.get(InspectionRecord, record_id) is None:
            raise RecordNotFoundError(record_id)

        now = datetime.now(UTC)
        job = DeliveryJob(
            record_id=record_id,
            recipient=recipient.strip(),
            subject=subject,
            body=body,
            attachment_ref=attachment_ref,
            status=JobStatus.PENDING,
            run_at=now,
            retry_count=0,
            max_retries=self.max_retries,
            created_at=now,
            updated_at=now,
        )

        try:
            self.session.add(job)
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to enqueue job: %s", str(e))
            raise JobQueueError(f"Failed to enqueue job: {e}") from e

        logger.info(
            "Job enqueued: job_id=%s, record_id=%s, has_attachment=%s",
            job.job_id,
            record_id,
            attachment_ref is not None,
        )
        return job.job_id

    async def claim_batch(self, max_jobs: int, worker_id: str) -> list[DeliveryJob]:
        """Claim up to ``max_jobs`` ready jobs, oldest first.

        Args:
            max_jobs: Upper bound on the number of jobs returned.
            worker_id: Identifier recorded on each claimed job.

        Returns:
            Jobs now ``in_flight`` for this caller, ordered by creation.

        Raises:
            JobQueueError: If the claim fails.
        """
        if max_jobs <= 0:
            return []
        now = datetime.now(UTC)

        try:
            candidates = (
                select(DeliveryJob.job_id)
                .where(
                    DeliveryJob.status == JobStatus.PENDING,
                    DeliveryJob.run_at <= now,
                )
                .order_by(DeliveryJob.created_at, DeliveryJob.job_id)
                .limit(max_jobs)
                .with_for_update(skip_locked=True)
            )
            candidate_ids = list((await self.session.execute(candidates)).scalars().all())

            claimed_ids = []
            for job_id in candidate_ids:
                # Conditional update: only succeeds if still pending
                result = await self.session.execute(
                    update(DeliveryJob)
                    .where(
                        DeliveryJob.job_id == job_id,
                        DeliveryJob.status == JobStatus.PENDING,
                    )
                    .values(
                        status=JobStatus.IN_FLIGHT,
                        claimed_at=now,
                        claimed_by=worker_id,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed_ids.append(job_id)

            if not claimed_ids:
                return []

            stmt = (
                select(DeliveryJob)
                .where(DeliveryJob.job_id.in_(claimed_ids))
                .order_by(DeliveryJob.created_at, DeliveryJob.job_id)
                .execution_options(populate_existing=True)
            )
            jobs = list((await self.session.execute(stmt)).scalars().all())

        except SQLAlchemyError as e:
            logger.error("Failed to claim jobs: %s", str(e))
            raise JobQueueError(f"Failed to claim jobs: {e}") from e

        logger.info(
            "Jobs claimed: worker_id=%s, claimed=%d, candidates=%d",
            worker_id,
            len(jobs),
            len(candidate_ids),
        )
        return jobs

    async def mark_sent(self, job_id: uuid.UUID, message_id: str | None = None) -> None:
        """Mark an in-flight job as delivered. Terminal.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidJobStateError: If the job is not in flight.
        """
        now = datetime.now(UTC)
        job = await self._require_job(job_id)
        if job.status != JobStatus.IN_FLIGHT:
            raise InvalidJobStateError(job_id, job.status.value, "mark sent")

        try:
            job.status = JobStatus.SENT
            job.sent_at = now
            job.message_id = message_id
            job.claimed_at = None
            job.claimed_by = None
            job.updated_at = now
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to mark job %s sent: %s", job_id, str(e))
            raise JobQueueError(f"Failed to mark job sent: {e}") from e

        logger.info(
            "Job sent: job_id=%s, record_id=%s, attempts=%d, message_id=%s",
            job_id,
            job.record_id,
            job.retry_count + 1,
            message_id,
        )

    async def mark_failed(self, job_id: uuid.UUID, error: str) -> bool:
        """Record a failed delivery attempt.

        The retry count is incremented. Once it reaches the job's ceiling the
        job becomes terminally ``failed``; otherwise it returns to ``pending``
        with exponential backoff (``base * 2^(retry_count-1)`` seconds).

        Returns:
            True if the job will be retried, False if it is now terminal.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidJobStateError: If the job is not in flight.
        """
        now = datetime.now(UTC)
        job = await self._require_job(job_id)
        if job.status != JobStatus.IN_FLIGHT:
            raise InvalidJobStateError(job_id, job.status.value, "mark failed")

        try:
            job.retry_count += 1
            job.last_error = truncate_error(error, self.error_max_length)
            job.claimed_at = None
            job.claimed_by = None
            job.updated_at = now

            if job.retry_count >= job.max_retries:
                job.status = JobStatus.FAILED
                await self.session.flush()
                logger.warning(
                    "Job failed terminally: job_id=%s, record_id=%s, attempts=%d, error=%s",
                    job_id,
                    job.record_id,
                    job.retry_count,
                    job.last_error,
                )
                return False

            backoff_seconds = self.base_backoff_seconds * (2 ** (job.retry_count - 1))
            job.run_at = now + timedelta(seconds=backoff_seconds)
            job.status = JobStatus.PENDING
            await self.session.flush()

        except SQLAlchemyError as e:
            logger.error("Failed to mark job %s failed: %s", job_id, str(e))
            raise JobQueueError(f"Failed to mark job failed: {e}") from e

        logger.info(
            "Job scheduled for retry: job_id=%s, attempt=%d/%d, retry_at=%s, backoff=%ds",
            job_id,
            job.retry_count,
            job.max_retries,
            job.run_at.isoformat(),
            backoff_seconds,
        )
        return True

    async def cancel_for_record(self, record_id: uuid.UUID) -> int:
        """Remove every job of a record, whatever its status.

        Returns:
            Number of jobs removed.
        """
        try:
            result = await self.session.execute(
                delete(DeliveryJob)
                .where(DeliveryJob.record_id == record_id)
                .execution_options(synchronize_session="fetch")
            )
        except SQLAlchemyError as e:
            logger.error("Failed to cancel jobs for record %s: %s", record_id, str(e))
            raise JobQueueError(f"Failed to cancel jobs: {e}") from e

        count = result.rowcount or 0
        if count:
            logger.info("Jobs cancelled: record_id=%s, count=%d", record_id, count)
        return count

    async def get_stats(self) -> QueueStats:
        """Count jobs per status."""
        result = await self.session.execute(
            select(DeliveryJob.status, func.count(DeliveryJob.job_id)).group_by(DeliveryJob.status)
        )
        counts = {status: 0 for status in JobStatus}
        for status, count in result.all():
            counts[status] = count
        return QueueStats(
            pending=counts[JobStatus.PENDING],
            in_flight=counts[JobStatus.IN_FLIGHT],
            sent=counts[JobStatus.SENT],
            failed=counts[JobStatus.FAILED],
        )

    async def get_job(self, job_id: uuid.UUID) -> DeliveryJob | None:
        """Retrieve a job by ID."""
        return await self._get_job(job_id)

    async def list_jobs(
        self,
        *,
        record_id: uuid.UUID | None = None,
        status: JobStatus | None = None,
        limit: int = 100,
    ) -> list[DeliveryJob]:
        """List jobs, newest first, optionally filtered by record and status."""
        stmt = select(DeliveryJob).order_by(DeliveryJob.created_at.desc()).limit(limit)
        if record_id is not None:
            stmt = stmt.where(DeliveryJob.record_id == record_id)
        if status is not None:
            stmt = stmt.where(DeliveryJob.status == status)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def retry_failed_job(self, job_id: uuid.UUID) -> DeliveryJob:
        """Manually retry a terminally failed job.

        The retry count is kept (it never decreases); the ceiling is raised
        so the job gets a fresh budget of attempts.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidJobStateError: If the job is not in FAILED status.
        """
        job = await self._require_job(job_id)
        if job.status != JobStatus.FAILED:
            raise InvalidJobStateError(job_id, job.status.value, "retry")

        now = datetime.now(UTC)
        try:
            job.status = JobStatus.PENDING
            job.max_retries = job.retry_count + self.max_retries
            job.run_at = now
            job.updated_at = now
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to retry job %s: %s", job_id, str(e))
            raise JobQueueError(f"Failed to retry job: {e}") from e

        logger.info(
            "Failed job queued for retry: job_id=%s, retry_count=%d, max_retries=%d",
            job_id,
            job.retry_count,
            job.max_retries,
        )
        return job

    async def release_stale_claims(self, stale_threshold_seconds: int = 600) -> int:
        """Return jobs left in flight by a crashed dispatcher to pending.

        A released claim does not count as a failed attempt.

        Returns:
            Number of jobs released.
        """
        now = datetime.now(UTC)
        threshold = now - timedelta(seconds=stale_threshold_seconds)

        try:
            result = await self.session.execute(
                update(DeliveryJob)
                .where(
                    DeliveryJob.status == JobStatus.IN_FLIGHT,
                    DeliveryJob.claimed_at < threshold,
                )
                .values(
                    status=JobStatus.PENDING,
                    claimed_at=None,
                    claimed_by=None,
                    run_at=now,
                    updated_at=now,
                )
                .returning(DeliveryJob.job_id)
                .execution_options(synchronize_session=False)
            )
            stale_job_ids = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Failed to release stale claims: %s", str(e))
            raise JobQueueError(f"Failed to release stale claims: {e}") from e

        if stale_job_ids:
            logger.warning("Released %d stale claims: %s", len(stale_job_ids), stale_job_ids)
        return len(stale_job_ids)

    async def purge_sent(self, older_than_days: int = 30) -> int:
        """Delete sent jobs older than the retention window.

        Returns:
            Number of jobs deleted.
        """
        cutoff = datetime.now(UTC) - timedelta(days=older_than_days)
        try:
            result = await self.session.execute(
                delete(DeliveryJob)
                .where(
                    DeliveryJob.status == JobStatus.SENT,
                    DeliveryJob.sent_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            logger.error("Failed to purge sent jobs: %s", str(e))
            raise JobQueueError(f"Failed to purge sent jobs: {e}") from e

        count = result.rowcount or 0
        if count:
            logger.info("Purged %d sent jobs older than %d days", count, older_than_days)
        return count

    async def _require_job(self, job_id: uuid.UUID) -> DeliveryJob:
        job = await self._get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def _get_job(self, job_id: uuid.UUID) -> DeliveryJob | None:
        """Load a job, refreshing any stale copy in the identity map."""
        stmt = (
            select(DeliveryJob)
            .where(DeliveryJob.job_id == job_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
