"""Dispatcher: drains the delivery queue through the mail channel.

One batch:
1. Bail out early if the mail channel is not ready (nothing is claimed, so
   no retries are burned).
2. Claim up to ``batch_size`` jobs in one short transaction.
3. Deliver each job on its own: fetch the stored report, send it with a
   timeout, then record the outcome in a fresh transaction.

A failing job never affects its siblings. A job deleted together with its
record while it was being sent is skipped. Jobs whose outcome cannot be
recorded stay in flight until the worker releases stale claims.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from ctpat.core.errors import (
    JobNotFoundError,
    JobQueueError,
    TerminalDeliveryError,
    TransientDeliveryError,
)
from ctpat.services.delivery_queue import DeliveryQueueService, truncate_error
from ctpat.services.mail import MailAttachment, hash_email

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from ctpat.core.config import DeliverySettings
    from ctpat.db.models import DeliveryJob
    from ctpat.services.mail import MailChannel
    from ctpat.services.storage import BlobStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BatchResult:
    """Outcome of one dispatcher batch.

    Attributes:
        sent: Jobs delivered in this batch.
        failed: Delivery attempts that failed (retried or terminal).
        retried: Failed jobs that went back to pending.
        skipped_reason: Why the batch did nothing, if it was skipped.
    """

    sent: int = 0
    failed: int = 0
    retried: int = 0
    skipped_reason: str | None = None

    @property
    def terminal(self) -> int:
        return self.failed - self.retried


def attachment_filename(ref: str) -> str:
    """Recover the report filename from a storage reference."""
    name = PurePosixPath(ref).name
    prefix, _, rest = name.partition("-")
    # Stored keys carry a 16-character digest prefix
    if rest and len(prefix) == 16:
        return rest
    return name or "report.pdf"


class Dispatcher:
    """Runs delivery batches against the queue."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        mail_channel: MailChannel,
        settings: DeliverySettings,
        *,
        blob_store: BlobStore | None = None,
        worker_id: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._mail_channel = mail_channel
        self._settings = settings
        self._blob_store = blob_store
        self.worker_id = worker_id or f"dispatcher-{uuid.uuid4().hex[:8]}"

    async def run_batch(self, max_jobs: int | None = None) -> BatchResult:
        """Claim and deliver one batch of jobs.

        Args:
            max_jobs: Batch size; defaults to the configured batch size.

        Returns:
            BatchResult with per-batch counts.
        """
        if not self._mail_channel.is_ready():
            logger.info(
                "Dispatch skipped: mail channel %s is not ready",
                getattr(self._mail_channel, "name", "unknown"),
            )
            return BatchResult(skipped_reason="mail_channel_unavailable")

        limit = max_jobs if max_jobs is not None else self._settings.batch_size
        async with self._session_factory() as session:
            jobs = await DeliveryQueueService.from_settings(session, self._settings).claim_batch(
                limit, self.worker_id
            )
            await session.commit()

        if not jobs:
            return BatchResult()

        sent = failed = retried = 0
        for job in jobs:
            try:
                message_id = await self._deliver(job)
            except TransientDeliveryError as e:
                will_retry = await self._record_failure(job, e.message)
                if will_retry is None:
                    continue
                failed += 1
                if will_retry:
                    retried += 1
            else:
                if await self._record_success(job, message_id):
                    sent += 1

        result = BatchResult(sent=sent, failed=failed, retried=retried)
        logger.info(
            "Dispatch batch complete: worker_id=%s, claimed=%d, sent=%d, failed=%d, retried=%d",
            self.worker_id,
            len(jobs),
            result.sent,
            result.failed,
            result.retried,
        )
        return result

    async def _deliver(self, job: DeliveryJob) -> str:
        """Send one job's email. Every failure surfaces as TransientDeliveryError.

        A thread cannot be cancelled, so when the deadline passes the send is
        awaited until the channel's own socket timeout settles it. A message
        that went out late is reported as sent rather than retried.
        """
        timeout = self._settings.send_timeout_seconds
        try:
            attachment = await self._load_attachment(job)
            send = asyncio.ensure_future(
                asyncio.to_thread(
                    self._mail_channel.send,
                    job.recipient,
                    job.subject,
                    job.body,
                    attachment,
                    timeout=timeout,
                )
            )
            try:
                return await asyncio.wait_for(asyncio.shield(send), timeout=timeout)
            except TimeoutError:
                message_id = await send
                logger.warning(
                    "Delivery completed after timeout: job_id=%s, timeout=%s",
                    job.job_id,
                    timeout,
                )
                return message_id
        except TimeoutError as e:
            raise TransientDeliveryError(f"Delivery timed out after {timeout:g}s") from e
        except Exception as e:
            raise TransientDeliveryError(f"{type(e).__name__}: {e}") from e

    async def _load_attachment(self, job: DeliveryJob) -> MailAttachment | None:
        if not job.attachment_ref:
            return None
        if self._blob_store is None:
            logger.warning(
                "Report storage not configured, sending without attachment: job_id=%s",
                job.job_id,
            )
            return None
        content = await asyncio.to_thread(self._blob_store.fetch, job.attachment_ref)
        return MailAttachment(filename=attachment_filename(job.attachment_ref), content=content)

    async def _record_success(self, job: DeliveryJob, message_id: str) -> bool:
        try:
            async with self._session_factory() as session:
                await DeliveryQueueService.from_settings(session, self._settings).mark_sent(
                    job.job_id, message_id
                )
                await session.commit()
        except JobNotFoundError:
            self._log_cancelled(job)
            return False
        except (JobQueueError, SQLAlchemyError):
            logger.exception("Failed to record delivery: job_id=%s", job.job_id)
            return False
        return True

    async def _record_failure(self, job: DeliveryJob, error: str) -> bool | None:
        """Record a failed attempt; returns will_retry, or None if it could not be recorded."""
        error = truncate_error(error, self._settings.error_max_length)
        try:
            async with self._session_factory() as session:
                will_retry = await DeliveryQueueService.from_settings(
                    session, self._settings
                ).mark_failed(job.job_id, error)
                await session.commit()
        except JobNotFoundError:
            self._log_cancelled(job)
            return None
        except (JobQueueError, SQLAlchemyError):
            logger.exception("Failed to record delivery failure: job_id=%s", job.job_id)
            return None

        if will_retry:
            logger.info(
                "Delivery attempt failed, will retry: job_id=%s, recipient_hash=%s, error=%s",
                job.job_id,
                hash_email(job.recipient),
                error,
            )
        else:
            terminal = TerminalDeliveryError(
                f"Delivery abandoned after {job.retry_count + 1} attempts: {error}",
                detail={"job_id": str(job.job_id), "record_id": str(job.record_id)},
            )
            logger.error(
                "%s: job_id=%s, record_id=%s",
                terminal.message,
                job.job_id,
                job.record_id,
            )
        return will_retry

    def _log_cancelled(self, job: DeliveryJob) -> None:
        logger.warning(
            "Job cancelled during delivery, outcome dropped: job_id=%s, record_id=%s",
            job.job_id,
            job.record_id,
        )
