"""Notification orchestration for inspection records.

Glues the report renderer, the blob store and the delivery queue together:

- ``attach_report`` renders a record and stores the document as its
  attachment. Rendering or storage being down never fails the caller; the
  record simply keeps its previous attachment (or none).
- ``notify`` composes the report email and enqueues a delivery job. Delivery
  itself happens later, in the dispatcher.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from ctpat.core.errors import CollaboratorUnavailableError, InputValidationError
from ctpat.db.models import RecordStatus
from ctpat.services.delivery_queue import DeliveryQueueService
from ctpat.services.lifecycle import InspectionLifecycleService
from ctpat.services.mail import hash_email
from ctpat.services.records import RecordStore
from ctpat.services.report import compose_report_email, report_filename

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from ctpat.core.config import DeliverySettings
    from ctpat.services.report import ReportRenderer
    from ctpat.services.storage import BlobStore

logger = logging.getLogger(__name__)


class NotificationService:
    """Renders reports and queues report emails for a record."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        delivery: DeliverySettings,
        renderer: ReportRenderer | None = None,
        blob_store: BlobStore | None = None,
        app_name: str = "CTPAT Relay",
    ) -> None:
        self.session = session
        self.renderer = renderer
        self.blob_store = blob_store
        self.app_name = app_name
        self._records = RecordStore(session, blob_store=blob_store)
        self._lifecycle = InspectionLifecycleService(session, blob_store=blob_store)
        self._queue = DeliveryQueueService.from_settings(session, delivery)

    async def attach_report(self, record_id: uuid.UUID) -> bool:
        """Render the record's report and store it as the attachment.

        Returns:
            True if a new attachment was stored, False if rendering or storage
            was unavailable.

        Raises:
            RecordNotFoundError: If the record does not exist.
        """
        record = await self._records.get(record_id)
        if self.renderer is None or self.blob_store is None:
            logger.debug(
                "Report attachment skipped, renderer or storage not configured: record_id=%s",
                record_id,
            )
            return False

        try:
            document = await asyncio.to_thread(self.renderer.render, record)
        except Exception as e:
            logger.warning("Report rendering failed: record_id=%s, error=%s", record_id, e)
            return False

        try:
            await self._lifecycle.replace_attachment(
                record_id,
                document,
                filename=report_filename(record),
            )
        except CollaboratorUnavailableError as e:
            logger.warning("Report storage failed: record_id=%s, error=%s", record_id, e.message)
            return False
        return True

    async def notify(self, record_id: uuid.UUID, recipient: str | None = None) -> uuid.UUID:
        """Queue the report email for a record.

        A submitted record without an attachment gets one rendered first; if
        that fails the email goes out without it.

        Args:
            record_id: Record to report on.
            recipient: Destination address; defaults to the record's own
                ``recipient_email``.

        Returns:
            UUID of the queued delivery job.

        Raises:
            RecordNotFoundError: If the record does not exist.
            InputValidationError: If no recipient is given or stored.
        """
        record = await self._records.get(record_id)
        address = (recipient or record.recipient_email or "").strip()
        if not address:
            raise InputValidationError(
                "A recipient is required to send the report",
                detail={"record_id": str(record_id)},
            )

        if record.attachment_ref is None and record.status != RecordStatus.DRAFT:
            await self.attach_report(record_id)

        subject, body = compose_report_email(record, app_name=self.app_name)
        job_id = await self._queue.enqueue(
            record_id,
            address,
            subject,
            body,
            attachment_ref=record.attachment_ref,
        )
        logger.info(
            "Report email queued: record_id=%s, job_id=%s, recipient_hash=%s",
            record_id,
            job_id,
            hash_email(address),
        )
        return job_id
