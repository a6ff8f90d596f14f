"""Inspection record lifecycle state machine.

This module implements the record state machine with:
- A fixed transition table (draft, submitted, archived)
- Same-state transitions accepted as audited no-ops
- ``completed_at`` stamped once, on the first entry into submitted
- Attachment replacement that never leaves the record pointing at a blob
  that failed to upload

Every state change happens under the record's row lock.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, ClassVar

from ctpat.core.errors import CollaboratorUnavailableError, InvalidTransitionError
from ctpat.db.models import AuditAction, RecordStatus
from ctpat.services.records import RecordStore, append_audit_entry

if TYPE_CHECKING:
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession

    from ctpat.db.models import InspectionRecord, RecordAuditEntry
    from ctpat.services.storage import BlobStore

logger = logging.getLogger(__name__)

REPORT_CONTENT_TYPE = "application/pdf"


@dataclass(frozen=True, slots=True)
class TransitionResult:
    """Result of an accepted state transition.

    Attributes:
        record: The record after the transition.
        previous_status: Status before the transition.
        new_status: Status after the transition.
        changed: False for a same-state no-op.
        audit_entry: Audit entry appended for the transition.
    """

    record: InspectionRecord
    previous_status: RecordStatus
    new_status: RecordStatus
    changed: bool
    audit_entry: RecordAuditEntry


class InspectionLifecycleService:
    """Service for inspection record state transitions.

    The state machine:
        draft -> submitted -> archived
          |                      ^
          +----------------------+

    Example:
        service = InspectionLifecycleService(session, blob_store=blob_store)
        result = await service.transition(record_id, RecordStatus.SUBMITTED)
        if result.changed:
            print(result.record.completed_at)
    """

    # from_status -> allowed to_statuses (same-state is handled separately)
    VALID_TRANSITIONS: ClassVar[dict[RecordStatus, set[RecordStatus]]] = {
        RecordStatus.DRAFT: {RecordStatus.SUBMITTED, RecordStatus.ARCHIVED},
        RecordStatus.SUBMITTED: {RecordStatus.ARCHIVED},
        # Terminal
        RecordStatus.ARCHIVED: set(),
    }

    def __init__(self, session: AsyncSession, *, blob_store: BlobStore | None = None) -> None:
        """Initialize the lifecycle service.

        Args:
            session: SQLAlchemy async session for database operations.
            blob_store: Storage for rendered reports (attachment replacement).
        """
        self._session = session
        self._blob_store = blob_store
        self._records = RecordStore(session, blob_store=blob_store)

    def is_valid_transition(self, from_status: RecordStatus, to_status: RecordStatus) -> bool:
        """Check if a transition is allowed, counting same-state no-ops as allowed."""
        if from_status == to_status:
            return True
        return to_status in self.VALID_TRANSITIONS.get(from_status, set())

    def is_terminal_status(self, status: RecordStatus) -> bool:
        """Check if a status has no outgoing transitions."""
        return len(self.VALID_TRANSITIONS.get(status, set())) == 0

    async def transition(
        self,
        record_id: UUID,
        to_status: RecordStatus,
        *,
        detail: str | None = None,
    ) -> TransitionResult:
        """Move a record to ``to_status``.

        Args:
            record_id: UUID of the record.
            to_status: Target status.
            detail: Optional note stored on the audit entry.

        Returns:
            TransitionResult describing the accepted transition.

        Raises:
            RecordNotFoundError: If the record does not exist.
            InvalidTransitionError: If the transition is not allowed. The
                record is left unchanged.
        """
        record = await self._records.get_for_update(record_id)
        from_status = record.status

        if not self.is_valid_transition(from_status, to_status):
            logger.warning(
                "Invalid transition attempted",
                extra={
                    "record_id": str(record_id),
                    "from_status": from_status.value,
                    "to_status": to_status.value,
                },
            )
            raise InvalidTransitionError(from_status.value, to_status.value)

        now = datetime.now(UTC)
        changed = from_status != to_status
        if changed:
            record.status = to_status
            record.updated_at = now
        if to_status == RecordStatus.SUBMITTED and record.completed_at is None:
            record.completed_at = now

        entry = append_audit_entry(
            record,
            AuditAction.STATUS_CHANGED,
            occurred_at=now,
            from_status=from_status,
            to_status=to_status,
            detail=detail or (None if changed else "no-op"),
        )
        await self._session.flush()

        logger.info(
            "State transition completed",
            extra={
                "record_id": str(record_id),
                "from_status": from_status.value,
                "to_status": to_status.value,
                "changed": changed,
            },
        )

        return TransitionResult(
            record=record,
            previous_status=from_status,
            new_status=to_status,
            changed=changed,
            audit_entry=entry,
        )

    async def replace_attachment(
        self,
        record_id: UUID,
        document: bytes,
        *,
        filename: str | None = None,
    ) -> InspectionRecord:
        """Store a newly rendered report and point the record at it.

        The new blob is uploaded before the record changes, so a failed upload
        leaves the record exactly as it was. The superseded blob is deleted
        afterwards; a failed deletion is logged and ignored.

        Raises:
            RecordNotFoundError: If the record does not exist.
            CollaboratorUnavailableError: If no blob store is configured or
                the upload fails.
        """
        if self._blob_store is None:
            raise CollaboratorUnavailableError(
                "Report storage is not configured",
                collaborator="blob_store",
            )

        record = await self._records.get_for_update(record_id)
        old_ref = record.attachment_ref
        name = filename or f"inspection-{record_id}.pdf"

        try:
            stored = await asyncio.to_thread(
                self._blob_store.store,
                document,
                filename=name,
                content_type=REPORT_CONTENT_TYPE,
            )
        except Exception as e:
            logger.error(
                "Report upload failed",
                extra={"record_id": str(record_id), "error": str(e)},
            )
            raise CollaboratorUnavailableError(
                f"Failed to store report: {e}",
                collaborator="blob_store",
                detail={"record_id": str(record_id)},
            ) from e

        now = datetime.now(UTC)
        record.attachment_ref = stored.ref
        record.attachment_url = stored.public_url
        record.updated_at = now
        append_audit_entry(
            record,
            AuditAction.ATTACHMENT_UPDATED,
            occurred_at=now,
            detail=f"replaced {old_ref}" if old_ref else "stored",
        )
        await self._session.flush()

        if old_ref and old_ref != stored.ref:
            try:
                await asyncio.to_thread(self._blob_store.delete, old_ref)
            except Exception as e:
                logger.warning(
                    "Failed to delete superseded report",
                    extra={"record_id": str(record_id), "ref": old_ref, "error": str(e)},
                )

        logger.info(
            "Attachment replaced",
            extra={
                "record_id": str(record_id),
                "ref": stored.ref,
                "size_bytes": len(document),
            },
        )
        return record
