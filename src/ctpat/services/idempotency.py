"""Idempotent submission of inspection records.

A client may retry a create request after losing the response. When the
request carries an idempotency key, the retry returns the record created by
the first attempt and has no further side effects: no audit entry, no
delivery job, no rendering.

Two concurrent submissions with the same key race on the unique index. The
loser sees the conflict and falls back to the lookup path, so it returns the
winner's record.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ctpat.core.errors import InputValidationError
from ctpat.services.records import RecordStore, RecordSubmission

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from ctpat.db.models import InspectionRecord

logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 255


@dataclass(frozen=True, slots=True)
class SubmissionResult:
    """Outcome of a submission.

    Attributes:
        record: The stored record (new, or the one the key already names).
        is_duplicate: True when the key matched an existing record.
    """

    record: InspectionRecord
    is_duplicate: bool


class IdempotencyGuard:
    """Deduplicates create requests by client-supplied idempotency key."""

    def __init__(self, session: AsyncSession, *, store: RecordStore | None = None) -> None:
        self.session = session
        self.store = store or RecordStore(session)

    async def submit(
        self,
        idempotency_key: str | None,
        submission: RecordSubmission,
    ) -> SubmissionResult:
        """Create a record unless the key already names one.

        Args:
            idempotency_key: Optional client retry token. Blank keys are
                treated as absent.
            submission: Record payload. Its own ``idempotency_key`` is
                replaced by the one passed here.

        Returns:
            SubmissionResult with the record and whether it was a duplicate.

        Raises:
            InputValidationError: If the key is too long or the payload is
                malformed.
        """
        key = idempotency_key.strip() if idempotency_key else None
        if key and len(key) > MAX_KEY_LENGTH:
            raise InputValidationError(
                f"Idempotency key must be at most {MAX_KEY_LENGTH} characters",
                detail={"length": len(key)},
            )
        submission = dataclasses.replace(submission, idempotency_key=key or None)

        if not key:
            record = await self.store.create(submission)
            return SubmissionResult(record=record, is_duplicate=False)

        existing = await self.store.get_by_idempotency_key(key)
        if existing is not None:
            logger.info(
                "Duplicate submission",
                extra={"record_id": str(existing.record_id), "idempotency_key": key},
            )
            return SubmissionResult(record=existing, is_duplicate=True)

        record, created = await self.store.insert_or_fetch(submission)
        if not created:
            logger.info(
                "Duplicate submission resolved after conflict",
                extra={"record_id": str(record.record_id), "idempotency_key": key},
            )
        return SubmissionResult(record=record, is_duplicate=not created)
