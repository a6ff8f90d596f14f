"""Domain exception taxonomy for the submission and delivery pipeline.

Every exception carries a machine-readable ``error`` code and the HTTP
status the API reports when the error reaches a client. Services raise
these; the API error middleware turns them into JSON responses.

- InputValidationError: malformed input, rejected before persistence
- DuplicateSubmissionError: idempotency-key conflict, resolved by lookup
- InvalidTransitionError: rejected lifecycle change
- RecordLockedError: write attempted on an archived record
- RecordNotFoundError / JobNotFoundError: unknown identifiers
- TransientDeliveryError: a delivery attempt failed and will be retried
- TerminalDeliveryError: retry ceiling exhausted
- CollaboratorUnavailableError: renderer, storage or mail channel down
- JobQueueError: unexpected queue persistence failure
- InvalidJobStateError: queue operation on a job in the wrong status
"""

from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base exception for pipeline errors with structured details."""

    error: str = "pipeline_error"
    status_code: int = 500

    def __init__(self, message: str, detail: dict[str, Any] | None = None) -> None:
        self.message = message
        self.detail = detail
        super().__init__(message)


class InputValidationError(PipelineError):
    """Malformed input rejected before anything is persisted."""

    error = "validation_error"
    status_code = 400


class DuplicateSubmissionError(PipelineError):
    """A record with the same idempotency key already exists."""

    error = "conflict"
    status_code = 409

    def __init__(self, idempotency_key: str) -> None:
        self.idempotency_key = idempotency_key
        super().__init__(
            "A record with this idempotency key already exists",
            detail={"idempotency_key": idempotency_key},
        )


class InvalidTransitionError(PipelineError):
    """Raised when a lifecycle transition is not in the allowed table."""

    error = "invalid_transition"
    status_code = 409

    def __init__(self, from_status: str, to_status: str) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid status transition from '{from_status}' to '{to_status}'",
            detail={"from_status": from_status, "to_status": to_status},
        )


class RecordLockedError(PipelineError):
    """Raised when modifying the checklist of an archived record."""

    error = "record_locked"
    status_code = 409

    def __init__(self, record_id: Any, status: str) -> None:
        self.record_id = record_id
        self.status = status
        super().__init__(
            f"Record {record_id} is {status} and can no longer be modified",
            detail={"record_id": str(record_id), "status": status},
        )


class NotFoundError(PipelineError):
    """Base class for unknown identifiers."""

    error = "not_found"
    status_code = 404


class RecordNotFoundError(NotFoundError):
    """Raised when an inspection record does not exist."""

    def __init__(self, record_id: Any) -> None:
        self.record_id = record_id
        super().__init__(f"Inspection record not found: {record_id}")


class JobNotFoundError(NotFoundError):
    """Raised when a delivery job does not exist."""

    def __init__(self, job_id: Any) -> None:
        self.job_id = job_id
        super().__init__(f"Delivery job not found: {job_id}")


class TransientDeliveryError(PipelineError):
    """A delivery attempt failed in a way that is worth retrying."""

    error = "transient_delivery_error"
    status_code = 502


class TerminalDeliveryError(PipelineError):
    """A delivery job exhausted its retry budget."""

    error = "terminal_delivery_error"
    status_code = 502


class CollaboratorUnavailableError(PipelineError):
    """The renderer, blob store or mail channel could not serve a request."""

    error = "collaborator_unavailable"
    status_code = 503

    def __init__(
        self,
        message: str,
        *,
        collaborator: str,
        detail: dict[str, Any] | None = None,
    ) -> None:
        self.collaborator = collaborator
        merged = {"collaborator": collaborator}
        if detail:
            merged.update(detail)
        super().__init__(message, detail=merged)


class JobQueueError(PipelineError):
    """Unexpected failure while persisting queue state."""

    error = "queue_error"
    status_code = 500


class InvalidJobStateError(JobQueueError):
    """A queue operation does not apply to the job's current status."""

    error = "invalid_job_state"
    status_code = 409

    def __init__(self, job_id: Any, status: str, operation: str) -> None:
        self.job_id = job_id
        self.status = status
        super().__init__(
            f"Cannot {operation} job {job_id} in {status} status",
            detail={"job_id": str(job_id), "status": status, "operation": operation},
        )
