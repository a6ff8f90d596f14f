"""CTPAT Relay service layer.

Business logic of the submission and delivery pipeline, plus adapters for
external collaborators:
- RecordStore: inspection records and their audit history
- IdempotencyGuard: exactly-once submission by idempotency key
- InspectionLifecycleService: record state machine and attachment replacement
- DeliveryQueueService: durable report email queue with bounded retries
- Dispatcher: drains the queue through the mail channel
- NotificationService: report rendering and email queueing
- Mail channels (SMTP, SendGrid, Gmail), S3 blob store, report renderer
"""

from ctpat.services.delivery_queue import DeliveryQueueService, QueueStats
from ctpat.services.dispatcher import BatchResult, Dispatcher
from ctpat.services.idempotency import IdempotencyGuard, SubmissionResult
from ctpat.services.lifecycle import InspectionLifecycleService, TransitionResult
from ctpat.services.notifications import NotificationService
from ctpat.services.records import (
    ChecklistPoint,
    RecordPage,
    RecordStore,
    RecordSubmission,
)

__all__ = [
    "BatchResult",
    "ChecklistPoint",
    "DeliveryQueueService",
    "Dispatcher",
    "IdempotencyGuard",
    "InspectionLifecycleService",
    "NotificationService",
    "QueueStats",
    "RecordPage",
    "RecordStore",
    "RecordSubmission",
    "SubmissionResult",
    "TransitionResult",
]
