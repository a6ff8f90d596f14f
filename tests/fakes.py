"""In-memory stand-ins for the external collaborators.

The mail channel, blob store and report renderer talk to SMTP, S3 and
WeasyPrint in production. These fakes keep everything in memory and expose
switches for the failure modes the services must tolerate.
"""

from __future__ import annotations

import hashlib
import threading

from ctpat.services.mail import MailAttachment, MailDeliveryError
from ctpat.services.storage import ObjectNotFoundError, StorageError, StoredBlob


class FakeMailChannel:
    """Mail channel that records messages instead of sending them.

    Set ``fail_times`` to make the next N sends raise MailDeliveryError.
    """

    name = "fake"

    def __init__(self, *, ready: bool = True, fail_times: int = 0) -> None:
        self.ready = ready
        self.fail_times = fail_times
        self.attempts = 0
        self.sent: list[dict] = []
        self._lock = threading.Lock()

    def is_ready(self) -> bool:
        return self.ready

    def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        attachment: MailAttachment | None = None,
        *,
        timeout: float | None = None,
    ) -> str:
        with self._lock:
            self.attempts += 1
            if self.fail_times > 0:
                self.fail_times -= 1
                raise MailDeliveryError("Connection error: connection refused")
            message_id = f"<message-{len(self.sent) + 1}@ctpat.test>"
            self.sent.append(
                {
                    "recipient": recipient,
                    "subject": subject,
                    "body": body,
                    "attachment": attachment,
                    "message_id": message_id,
                }
            )
            return message_id


class FakeBlobStore:
    """In-memory blob store with switchable failures."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.deleted: list[str] = []
        self.fail_store = False
        self.fail_delete = False

    def store(
        self,
        data: bytes,
        *,
        filename: str,
        content_type: str = "application/pdf",
    ) -> StoredBlob:
        if self.fail_store:
            raise StorageError("Upload failed: storage offline", operation="upload")
        digest = hashlib.sha256(data).hexdigest()
        ref = f"reports/{digest[:16]}-{filename}"
        self.objects[ref] = data
        return StoredBlob(
            ref=ref,
            public_url=f"https://blobs.ctpat.test/{ref}",
            sha256_digest=digest,
            size_bytes=len(data),
        )

    def delete(self, ref: str) -> None:
        if self.fail_delete:
            raise StorageError("Delete failed: storage offline", key=ref, operation="delete")
        self.objects.pop(ref, None)
        self.deleted.append(ref)

    def fetch(self, ref: str) -> bytes:
        try:
            return self.objects[ref]
        except KeyError:
            raise ObjectNotFoundError(f"Object does not exist: {ref}", key=ref) from None


class FakeRenderer:
    """Deterministic renderer: the document depends only on the record."""

    def __init__(self) -> None:
        self.fail = False
        self.calls = 0

    def render(self, record) -> bytes:
        self.calls += 1
        if self.fail:
            raise RuntimeError("renderer crashed")
        checked = ",".join(p["point_id"] for p in record.checklist if p["checked"])
        return f"%PDF-fake {record.record_id} {record.status.value} [{checked}]".encode()

