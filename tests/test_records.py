"""Tests for the inspection record store.

Tests cover:
- Checklist validation and completion ratio
- Record creation, audit log and completed_at stamping
- Idempotency key uniqueness at the store level
- Checklist updates and the archived read-only rule
- Listing with filters, sorting and pagination
- Hard delete cascading to delivery jobs and stored reports
- Headline counts
"""

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from ctpat.core.errors import (
    DuplicateSubmissionError,
    InputValidationError,
    RecordLockedError,
    RecordNotFoundError,
)
from ctpat.db.models import AuditAction, RecordStatus
from ctpat.services.delivery_queue import DeliveryQueueService
from ctpat.services.lifecycle import InspectionLifecycleService
from ctpat.services.records import (
    ChecklistPoint,
    RecordStore,
    compute_completion_ratio,
    normalize_checklist,
)


async def _create(database, submission):
    async with database.session() as session:
        record = await RecordStore(session).create(submission)
        await session.commit()
    return record


class TestChecklistValidation:
    """Tests for checklist normalization."""

    def test_empty_checklist_rejected(self):
        with pytest.raises(InputValidationError, match="at least one point"):
            normalize_checklist([])

    def test_blank_point_id_rejected(self):
        with pytest.raises(InputValidationError) as exc_info:
            normalize_checklist([ChecklistPoint(point_id="  ", label="Bumper")])
        assert exc_info.value.detail == {"index": 0}

    def test_blank_label_rejected(self):
        with pytest.raises(InputValidationError, match="label"):
            normalize_checklist([ChecklistPoint(point_id="bumper", label="")])

    def test_duplicate_point_id_rejected(self):
        points = [
            ChecklistPoint(point_id="tires", label="Tires"),
            ChecklistPoint(point_id="tires", label="Tires again"),
        ]
        with pytest.raises(InputValidationError, match="Duplicate checklist point id: tires"):
            normalize_checklist(points)

    def test_order_preserved(self):
        points = [
            ChecklistPoint(point_id="z", label="Last alphabetically", checked=True),
            ChecklistPoint(point_id="a", label="First alphabetically"),
        ]
        normalized = normalize_checklist(points)
        assert [p["point_id"] for p in normalized] == ["z", "a"]
        assert normalized[0] == {"point_id": "z", "label": "Last alphabetically", "checked": True}

    def test_completion_ratio(self, make_checklist):
        assert compute_completion_ratio(normalize_checklist(make_checklist(18, 9))) == 0.5
        assert compute_completion_ratio(normalize_checklist(make_checklist(4, 4))) == 1.0
        assert compute_completion_ratio(normalize_checklist(make_checklist(3, 0))) == 0.0
        assert compute_completion_ratio([]) == 0.0


class TestRecordCreate:
    """Tests for RecordStore.create."""

    @pytest.mark.asyncio
    async def test_create_draft(self, database, make_submission):
        """A draft record gets a created audit entry and no completed_at."""
        record = await _create(database, make_submission(total=18, checked=9))

        assert record.status == RecordStatus.DRAFT
        assert record.completion_ratio == 0.5
        assert record.completed_at is None
        assert len(record.audit_entries) == 1
        entry = record.audit_entries[0]
        assert entry.position == 0
        assert entry.action == AuditAction.CREATED
        assert entry.to_status == "draft"

    @pytest.mark.asyncio
    async def test_create_submitted_stamps_completed_at(self, database, make_submission):
        record = await _create(database, make_submission(status=RecordStatus.SUBMITTED))

        assert record.status == RecordStatus.SUBMITTED
        assert record.completed_at is not None
        assert record.completed_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_create_archived_rejected(self, database, make_submission):
        async with database.session() as session:
            with pytest.raises(InputValidationError, match="archived"):
                await RecordStore(session).create(make_submission(status=RecordStatus.ARCHIVED))

    @pytest.mark.asyncio
    async def test_record_persisted_with_checklist(self, database, make_submission):
        created = await _create(database, make_submission(total=3, checked=1, notes="Seal intact"))

        async with database.session() as session:
            record = await RecordStore(session).get(created.record_id)

        assert record.notes == "Seal intact"
        assert record.truck_number == "TRK-104"
        assert [p["checked"] for p in record.checklist] == [True, False, False]
        assert [e.action for e in record.audit_entries] == [AuditAction.CREATED]

    @pytest.mark.asyncio
    async def test_duplicate_key_raises_conflict(self, database, make_submission):
        await _create(database, make_submission(idempotency_key="tablet-7:42"))

        async with database.session() as session:
            store = RecordStore(session)
            with pytest.raises(DuplicateSubmissionError) as exc_info:
                await store.create(make_submission(idempotency_key="tablet-7:42"))
            assert exc_info.value.idempotency_key == "tablet-7:42"

            # The savepoint keeps the transaction usable
            other = await store.create(make_submission(idempotency_key="tablet-7:43"))
            await session.commit()

        async with database.session() as session:
            page = await RecordStore(session).list_records()
        assert page.total == 2
        assert other.record_id in {r.record_id for r in page.items}

    @pytest.mark.asyncio
    async def test_records_without_key_never_conflict(self, database, make_submission):
        await _create(database, make_submission())
        await _create(database, make_submission())

        async with database.session() as session:
            page = await RecordStore(session).list_records()
        assert page.total == 2

    @pytest.mark.asyncio
    async def test_insert_or_fetch_returns_existing(self, database, make_submission):
        first = await _create(database, make_submission(idempotency_key="retry-me"))

        async with database.session() as session:
            record, created = await RecordStore(session).insert_or_fetch(
                make_submission(idempotency_key="retry-me", total=10, checked=10)
            )
            await session.commit()

        assert created is False
        assert record.record_id == first.record_id
        assert record.completion_ratio == first.completion_ratio


class TestRecordRead:
    """Tests for lookups."""

    @pytest.mark.asyncio
    async def test_get_missing_record(self, database):
        record_id = uuid4()
        async with database.session() as session:
            with pytest.raises(RecordNotFoundError) as exc_info:
                await RecordStore(session).get(record_id)
        assert exc_info.value.status_code == 404
        assert str(record_id) in exc_info.value.message

    @pytest.mark.asyncio
    async def test_get_by_idempotency_key(self, database, make_submission):
        created = await _create(database, make_submission(idempotency_key="abc"))

        async with database.session() as session:
            store = RecordStore(session)
            found = await store.get_by_idempotency_key("abc")
            missing = await store.get_by_idempotency_key("xyz")

        assert found is not None
        assert found.record_id == created.record_id
        assert missing is None


class TestUpdateChecklist:
    """Tests for RecordStore.update_checklist."""

    @pytest.mark.asyncio
    async def test_update_recomputes_ratio_and_audits(
        self, database, make_submission, make_checklist
    ):
        created = await _create(database, make_submission(total=4, checked=1))

        async with database.session() as session:
            record = await RecordStore(session).update_checklist(
                created.record_id, make_checklist(4, 3)
            )
            await session.commit()

        assert record.completion_ratio == 0.75
        assert [e.action for e in record.audit_entries] == [
            AuditAction.CREATED,
            AuditAction.MODIFIED,
        ]
        assert [e.position for e in record.audit_entries] == [0, 1]
        assert "0.25 -> 0.75" in record.audit_entries[1].detail

    @pytest.mark.asyncio
    async def test_update_allowed_on_submitted_record(
        self, database, make_submission, make_checklist
    ):
        created = await _create(database, make_submission(status=RecordStatus.SUBMITTED))

        async with database.session() as session:
            record = await RecordStore(session).update_checklist(
                created.record_id, make_checklist(2, 2)
            )
            await session.commit()

        assert record.completion_ratio == 1.0
        assert record.completed_at == created.completed_at

    @pytest.mark.asyncio
    async def test_update_rejected_on_archived_record(
        self, database, make_submission, make_checklist
    ):
        created = await _create(database, make_submission())
        async with database.session() as session:
            await InspectionLifecycleService(session).transition(
                created.record_id, RecordStatus.ARCHIVED
            )
            await session.commit()

        async with database.session() as session:
            with pytest.raises(RecordLockedError) as exc_info:
                await RecordStore(session).update_checklist(
                    created.record_id, make_checklist(4, 4)
                )
        assert exc_info.value.status_code == 409
        assert exc_info.value.detail["status"] == "archived"

    @pytest.mark.asyncio
    async def test_invalid_checklist_leaves_record_unchanged(self, database, make_submission):
        created = await _create(database, make_submission(total=4, checked=2))

        async with database.session() as session:
            with pytest.raises(InputValidationError):
                await RecordStore(session).update_checklist(created.record_id, [])

        async with database.session() as session:
            record = await RecordStore(session).get(created.record_id)
        assert len(record.checklist) == 4
        assert record.completion_ratio == 0.5
        assert len(record.audit_entries) == 1

    @pytest.mark.asyncio
    async def test_update_missing_record(self, database, make_checklist):
        async with database.session() as session:
            with pytest.raises(RecordNotFoundError):
                await RecordStore(session).update_checklist(uuid4(), make_checklist(2, 1))


class TestListRecords:
    """Tests for RecordStore.list_records."""

    @pytest.fixture
    async def seeded(self, database, make_submission):
        trucks = ["TRK-3", "TRK-1", "TRK-5", "TRK-2", "TRK-4"]
        for index, truck in enumerate(trucks):
            status = RecordStatus.SUBMITTED if index % 2 == 0 else RecordStatus.DRAFT
            await _create(database, make_submission(truck_number=truck, status=status))
        return trucks

    @pytest.mark.asyncio
    async def test_pagination(self, database, seeded):
        async with database.session() as session:
            store = RecordStore(session)
            first = await store.list_records(sort_by="truck_number", sort_order="asc", limit=2)
            second = await store.list_records(
                sort_by="truck_number", sort_order="asc", limit=2, page=2
            )
            third = await store.list_records(
                sort_by="truck_number", sort_order="asc", limit=2, page=3
            )

        assert first.total == 5
        assert first.pages == 3
        assert [r.truck_number for r in first.items] == ["TRK-1", "TRK-2"]
        assert [r.truck_number for r in second.items] == ["TRK-3", "TRK-4"]
        assert [r.truck_number for r in third.items] == ["TRK-5"]

    @pytest.mark.asyncio
    async def test_status_filter(self, database, seeded):
        async with database.session() as session:
            page = await RecordStore(session).list_records(status=RecordStatus.SUBMITTED)

        assert page.total == 3
        assert all(r.status == RecordStatus.SUBMITTED for r in page.items)

    @pytest.mark.asyncio
    async def test_descending_sort(self, database, seeded):
        async with database.session() as session:
            page = await RecordStore(session).list_records(sort_by="truck_number")
        assert [r.truck_number for r in page.items] == ["TRK-5", "TRK-4", "TRK-3", "TRK-2", "TRK-1"]

    @pytest.mark.asyncio
    async def test_limit_clamped_to_max_page_size(self, database, seeded):
        async with database.session() as session:
            page = await RecordStore(session, max_page_size=3).list_records(limit=1000)
        assert page.limit == 3
        assert len(page.items) == 3

    @pytest.mark.asyncio
    async def test_unknown_sort_field_rejected(self, database):
        async with database.session() as session:
            with pytest.raises(InputValidationError) as exc_info:
                await RecordStore(session).list_records(sort_by="password")
        assert "truck_number" in exc_info.value.detail["allowed"]


class TestDeleteRecord:
    """Tests for hard delete."""

    @pytest.mark.asyncio
    async def test_delete_cascades_to_jobs(self, database, make_submission):
        created = await _create(database, make_submission())
        async with database.session() as session:
            queue = DeliveryQueueService(session)
            await queue.enqueue(created.record_id, "a@carrier.test", "Report", "<p>1</p>")
            await queue.enqueue(created.record_id, "b@carrier.test", "Report", "<p>2</p>")
            await session.commit()

        async with database.session() as session:
            deleted = await RecordStore(session).delete(created.record_id)
            await session.commit()

        assert deleted.record_id == created.record_id
        assert deleted.cancelled_jobs == 2
        assert deleted.attachment_deleted is False

        async with database.session() as session:
            with pytest.raises(RecordNotFoundError):
                await RecordStore(session).get(created.record_id)
            jobs = await DeliveryQueueService(session).list_jobs(record_id=created.record_id)
        assert jobs == []

    @pytest.mark.asyncio
    async def test_delete_removes_stored_report(self, database, make_submission, blob_store):
        created = await _create(database, make_submission())
        async with database.session() as session:
            record = await InspectionLifecycleService(
                session, blob_store=blob_store
            ).replace_attachment(created.record_id, b"%PDF-1")
            await session.commit()
        ref = record.attachment_ref

        async with database.session() as session:
            deleted = await RecordStore(session, blob_store=blob_store).delete(created.record_id)
            await session.commit()

        assert deleted.attachment_deleted is True
        assert ref in blob_store.deleted
        assert ref not in blob_store.objects

    @pytest.mark.asyncio
    async def test_delete_survives_storage_failure(self, database, make_submission, blob_store):
        created = await _create(database, make_submission())
        async with database.session() as session:
            await InspectionLifecycleService(session, blob_store=blob_store).replace_attachment(
                created.record_id, b"%PDF-1"
            )
            await session.commit()

        blob_store.fail_delete = True
        async with database.session() as session:
            deleted = await RecordStore(session, blob_store=blob_store).delete(created.record_id)
            await session.commit()

        assert deleted.attachment_deleted is False
        async with database.session() as session:
            with pytest.raises(RecordNotFoundError):
                await RecordStore(session).get(created.record_id)

    @pytest.mark.asyncio
    async def test_delete_missing_record(self, database):
        async with database.session() as session:
            with pytest.raises(RecordNotFoundError):
                await RecordStore(session).delete(uuid4())

    @pytest.mark.asyncio
    async def test_database_cascade_backstop(self, database, make_submission):
        """Jobs go with their record even when deleted outside the store."""
        created = await _create(database, make_submission())
        async with database.session() as session:
            await DeliveryQueueService(session).enqueue(
                created.record_id, "a@carrier.test", "Report", "<p>1</p>"
            )
            await session.commit()

        async with database.session() as session:
            record = await RecordStore(session).get(created.record_id)
            await session.delete(record)
            await session.commit()

        async with database.session() as session:
            jobs = await DeliveryQueueService(session).list_jobs()
        assert jobs == []


class TestSummary:
    """Tests for headline counts."""

    @pytest.mark.asyncio
    async def test_summary_counts(self, database, make_submission):
        await _create(database, make_submission())
        await _create(database, make_submission(status=RecordStatus.SUBMITTED))
        await _create(database, make_submission(status=RecordStatus.SUBMITTED))

        async with database.session() as session:
            summary = await RecordStore(session).summary()

        assert summary.total == 3
        assert summary.this_week == 3
        assert summary.this_month == 3
        assert summary.by_status == {"draft": 1, "submitted": 2, "archived": 0}

    @pytest.mark.asyncio
    async def test_summary_windows_exclude_old_records(self, database, make_submission):
        await _create(database, make_submission())

        async with database.session() as session:
            summary = await RecordStore(session).summary(
                now=datetime.now(UTC) + timedelta(days=60)
            )

        assert summary.total == 1
        assert summary.this_week == 0
        assert summary.this_month == 0
