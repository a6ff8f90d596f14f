"""Initial schema: inspection records, audit entries and delivery jobs.

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00

Creates:
- inspection_records with a unique idempotency key
- record_audit_entries (append-only, contiguous position per record)
- delivery_jobs (queue rows, cascade-deleted with their record)
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

RECORD_STATUSES = ("draft", "submitted", "archived")
AUDIT_ACTIONS = ("created", "modified", "status_changed", "attachment_updated")
JOB_STATUSES = ("pending", "in_flight", "sent", "failed")

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    """Apply migration: create the pipeline tables."""
    op.create_table(
        "inspection_records",
        sa.Column("record_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
        sa.Column(
            "status",
            sa.Enum(*RECORD_STATUSES, name="record_status", create_constraint=True),
            nullable=False,
        ),
        sa.Column("truck_number", sa.String(100), nullable=True),
        sa.Column("trailer_number", sa.String(100), nullable=True),
        sa.Column("seal_number", sa.String(100), nullable=True),
        sa.Column("inspector_name", sa.String(255), nullable=True),
        sa.Column("verified_by_name", sa.String(255), nullable=True),
        sa.Column("recipient_email", sa.String(320), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("checklist", JSON_TYPE, nullable=False),
        sa.Column("completion_ratio", sa.Float(), nullable=False),
        sa.Column("attachment_ref", sa.String(1000), nullable=True),
        sa.Column("attachment_url", sa.String(2000), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("record_id", name=op.f("pk_inspection_records")),
        sa.UniqueConstraint("idempotency_key", name=op.f("uq_inspection_records_idempotency_key")),
    )
    op.create_index(
        "ix_inspection_records_status_created_at",
        "inspection_records",
        ["status", "created_at"],
    )
    op.create_index(
        "ix_inspection_records_truck_number_created_at",
        "inspection_records",
        ["truck_number", "created_at"],
    )
    op.create_index(
        "ix_inspection_records_completed_at",
        "inspection_records",
        ["completed_at"],
    )

    op.create_table(
        "record_audit_entries",
        sa.Column("entry_id", sa.Uuid(), nullable=False),
        sa.Column("record_id", sa.Uuid(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column(
            "action",
            sa.Enum(*AUDIT_ACTIONS, name="audit_action", create_constraint=True),
            nullable=False,
        ),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("from_status", sa.String(20), nullable=True),
        sa.Column("to_status", sa.String(20), nullable=True),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("entry_id", name=op.f("pk_record_audit_entries")),
        sa.ForeignKeyConstraint(
            ["record_id"],
            ["inspection_records.record_id"],
            name=op.f("fk_record_audit_entries_record_id_inspection_records"),
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint(
            "record_id",
            "position",
            name="uq_record_audit_entries_record_position",
        ),
    )

    op.create_table(
        "delivery_jobs",
        sa.Column("job_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("record_id", sa.Uuid(), nullable=False),
        sa.Column("recipient", sa.String(320), nullable=False),
        sa.Column("subject", sa.String(500), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("attachment_ref", sa.String(1000), nullable=True),
        sa.Column(
            "status",
            sa.Enum(*JOB_STATUSES, name="job_status", create_constraint=True),
            nullable=False,
        ),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_by", sa.String(255), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("message_id", sa.String(255), nullable=True),
        sa.PrimaryKeyConstraint("job_id", name=op.f("pk_delivery_jobs")),
        sa.ForeignKeyConstraint(
            ["record_id"],
            ["inspection_records.record_id"],
            name=op.f("fk_delivery_jobs_record_id_inspection_records"),
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_delivery_jobs_claim", "delivery_jobs", ["status", "run_at", "created_at"])
    op.create_index("ix_delivery_jobs_record_id", "delivery_jobs", ["record_id"])
    op.create_index("ix_delivery_jobs_sent_at", "delivery_jobs", ["sent_at"])


def downgrade() -> None:
    """Revert migration: drop the pipeline tables."""
    op.drop_index("ix_delivery_jobs_sent_at", table_name="delivery_jobs")
    op.drop_index("ix_delivery_jobs_record_id", table_name="delivery_jobs")
    op.drop_index("ix_delivery_jobs_claim", table_name="delivery_jobs")
    op.drop_table("delivery_jobs")
    op.drop_table("record_audit_entries")
    op.drop_index("ix_inspection_records_completed_at", table_name="inspection_records")
    op.drop_index("ix_inspection_records_truck_number_created_at", table_name="inspection_records")
    op.drop_index("ix_inspection_records_status_created_at", table_name="inspection_records")
    op.drop_table("inspection_records")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for enum_name in ("job_status", "audit_action", "record_status"):
            op.execute(f"DROP TYPE IF EXISTS {enum_name}")
