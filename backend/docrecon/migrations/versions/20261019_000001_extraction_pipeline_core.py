"""extraction pipeline core schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 09:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261019_000001"
down_revision = None
branch_labels = None
depends_on = None


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=True),
        primary_key=True,
        nullable=False,
        server_default=sa.text("gen_random_uuid()"),
    )


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    op.create_table(
        "extraction_jobs",
        _uuid_pk(),
        sa.Column("document_id", sa.String(length=128), nullable=False),
        sa.Column("file_path", sa.String(length=1024), nullable=False),
        sa.Column("file_type", sa.String(length=32), nullable=False, server_default=sa.text("''")),
        sa.Column("processing_type", sa.String(length=32), nullable=False, server_default=sa.text("'structured_data'")),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'Queued'")),
        sa.Column("auto_insert_threshold", sa.Float(), nullable=False, server_default=sa.text("0.8")),
        sa.Column("confidence_score", sa.Float()),
        sa.Column("ai_model_used", sa.String(length=128)),
        sa.Column("document_category", sa.String(length=64)),
        sa.Column("target_table", sa.String(length=64)),
        sa.Column("suggested_mappings", postgresql.JSONB()),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("last_error", sa.Text()),
        sa.Column("error_kind", sa.String(length=16)),
        sa.Column("next_retry_at", sa.DateTime(timezone=True)),
        sa.Column("processing_start_time", sa.DateTime(timezone=True)),
        sa.Column("processing_end_time", sa.DateTime(timezone=True)),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "status IN ('Queued','Processing','Completed','Error','NeedsReview')",
            name="ck_extraction_jobs_status",
        ),
        sa.CheckConstraint(
            "retry_count >= 0 AND retry_count <= max_retries",
            name="ck_extraction_jobs_retry_bounds",
        ),
    )
    op.create_index("ix_extraction_jobs_document_id", "extraction_jobs", ["document_id"])
    op.create_index("ix_extraction_jobs_retry_due", "extraction_jobs", ["status", "next_retry_at"])
    op.create_index("ix_extraction_jobs_created_at", "extraction_jobs", ["created_at"])

    op.create_table(
        "staged_items",
        _uuid_pk(),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("extraction_jobs.id"), nullable=False),
        sa.Column("field_path", sa.String(length=255), nullable=False),
        sa.Column("extracted_value", postgresql.JSONB()),
        sa.Column("confidence_score", sa.Float(), nullable=False),
        sa.Column("source_snippet", sa.Text()),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default=sa.text("1")),
        _created_at(),
        sa.CheckConstraint(
            "confidence_score >= 0 AND confidence_score <= 1",
            name="ck_staged_items_confidence_range",
        ),
    )
    op.create_index("ix_staged_items_job_field", "staged_items", ["job_id", "field_path"])

    op.create_table(
        "curated_items",
        _uuid_pk(),
        sa.Column(
            "origin_staged_item_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("staged_items.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("final_value", postgresql.JSONB()),
        sa.Column("auto_inserted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("approved_by", sa.String(length=128), nullable=False),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )

    op.create_table(
        "approval_log_entries",
        _uuid_pk(),
        sa.Column("batch_ref", sa.String(length=128), nullable=False),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("extraction_jobs.id"), nullable=False),
        sa.Column("action", sa.String(length=16), nullable=False),
        sa.Column("items_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("high_confidence_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("rejected_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("edited_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("notes", sa.Text()),
        sa.Column("created_by", sa.String(length=128), nullable=False),
        _created_at(),
        sa.CheckConstraint("action IN ('approved','rejected','edited')", name="ck_approval_log_action"),
    )
    op.create_index("ix_approval_log_entries_batch_ref", "approval_log_entries", ["batch_ref"])
    op.create_index("ix_approval_log_entries_job_id", "approval_log_entries", ["job_id"])

    # append-only audit trail
    op.execute(
        """
        CREATE OR REPLACE FUNCTION approval_log_entries_immutable() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'approval_log_entries is append-only';
        END;
        $$ LANGUAGE plpgsql
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_approval_log_entries_immutable
        BEFORE UPDATE OR DELETE ON approval_log_entries
        FOR EACH ROW EXECUTE FUNCTION approval_log_entries_immutable()
        """
    )

    op.create_table(
        "review_decisions",
        _uuid_pk(),
        sa.Column(
            "staged_item_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("staged_items.id"),
            nullable=False,
        ),
        sa.Column(
            "approval_log_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("approval_log_entries.id"),
            nullable=False,
        ),
        sa.Column("decision", sa.String(length=16), nullable=False),
        sa.Column("edited_value", postgresql.JSONB()),
        sa.Column("decided_by", sa.String(length=128), nullable=False),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("staged_item_id", name="uq_review_decisions_staged_item"),
        sa.CheckConstraint("decision IN ('approved','rejected')", name="ck_review_decisions_decision"),
    )

    op.create_table(
        "notification_outbox",
        _uuid_pk(),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("channel", sa.String(length=32), nullable=False),
        sa.Column("template_key", sa.String(length=64), nullable=False),
        sa.Column("payload_json", postgresql.JSONB(), nullable=False),
        sa.Column("dedupe_key", sa.String(length=160), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("last_error", sa.Text()),
        _created_at(),
        sa.UniqueConstraint("dedupe_key", name="uq_notification_outbox_dedupe_key"),
    )
    op.create_index(
        "ix_notification_outbox_status_next_attempt",
        "notification_outbox",
        ["status", "next_attempt_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_notification_outbox_status_next_attempt", table_name="notification_outbox")
    op.drop_table("notification_outbox")
    op.drop_table("review_decisions")
    op.execute("DROP TRIGGER IF EXISTS trg_approval_log_entries_immutable ON approval_log_entries")
    op.execute("DROP FUNCTION IF EXISTS approval_log_entries_immutable()")
    op.drop_index("ix_approval_log_entries_job_id", table_name="approval_log_entries")
    op.drop_index("ix_approval_log_entries_batch_ref", table_name="approval_log_entries")
    op.drop_table("approval_log_entries")
    op.drop_table("curated_items")
    op.drop_index("ix_staged_items_job_field", table_name="staged_items")
    op.drop_table("staged_items")
    op.drop_index("ix_extraction_jobs_created_at", table_name="extraction_jobs")
    op.drop_index("ix_extraction_jobs_retry_due", table_name="extraction_jobs")
    op.drop_index("ix_extraction_jobs_document_id", table_name="extraction_jobs")
    op.drop_table("extraction_jobs")
