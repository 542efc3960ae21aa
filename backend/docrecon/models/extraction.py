import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
from sqlalchemy.types import CHAR, TypeDecorator

Base = declarative_base()


class GUID(TypeDecorator):
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, uuid.UUID):
            return value if dialect.name == "postgresql" else str(value)
        if isinstance(value, str):
            try:
                parsed = uuid.UUID(value)
            except ValueError:
                return value
            return parsed if dialect.name == "postgresql" else str(parsed)
        return value

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        try:
            return uuid.UUID(value)
        except ValueError:
            return value


UUID_TYPE = GUID()
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")


class ExtractionJob(Base):
    __tablename__ = "extraction_jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('Queued','Processing','Completed','Error','NeedsReview')",
            name="ck_extraction_jobs_status",
        ),
        CheckConstraint("retry_count >= 0 AND retry_count <= max_retries", name="ck_extraction_jobs_retry_bounds"),
        Index("ix_extraction_jobs_retry_due", "status", "next_retry_at"),
        Index("ix_extraction_jobs_created_at", "created_at"),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    document_id = Column(String(128), nullable=False, index=True)
    file_path = Column(String(1024), nullable=False)
    file_type = Column(String(32), nullable=False, default="", server_default=text("''"))
    processing_type = Column(String(32), nullable=False, default="structured_data")
    status = Column(String(16), nullable=False, default="Queued", server_default=text("'Queued'"))
    auto_insert_threshold = Column(Float, nullable=False, default=0.8)
    confidence_score = Column(Float)
    ai_model_used = Column(String(128))
    document_category = Column(String(64))
    target_table = Column(String(64))
    suggested_mappings = Column(JSON_TYPE)
    retry_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    max_retries = Column(Integer, nullable=False, default=3, server_default=text("3"))
    last_error = Column(Text)
    error_kind = Column(String(16))
    next_retry_at = Column(DateTime(timezone=True))
    processing_start_time = Column(DateTime(timezone=True))
    processing_end_time = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    @property
    def is_terminal(self) -> bool:
        """Completed, or errored with no retry budget left (or a permanent input error)."""
        if self.status == "Completed":
            return True
        if self.status != "Error":
            return False
        if self.error_kind == "permanent":
            return True
        return int(self.retry_count or 0) >= int(self.max_retries or 0)


class StagedItem(Base):
    __tablename__ = "staged_items"
    __table_args__ = (
        CheckConstraint(
            "confidence_score >= 0 AND confidence_score <= 1",
            name="ck_staged_items_confidence_range",
        ),
        Index("ix_staged_items_job_field", "job_id", "field_path"),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    job_id = Column(UUID_TYPE, ForeignKey("extraction_jobs.id"), nullable=False)
    field_path = Column(String(255), nullable=False)
    extracted_value = Column(JSON_TYPE)
    confidence_score = Column(Float, nullable=False)
    source_snippet = Column(Text)
    attempt = Column(Integer, nullable=False, default=1, server_default=text("1"))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class CuratedItem(Base):
    __tablename__ = "curated_items"

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    # unique: a staged item is promoted at most once
    origin_staged_item_id = Column(UUID_TYPE, ForeignKey("staged_items.id"), nullable=False, unique=True)
    final_value = Column(JSON_TYPE)
    auto_inserted = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    approved_by = Column(String(128), nullable=False)
    approved_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    origin = relationship("StagedItem")


class ApprovalLogEntry(Base):
    __tablename__ = "approval_log_entries"
    __table_args__ = (
        CheckConstraint("action IN ('approved','rejected','edited')", name="ck_approval_log_action"),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    batch_ref = Column(String(128), nullable=False, index=True)
    job_id = Column(UUID_TYPE, ForeignKey("extraction_jobs.id"), nullable=False, index=True)
    action = Column(String(16), nullable=False)
    items_count = Column(Integer, nullable=False, default=0)
    high_confidence_count = Column(Integer, nullable=False, default=0)
    rejected_count = Column(Integer, nullable=False, default=0)
    edited_count = Column(Integer, nullable=False, default=0)
    notes = Column(Text)
    created_by = Column(String(128), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class ReviewDecision(Base):
    __tablename__ = "review_decisions"
    __table_args__ = (
        UniqueConstraint("staged_item_id", name="uq_review_decisions_staged_item"),
        CheckConstraint("decision IN ('approved','rejected')", name="ck_review_decisions_decision"),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    staged_item_id = Column(UUID_TYPE, ForeignKey("staged_items.id"), nullable=False)
    approval_log_id = Column(UUID_TYPE, ForeignKey("approval_log_entries.id"), nullable=False)
    decision = Column(String(16), nullable=False)
    edited_value = Column(JSON_TYPE)
    decided_by = Column(String(128), nullable=False)
    decided_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class NotificationOutbox(Base):
    __tablename__ = "notification_outbox"
    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_notification_outbox_dedupe_key"),
        Index("ix_notification_outbox_status_next_attempt", "status", "next_attempt_at"),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    entity_type = Column(String(64), nullable=False)
    entity_id = Column(UUID_TYPE, nullable=False)
    channel = Column(String(32), nullable=False)
    template_key = Column(String(64), nullable=False)
    payload_json = Column(JSON_TYPE, nullable=False)
    dedupe_key = Column(String(160), nullable=False)
    status = Column(String(16), nullable=False, default="PENDING", server_default=text("'PENDING'"))
    attempt_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    next_attempt_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    sent_at = Column(DateTime(timezone=True))
    last_error = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
