"""Job Store: persistence for extraction jobs, staged/curated items and the approval log.

Holds no business rules beyond the job status graph; every query the invoker,
scheduler, reconciliation and health monitor need lives here.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from docrecon.models.extraction import (
    ApprovalLogEntry,
    CuratedItem,
    ExtractionJob,
    ReviewDecision,
    StagedItem,
)
from docrecon.schemas.extraction import JobStatus
from docrecon.services.extraction_errors import InvalidJobTransition

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED: [JobStatus.PROCESSING, JobStatus.ERROR],
    JobStatus.PROCESSING: [JobStatus.COMPLETED, JobStatus.NEEDS_REVIEW, JobStatus.ERROR],
    JobStatus.ERROR: [JobStatus.PROCESSING],
    JobStatus.NEEDS_REVIEW: [JobStatus.COMPLETED],
    JobStatus.COMPLETED: [],
}


def _dialect_name(db: Session) -> str:
    dialect = getattr(getattr(db, "bind", None), "dialect", None)
    return (getattr(dialect, "name", "") or "").lower()


def as_db_dt(db: Session, dt: datetime) -> datetime:
    """Normalize datetime to match DB storage semantics (SQLite stores naive)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc)
    if _dialect_name(db) == "sqlite":
        return dt_utc.replace(tzinfo=None)
    return dt_utc


def db_now(db: Session) -> datetime:
    return as_db_dt(db, datetime.now(timezone.utc))


def processing_type_for(file_type: str) -> str:
    if "pdf" in (file_type or "").lower():
        return "advanced_pdf_ocr"
    return "structured_data"


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


def create_job(
    db: Session,
    *,
    document_id: str,
    file_path: str,
    file_type: str,
    auto_insert_threshold: float,
    max_retries: int,
) -> ExtractionJob:
    job = ExtractionJob(
        document_id=document_id,
        file_path=file_path,
        file_type=(file_type or "").lower(),
        processing_type=processing_type_for(file_type),
        status=JobStatus.QUEUED.value,
        auto_insert_threshold=float(auto_insert_threshold),
        retry_count=0,
        max_retries=int(max_retries),
        created_at=db_now(db),
    )
    db.add(job)
    db.flush()
    return job


def get_job(db: Session, job_id: Any) -> Optional[ExtractionJob]:
    return db.get(ExtractionJob, job_id)


def transition_status(db: Session, job: ExtractionJob, new_status: JobStatus) -> bool:
    current = JobStatus(job.status)
    if new_status == current:
        return False
    if new_status not in ALLOWED_TRANSITIONS.get(current, []):
        raise InvalidJobTransition(current.value, new_status.value)
    job.status = new_status.value
    logger.info("Job %s: %s -> %s", job.id, current.value, new_status.value)
    return True


def find_jobs_due_for_retry(db: Session, *, now: datetime, limit: Optional[int] = None) -> list[ExtractionJob]:
    """status=Error AND retry_count<max_retries AND next_retry_at<=now, earliest due first."""
    stmt = (
        select(ExtractionJob)
        .where(
            ExtractionJob.status == JobStatus.ERROR.value,
            ExtractionJob.retry_count < ExtractionJob.max_retries,
            ExtractionJob.next_retry_at.is_not(None),
            ExtractionJob.next_retry_at <= as_db_dt(db, now),
        )
        .order_by(ExtractionJob.next_retry_at.asc(), ExtractionJob.created_at.asc())
    )
    if limit:
        stmt = stmt.limit(int(limit))
    return list(db.execute(stmt).scalars().all())


def jobs_created_between(db: Session, start: datetime, end: datetime) -> list[ExtractionJob]:
    return list(
        db.execute(
            select(ExtractionJob).where(
                ExtractionJob.created_at >= as_db_dt(db, start),
                ExtractionJob.created_at <= as_db_dt(db, end),
            )
        )
        .scalars()
        .all()
    )


def count_jobs_in_status(db: Session, status: JobStatus) -> int:
    return int(
        db.execute(
            select(func.count()).select_from(ExtractionJob).where(ExtractionJob.status == status.value)
        ).scalar_one()
    )


def latest_processing_end(db: Session) -> Optional[datetime]:
    return db.execute(
        select(func.max(ExtractionJob.processing_end_time)).where(
            ExtractionJob.status == JobStatus.COMPLETED.value
        )
    ).scalar_one_or_none()


# ---------------------------------------------------------------------------
# Staged / curated items
# ---------------------------------------------------------------------------


def add_staged_items(db: Session, job: ExtractionJob, candidates: Iterable[Any], *, attempt: int) -> list[StagedItem]:
    rows: list[StagedItem] = []
    now = db_now(db)
    for candidate in candidates:
        row = StagedItem(
            job_id=job.id,
            field_path=candidate.field_path,
            extracted_value=candidate.extracted_value,
            confidence_score=float(candidate.confidence_score),
            source_snippet=candidate.source_snippet,
            attempt=attempt,
            created_at=now,
        )
        db.add(row)
        rows.append(row)
    db.flush()
    return rows


def list_staged_items(db: Session, job_id: Any) -> list[StagedItem]:
    return list(
        db.execute(
            select(StagedItem)
            .where(StagedItem.job_id == job_id)
            .order_by(StagedItem.created_at.asc(), StagedItem.field_path.asc())
        )
        .scalars()
        .all()
    )


def staged_field_paths(db: Session, job_id: Any) -> set[str]:
    return set(db.execute(select(StagedItem.field_path).where(StagedItem.job_id == job_id)).scalars().all())


def add_curated_item(
    db: Session,
    *,
    staged_item: StagedItem,
    final_value: Any,
    approved_by: str,
    auto_inserted: bool,
) -> CuratedItem:
    row = CuratedItem(
        origin_staged_item_id=staged_item.id,
        final_value=final_value,
        approved_by=approved_by,
        auto_inserted=auto_inserted,
        approved_at=db_now(db),
    )
    db.add(row)
    db.flush()
    return row


def curated_items_for_job(db: Session, job_id: Any) -> list[CuratedItem]:
    return list(
        db.execute(
            select(CuratedItem)
            .join(StagedItem, StagedItem.id == CuratedItem.origin_staged_item_id)
            .where(StagedItem.job_id == job_id)
        )
        .scalars()
        .all()
    )


def add_review_decision(
    db: Session,
    *,
    staged_item: StagedItem,
    approval_log: ApprovalLogEntry,
    decision: str,
    edited_value: Any,
    decided_by: str,
) -> ReviewDecision:
    row = ReviewDecision(
        staged_item_id=staged_item.id,
        approval_log_id=approval_log.id,
        decision=decision,
        edited_value=edited_value,
        decided_by=decided_by,
        decided_at=db_now(db),
    )
    db.add(row)
    return row


def review_decisions_for_job(db: Session, job_id: Any) -> dict[Any, ReviewDecision]:
    rows = (
        db.execute(
            select(ReviewDecision)
            .join(StagedItem, StagedItem.id == ReviewDecision.staged_item_id)
            .where(StagedItem.job_id == job_id)
        )
        .scalars()
        .all()
    )
    return {row.staged_item_id: row for row in rows}


# ---------------------------------------------------------------------------
# Approval log (append-only)
# ---------------------------------------------------------------------------


def append_approval_log(
    db: Session,
    *,
    batch_ref: str,
    job_id: Any,
    action: str,
    items_count: int,
    high_confidence_count: int,
    rejected_count: int,
    edited_count: int,
    notes: Optional[str],
    created_by: str,
) -> ApprovalLogEntry:
    entry = ApprovalLogEntry(
        batch_ref=batch_ref,
        job_id=job_id,
        action=action,
        items_count=items_count,
        high_confidence_count=high_confidence_count,
        rejected_count=rejected_count,
        edited_count=edited_count,
        notes=notes,
        created_by=created_by,
        created_at=db_now(db),
    )
    db.add(entry)
    db.flush()
    return entry


def list_approval_log(db: Session, job_id: Any) -> list[ApprovalLogEntry]:
    return list(
        db.execute(
            select(ApprovalLogEntry)
            .where(ApprovalLogEntry.job_id == job_id)
            .order_by(ApprovalLogEntry.created_at.asc())
        )
        .scalars()
        .all()
    )
