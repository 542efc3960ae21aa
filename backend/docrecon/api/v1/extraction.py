"""Extraction pipeline endpoints: ingestion, review, health and manual retry sweep."""

from __future__ import annotations

import logging
import uuid
from typing import Callable, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy.orm import Session

from docrecon.core.auth import CurrentUser, require_roles
from docrecon.core.config import get_settings
from docrecon.core.dependencies import get_db, get_session_factory
from docrecon.core.storage import file_type_from_name
from docrecon.models.extraction import ApprovalLogEntry, ExtractionJob, StagedItem
from docrecon.schemas.extraction import (
    ApprovalLogEntryOut,
    ExtractionJobCreate,
    ExtractionJobOut,
    HealthSnapshot,
    ItemReviewState,
    JobStatus,
    ReviewBatchResult,
    ReviewBatchSubmit,
    RetrySweepOut,
    StagedItemListResponse,
    StagedItemOut,
)
from docrecon.services import job_store
from docrecon.services.ai.document_extract.service import ExtractionClient
from docrecon.services.extraction_invoker import run_extraction_job
from docrecon.services.health_monitor import compute_health_snapshot
from docrecon.services.reconciliation import ReviewBatch, list_staged_items_with_state, submit_batch
from docrecon.services.retry_scheduler import get_retry_scheduler

logger = logging.getLogger(__name__)

router = APIRouter()


def get_extraction_client() -> Optional[ExtractionClient]:
    """``None`` means the configured AI provider."""
    return None


def _job_out(job: ExtractionJob) -> ExtractionJobOut:
    return ExtractionJobOut(
        id=str(job.id),
        document_id=job.document_id,
        status=JobStatus(job.status),
        processing_type=job.processing_type,
        auto_insert_threshold=job.auto_insert_threshold,
        confidence_score=job.confidence_score,
        ai_model_used=job.ai_model_used,
        document_category=job.document_category,
        target_table=job.target_table,
        suggested_mappings=job.suggested_mappings or {},
        retry_count=job.retry_count,
        max_retries=job.max_retries,
        last_error=job.last_error,
        error_kind=job.error_kind,
        next_retry_at=job.next_retry_at,
        processing_start_time=job.processing_start_time,
        processing_end_time=job.processing_end_time,
        created_at=job.created_at,
    )


def _item_out(item: StagedItem, state: ItemReviewState, meets: bool) -> StagedItemOut:
    return StagedItemOut(
        id=str(item.id),
        job_id=str(item.job_id),
        field_path=item.field_path,
        extracted_value=item.extracted_value,
        confidence_score=item.confidence_score,
        source_snippet=item.source_snippet,
        attempt=item.attempt,
        review_state=state,
        meets_threshold=meets,
    )


def _log_out(entry: ApprovalLogEntry) -> ApprovalLogEntryOut:
    return ApprovalLogEntryOut(
        id=str(entry.id),
        batch_ref=entry.batch_ref,
        job_id=str(entry.job_id),
        action=entry.action,
        items_count=entry.items_count,
        high_confidence_count=entry.high_confidence_count,
        rejected_count=entry.rejected_count,
        edited_count=entry.edited_count,
        notes=entry.notes,
        created_by=entry.created_by,
        created_at=entry.created_at,
    )


def _get_job_or_404(db: Session, job_id: uuid.UUID) -> ExtractionJob:
    job = job_store.get_job(db, job_id)
    if not job:
        raise HTTPException(404, "Extraction job not found")
    return job


@router.post("/extraction/jobs", response_model=ExtractionJobOut, status_code=201)
def create_extraction_job(
    payload: ExtractionJobCreate,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(require_roles("REVIEWER", "ADMIN")),
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    client: Optional[ExtractionClient] = Depends(get_extraction_client),
):
    settings = get_settings()
    threshold = payload.auto_insert_threshold
    if threshold is None:
        threshold = settings.auto_insert_threshold
    max_retries = payload.max_retries if payload.max_retries is not None else settings.retry_max_attempts

    job = job_store.create_job(
        db,
        document_id=payload.document_id,
        file_path=payload.file_path,
        file_type=payload.file_type or file_type_from_name(payload.file_path),
        auto_insert_threshold=threshold,
        max_retries=max_retries,
    )
    db.commit()
    db.refresh(job)
    logger.info("Job %s queued for document %s by %s", job.id, job.document_id, current_user.id)

    background_tasks.add_task(run_extraction_job, session_factory, job.id, client=client)
    return _job_out(job)


@router.get("/extraction/jobs/{job_id}", response_model=ExtractionJobOut)
def get_extraction_job(
    job_id: uuid.UUID,
    current_user: CurrentUser = Depends(require_roles("REVIEWER", "ADMIN")),
    db: Session = Depends(get_db),
):
    return _job_out(_get_job_or_404(db, job_id))


@router.get("/extraction/jobs/{job_id}/staged-items", response_model=StagedItemListResponse)
def list_job_staged_items(
    job_id: uuid.UUID,
    current_user: CurrentUser = Depends(require_roles("REVIEWER", "ADMIN")),
    db: Session = Depends(get_db),
):
    job = _get_job_or_404(db, job_id)
    items = [_item_out(item, state, meets) for item, state, meets in list_staged_items_with_state(db, job)]
    return StagedItemListResponse(job_id=str(job.id), status=JobStatus(job.status), items=items)


@router.post("/extraction/jobs/{job_id}/review", response_model=ReviewBatchResult)
def submit_review_batch(
    job_id: uuid.UUID,
    payload: ReviewBatchSubmit,
    current_user: CurrentUser = Depends(require_roles("REVIEWER", "ADMIN")),
    db: Session = Depends(get_db),
):
    job = _get_job_or_404(db, job_id)
    batch = ReviewBatch.from_decisions(payload.decisions)
    outcome = submit_batch(
        db,
        job=job,
        batch=batch,
        actor_id=current_user.id,
        batch_ref=payload.batch_ref,
        notes=payload.notes,
    )
    db.commit()
    return ReviewBatchResult(
        job_id=str(job.id),
        status=JobStatus(job.status),
        advanced=outcome.advanced,
        curated_item_ids=[str(row.id) for row in outcome.curated],
        approval_log=_log_out(outcome.approval_log),
    )


@router.get("/extraction/jobs/{job_id}/approval-log", response_model=list[ApprovalLogEntryOut])
def get_approval_log(
    job_id: uuid.UUID,
    current_user: CurrentUser = Depends(require_roles("REVIEWER", "ADMIN")),
    db: Session = Depends(get_db),
):
    job = _get_job_or_404(db, job_id)
    return [_log_out(entry) for entry in job_store.list_approval_log(db, job.id)]


@router.get("/admin/extraction/health", response_model=HealthSnapshot, response_model_by_alias=True)
def extraction_health(
    current_user: CurrentUser = Depends(require_roles("ADMIN")),
    db: Session = Depends(get_db),
):
    return compute_health_snapshot(db)


@router.post("/admin/extraction/retry-sweep", response_model=RetrySweepOut)
async def trigger_retry_sweep(
    current_user: CurrentUser = Depends(require_roles("ADMIN")),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    result = await get_retry_scheduler(session_factory).run_sweep()
    if result is None:
        return RetrySweepOut(skipped=True)
    logger.info("Manual retry sweep by %s: %s", current_user.id, result)
    return RetrySweepOut(
        skipped=False,
        due=result.due,
        succeeded=result.succeeded,
        failed=result.failed,
        exhausted=result.exhausted,
    )
