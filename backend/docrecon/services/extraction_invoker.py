"""Extraction invoker: runs one extraction attempt for a job and records the outcome.

Flow per attempt:
  Queued/Error -> Processing (committed, so the health view sees it)
  call the extraction client (bounded timeout, optional inline retry)
  persist new staged items (partial results included)
  success  -> confidence gate -> Completed | NeedsReview
  failure  -> Error; transient failures consume one retry, permanent ones do not
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Iterable, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from docrecon.core.config import get_settings
from docrecon.models.extraction import CuratedItem, ExtractionJob, StagedItem
from docrecon.schemas.extraction import ErrorKind, JobStatus
from docrecon.services import job_store
from docrecon.services.ai.document_extract.contracts import (
    ExtractionRequest,
    ExtractionResponse,
    StagedItemCandidate,
)
from docrecon.services.ai.document_extract.service import ExtractionClient, ProviderExtractionClient
from docrecon.services.confidence_gate import AutoInsertPolicy, gate_items
from docrecon.services.document_routing import route_document
from docrecon.services.extraction_errors import ExtractionError
from docrecon.services.notification_outbox import EVENT_RETRIES_EXHAUSTED, Notifier, OutboxNotifier

logger = logging.getLogger(__name__)

AUTO_APPROVER = "system:auto-insert"


def retry_success_message(job: Any, attempt: int) -> str:
    return f"Extraction job {job.id} for document {job.document_id} succeeded on retry attempt {attempt}."


def retries_exhausted_message(job: Any) -> str:
    return (
        f"Extraction job {job.id} for document {job.document_id} failed permanently "
        f"after reaching the maximum of {job.max_retries} retries."
    )


def notify_retries_exhausted(notifier: Notifier, job: ExtractionJob) -> None:
    notifier.notify(retries_exhausted_message(job), job_id=job.id, event=EVENT_RETRIES_EXHAUSTED)


def compute_retry_backoff(retry_count: int, *, base_seconds: int = 60, max_seconds: int = 3600) -> timedelta:
    # base, 2*base, 4*base, ... capped
    seconds = int(base_seconds) * (2 ** max(0, int(retry_count) - 1))
    seconds = max(0, min(int(max_seconds), seconds))
    return timedelta(seconds=seconds)


def backoff_from_settings(settings: Any = None) -> Callable[[int], timedelta]:
    settings = settings or get_settings()

    def _backoff(retry_count: int) -> timedelta:
        return compute_retry_backoff(
            retry_count,
            base_seconds=settings.retry_backoff_base_seconds,
            max_seconds=settings.retry_backoff_max_seconds,
        )

    return _backoff


@dataclass
class InvocationOutcome:
    job: ExtractionJob
    success: bool
    status: JobStatus
    staged: list[StagedItem] = field(default_factory=list)
    curated: list[CuratedItem] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    exhausted: bool = False
    calls: int = 0


def _merge_candidates(
    candidates: Iterable[StagedItemCandidate], already_staged: set[str]
) -> list[StagedItemCandidate]:
    """First value staged for a field wins; later attempts only fill gaps."""
    seen = set(already_staged)
    fresh: list[StagedItemCandidate] = []
    for candidate in candidates:
        if candidate.field_path in seen:
            continue
        seen.add(candidate.field_path)
        fresh.append(candidate)
    return fresh


def _partial_candidates(raw_items: Iterable[Any], document_id: str) -> list[StagedItemCandidate]:
    valid: list[StagedItemCandidate] = []
    for raw in raw_items:
        try:
            valid.append(StagedItemCandidate.model_validate(raw))
        except ValidationError as exc:
            logger.warning(
                "Dropping malformed partial item for document %s: %s",
                document_id,
                exc.errors()[0].get("msg", "invalid"),
            )
    return valid


async def _call_client(
    client: ExtractionClient,
    request: ExtractionRequest,
    *,
    timeout_seconds: float,
) -> ExtractionResponse:
    try:
        return await asyncio.wait_for(client.extract(request), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        return ExtractionResponse.failure(f"Extraction timed out after {timeout_seconds:g}s")
    except ExtractionError as exc:
        return ExtractionResponse.failure(
            str(exc),
            kind=ErrorKind(exc.kind),
            staged_items=_partial_candidates(exc.partial_items, request.document_id),
        )
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.warning("Extraction client raised for document %s: %r", request.document_id, exc)
        return ExtractionResponse.failure(f"Extraction call failed: {exc}")


async def _call_with_inline_retry(
    client: ExtractionClient,
    request: ExtractionRequest,
    *,
    timeout_seconds: float,
    inline_retries: int,
) -> tuple[ExtractionResponse, list[StagedItemCandidate], int]:
    """Call the client, retrying transient failures *inline_retries* times.

    Partial items from every call are accumulated and returned alongside the
    last response.
    """
    partial: list[StagedItemCandidate] = []
    calls = 0
    response = ExtractionResponse.failure("Extraction was not attempted")
    for _ in range(1 + max(0, int(inline_retries))):
        calls += 1
        response = await _call_client(client, request, timeout_seconds=timeout_seconds)
        partial.extend(response.staged_items)
        if response.success or response.error_kind == ErrorKind.PERMANENT:
            break
        logger.warning(
            "Transient extraction failure for document %s (call %s): %s",
            request.document_id,
            calls,
            response.error,
        )
    return response, partial, calls


def _promote_auto_items(
    db: Session, job: ExtractionJob, policy: AutoInsertPolicy
) -> tuple[JobStatus, list[CuratedItem]]:
    curated_ids = {row.origin_staged_item_id for row in job_store.curated_items_for_job(db, job.id)}
    decided_ids = set(job_store.review_decisions_for_job(db, job.id))
    pending = [
        item
        for item in job_store.list_staged_items(db, job.id)
        if item.id not in curated_ids and item.id not in decided_ids
    ]
    decision = gate_items(pending, job.auto_insert_threshold, policy)
    curated = [
        job_store.add_curated_item(
            db,
            staged_item=item,
            final_value=item.extracted_value,
            approved_by=AUTO_APPROVER,
            auto_inserted=True,
        )
        for item in decision.auto_promote
    ]
    return decision.resulting_status, curated


def _record_failure(
    db: Session,
    job: ExtractionJob,
    response: ExtractionResponse,
    backoff: Callable[[int], timedelta],
) -> bool:
    now = job_store.db_now(db)
    kind = response.error_kind or ErrorKind.TRANSIENT
    job.last_error = (response.error or "Unknown extraction failure")[:2000]
    job.error_kind = kind.value
    job.processing_end_time = now
    job_store.transition_status(db, job, JobStatus.ERROR)

    if kind == ErrorKind.PERMANENT:
        # never selected by the retry sweep again
        job.next_retry_at = None
        logger.error("Job %s failed permanently: %s", job.id, job.last_error)
        return False

    job.retry_count = min(int(job.retry_count or 0) + 1, int(job.max_retries))
    exhausted = job.retry_count >= job.max_retries
    job.next_retry_at = None if exhausted else now + backoff(job.retry_count)
    logger.info(
        "Job %s failed (retry %s/%s, next at %s): %s",
        job.id,
        job.retry_count,
        job.max_retries,
        job.next_retry_at,
        job.last_error,
    )
    return exhausted


async def invoke_extraction(
    db: Session,
    job: ExtractionJob,
    *,
    client: Optional[ExtractionClient] = None,
    is_retry: bool = False,
    retry_attempt: int = 0,
    backoff: Optional[Callable[[int], timedelta]] = None,
    policy: Optional[AutoInsertPolicy] = None,
    inline_retries: int = 0,
    timeout_seconds: Optional[float] = None,
) -> InvocationOutcome:
    """Run one extraction attempt for *job*.

    Commits once after marking the job ``Processing``; the final state is
    flushed and left for the caller to commit.
    """
    settings = get_settings()
    client = client or ProviderExtractionClient()
    backoff = backoff or backoff_from_settings(settings)
    policy = policy or AutoInsertPolicy.from_settings(settings)
    timeout_seconds = float(timeout_seconds or settings.extraction_timeout_seconds)

    job_store.transition_status(db, job, JobStatus.PROCESSING)
    job.processing_start_time = job_store.db_now(db)
    job.processing_end_time = None
    db.commit()

    request = ExtractionRequest(
        document_id=str(job.document_id),
        file_path=job.file_path,
        file_type=job.file_type,
        auto_insert_threshold=job.auto_insert_threshold,
        is_retry=is_retry,
        retry_attempt=retry_attempt,
    )
    try:
        return await _run_attempt(
            db,
            job,
            client,
            request,
            backoff=backoff,
            policy=policy,
            inline_retries=inline_retries,
            timeout_seconds=timeout_seconds,
        )
    except Exception as exc:
        # the job is already committed as Processing; record it as a retryable failure
        logger.exception("Extraction attempt for job %s raised unexpectedly", job.id)
        db.rollback()
        response = ExtractionResponse.failure(f"Unexpected extraction error: {exc.__class__.__name__}: {exc}")
        return _failed_outcome(db, job, response, backoff)


def _failed_outcome(
    db: Session,
    job: ExtractionJob,
    response: ExtractionResponse,
    backoff: Callable[[int], timedelta],
    *,
    staged: Optional[list[StagedItem]] = None,
    calls: int = 0,
) -> InvocationOutcome:
    exhausted = _record_failure(db, job, response, backoff)
    db.flush()
    return InvocationOutcome(
        job=job,
        success=False,
        status=JobStatus.ERROR,
        staged=list(staged or []),
        error=job.last_error,
        error_kind=ErrorKind(job.error_kind),
        exhausted=exhausted,
        calls=calls,
    )


async def _run_attempt(
    db: Session,
    job: ExtractionJob,
    client: ExtractionClient,
    request: ExtractionRequest,
    *,
    backoff: Callable[[int], timedelta],
    policy: AutoInsertPolicy,
    inline_retries: int,
    timeout_seconds: float,
) -> InvocationOutcome:
    response, candidates, calls = await _call_with_inline_retry(
        client,
        request,
        timeout_seconds=timeout_seconds,
        inline_retries=inline_retries,
    )

    fresh = _merge_candidates(candidates, job_store.staged_field_paths(db, job.id))
    staged = job_store.add_staged_items(db, job, fresh, attempt=int(job.retry_count or 0) + 1)
    if staged:
        logger.info("Job %s: staged %s new item(s)", job.id, len(staged))

    if not response.success:
        return _failed_outcome(db, job, response, backoff, staged=staged, calls=calls)

    new_status, curated = _promote_auto_items(db, job, policy)
    all_items = job_store.list_staged_items(db, job.id)
    if all_items:
        job.confidence_score = round(sum(i.confidence_score for i in all_items) / len(all_items), 4)
    routing = route_document(job.file_path, all_items)
    job.document_category = routing.category
    job.target_table = routing.target_table
    job.suggested_mappings = routing.suggested_mappings
    job.ai_model_used = response.model_version or job.ai_model_used
    job.last_error = None
    job.error_kind = None
    job.next_retry_at = None
    job.processing_end_time = job_store.db_now(db)
    job_store.transition_status(db, job, new_status)
    db.flush()

    logger.info(
        "Job %s extracted: %s staged, %s auto-inserted, category=%s, status=%s",
        job.id,
        len(staged),
        len(curated),
        routing.category,
        new_status.value,
    )
    return InvocationOutcome(
        job=job,
        success=True,
        status=new_status,
        staged=staged,
        curated=curated,
        calls=calls,
    )


async def run_extraction_job(
    session_factory: Callable[[], Session],
    job_id: Any,
    *,
    client: Optional[ExtractionClient] = None,
    notifier_factory: Optional[Callable[[Session], Notifier]] = None,
) -> Optional[JobStatus]:
    """First attempt for a freshly created job, in its own session.

    A job whose retry budget is already used up by this attempt is never
    picked by the retry sweep, so the exhaustion notice is sent from here.
    """
    notifier_factory = notifier_factory or OutboxNotifier
    db = session_factory()
    try:
        job = job_store.get_job(db, job_id)
        if job is None:
            logger.warning("Job %s vanished before extraction started", job_id)
            return None
        outcome = await invoke_extraction(db, job, client=client)
        if outcome.exhausted:
            notify_retries_exhausted(notifier_factory(db), job)
        db.commit()
        return outcome.status
    except Exception:
        db.rollback()
        logger.exception("Extraction run failed for job %s", job_id)
        raise
    finally:
        db.close()
