"""Reconciliation Service: human review of staged items on NeedsReview jobs.

A reviewer builds a ``ReviewBatch`` (approve / reject / edit per staged item)
and submits it. Approved items become curated items, every decided item gets a
``ReviewDecision`` row, and the batch as a whole gets one ``ApprovalLogEntry``.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from docrecon.models.extraction import ApprovalLogEntry, CuratedItem, ExtractionJob, StagedItem
from docrecon.schemas.extraction import (
    ApprovalAction,
    ItemReviewState,
    JobStatus,
    ReviewDecisionType,
)
from docrecon.services import job_store
from docrecon.services.confidence_gate import count_high_confidence, meets_threshold

logger = logging.getLogger(__name__)

_NOT_SET = object()


@dataclass
class _Pick:
    decision: ReviewDecisionType
    edited_value: Any = _NOT_SET


class ReviewBatch:
    """Decisions collected for one submit; the last call for an item wins."""

    def __init__(self) -> None:
        self._picks: dict[uuid.UUID, _Pick] = {}

    @classmethod
    def from_decisions(cls, decisions: Iterable[Any]) -> "ReviewBatch":
        batch = cls()
        for row in decisions:
            kind = ReviewDecisionType(row.decision)
            if kind == ReviewDecisionType.EDIT:
                batch.edit(row.staged_item_id, row.edited_value)
            elif kind == ReviewDecisionType.APPROVE:
                batch.approve(row.staged_item_id)
            else:
                batch.reject(row.staged_item_id)
        return batch

    @staticmethod
    def _key(staged_item_id: Any) -> uuid.UUID:
        try:
            return staged_item_id if isinstance(staged_item_id, uuid.UUID) else uuid.UUID(str(staged_item_id))
        except ValueError:
            raise HTTPException(400, f"Invalid staged item id: {staged_item_id}")

    def approve(self, staged_item_id: Any) -> "ReviewBatch":
        self._picks[self._key(staged_item_id)] = _Pick(ReviewDecisionType.APPROVE)
        return self

    def reject(self, staged_item_id: Any) -> "ReviewBatch":
        self._picks[self._key(staged_item_id)] = _Pick(ReviewDecisionType.REJECT)
        return self

    def edit(self, staged_item_id: Any, value: Any) -> "ReviewBatch":
        # an edit is an approval with a replacement value
        self._picks[self._key(staged_item_id)] = _Pick(ReviewDecisionType.EDIT, value)
        return self

    def items(self) -> list[tuple[uuid.UUID, _Pick]]:
        return list(self._picks.items())

    @property
    def approved_count(self) -> int:
        return sum(1 for pick in self._picks.values() if pick.decision != ReviewDecisionType.REJECT)

    @property
    def can_advance(self) -> bool:
        """The downstream advance action needs at least one approved item."""
        return self.approved_count > 0

    def __len__(self) -> int:
        return len(self._picks)


@dataclass
class BatchOutcome:
    job: ExtractionJob
    approval_log: ApprovalLogEntry
    curated: list[CuratedItem] = field(default_factory=list)
    advanced: bool = False


def _review_states(db: Session, job: ExtractionJob) -> dict[Any, ItemReviewState]:
    states: dict[Any, ItemReviewState] = {}
    for row in job_store.curated_items_for_job(db, job.id):
        states[row.origin_staged_item_id] = (
            ItemReviewState.AUTO_APPROVED if row.auto_inserted else ItemReviewState.APPROVED
        )
    for staged_id, decision in job_store.review_decisions_for_job(db, job.id).items():
        if decision.decision == ApprovalAction.REJECTED.value:
            states[staged_id] = ItemReviewState.REJECTED
    return states


def list_staged_items_with_state(
    db: Session, job: ExtractionJob
) -> list[tuple[StagedItem, ItemReviewState, bool]]:
    """``(item, review_state, meets_threshold)`` for every staged item of *job*."""
    states = _review_states(db, job)
    return [
        (
            item,
            states.get(item.id, ItemReviewState.PENDING),
            meets_threshold(item.confidence_score, job.auto_insert_threshold),
        )
        for item in job_store.list_staged_items(db, job.id)
    ]


def pending_items(db: Session, job: ExtractionJob) -> list[StagedItem]:
    return [
        item
        for item, state, _ in list_staged_items_with_state(db, job)
        if state == ItemReviewState.PENDING
    ]


def submit_batch(
    db: Session,
    *,
    job: ExtractionJob,
    batch: ReviewBatch,
    actor_id: str,
    batch_ref: Optional[str] = None,
    notes: Optional[str] = None,
) -> BatchOutcome:
    if JobStatus(job.status) != JobStatus.NEEDS_REVIEW:
        raise HTTPException(409, f"Job is {job.status}; only NeedsReview jobs can be reviewed")
    pending = {item.id: item for item in pending_items(db, job)}
    if not pending:
        # every item was rejected; nothing approved means nothing to advance
        raise HTTPException(
            409,
            f"Job {job.id} has no pending staged items left; all remaining items were rejected "
            "and the job stays NeedsReview without approved items",
        )
    if not len(batch):
        raise HTTPException(400, "Review batch contains no decisions")

    known = {item.id for item in job_store.list_staged_items(db, job.id)}
    for staged_id, _ in batch.items():
        if staged_id not in known:
            raise HTTPException(404, f"Staged item {staged_id} not found in job {job.id}")
        if staged_id not in pending:
            raise HTTPException(409, f"Staged item {staged_id} was already decided")

    approved: list[tuple[StagedItem, _Pick]] = []
    rejected: list[StagedItem] = []
    edited_count = 0
    for staged_id, pick in batch.items():
        item = pending[staged_id]
        if pick.decision == ReviewDecisionType.REJECT:
            rejected.append(item)
            continue
        approved.append((item, pick))
        if pick.decision == ReviewDecisionType.EDIT and pick.edited_value != item.extracted_value:
            edited_count += 1

    high_confidence = count_high_confidence([item for item, _ in approved], job.auto_insert_threshold)
    if edited_count:
        action = ApprovalAction.EDITED
    elif approved:
        action = ApprovalAction.APPROVED
    else:
        action = ApprovalAction.REJECTED

    entry = job_store.append_approval_log(
        db,
        batch_ref=batch_ref or str(job.id),
        job_id=job.id,
        action=action.value,
        items_count=len(batch),
        high_confidence_count=high_confidence,
        rejected_count=len(rejected),
        edited_count=edited_count,
        notes=notes,
        created_by=actor_id,
    )

    curated: list[CuratedItem] = []
    for item, pick in approved:
        edited = pick.decision == ReviewDecisionType.EDIT
        final_value = pick.edited_value if edited else item.extracted_value
        job_store.add_review_decision(
            db,
            staged_item=item,
            approval_log=entry,
            decision=ApprovalAction.APPROVED.value,
            edited_value=pick.edited_value if edited else None,
            decided_by=actor_id,
        )
        curated.append(
            job_store.add_curated_item(
                db,
                staged_item=item,
                final_value=final_value,
                approved_by=actor_id,
                auto_inserted=False,
            )
        )
    for item in rejected:
        job_store.add_review_decision(
            db,
            staged_item=item,
            approval_log=entry,
            decision=ApprovalAction.REJECTED.value,
            edited_value=None,
            decided_by=actor_id,
        )
    db.flush()

    advanced = False
    if batch.can_advance and not pending_items(db, job):
        advanced = job_store.transition_status(db, job, JobStatus.COMPLETED)

    logger.info(
        "Review batch on job %s by %s: action=%s items=%s approved=%s rejected=%s advanced=%s",
        job.id,
        actor_id,
        action.value,
        len(batch),
        len(approved),
        len(rejected),
        advanced,
    )
    return BatchOutcome(job=job, approval_log=entry, curated=curated, advanced=advanced)
