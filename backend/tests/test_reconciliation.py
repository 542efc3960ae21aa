"""
Tests for the reconciliation service.

Covers:
  - Approve path creates curated item + one approval log entry
  - Zero-approval batch: no curated items, job stays NeedsReview, cannot advance
  - Edits (final value, action=edited), round trip without edits
  - high_confidence_count, rejected/edited counts, items_count
  - Guard rails: wrong job state, empty batch, unknown / already decided items
"""

from __future__ import annotations

import unittest
import uuid

from fastapi import HTTPException
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from docrecon.models.extraction import ApprovalLogEntry, Base, CuratedItem, ReviewDecision
from docrecon.schemas.extraction import ItemReviewState, JobStatus
from docrecon.services import job_store
from docrecon.services.ai.document_extract.contracts import StagedItemCandidate
from docrecon.services.reconciliation import (
    ReviewBatch,
    list_staged_items_with_state,
    pending_items,
    submit_batch,
)

REVIEWER = "00000000-0000-0000-0000-000000000002"


class ReconciliationTests(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine)
        self.db = self.SessionLocal()

    def tearDown(self):
        self.db.close()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def _review_job(self, *items, threshold=0.8):
        """A NeedsReview job with the given (field_path, value, confidence) staged items."""
        job = job_store.create_job(
            self.db,
            document_id="doc-7",
            file_path="uploads/doc-7.pdf",
            file_type="pdf",
            auto_insert_threshold=threshold,
            max_retries=3,
        )
        staged = job_store.add_staged_items(
            self.db,
            job,
            [StagedItemCandidate(field_path=f, extracted_value=v, confidence_score=c) for f, v, c in items],
            attempt=1,
        )
        job.status = JobStatus.NEEDS_REVIEW.value
        self.db.commit()
        return job, staged

    def _count(self, model):
        return self.db.execute(select(func.count()).select_from(model)).scalar_one()

    def _submit(self, job, batch, **kwargs):
        outcome = submit_batch(self.db, job=job, batch=batch, actor_id=REVIEWER, **kwargs)
        self.db.commit()
        return outcome

    def test_approving_low_confidence_item_logs_one_entry(self):
        job, (item,) = self._review_job(("totals.net", 12.5, 0.6))

        batch = ReviewBatch().approve(item.id)
        self.assertTrue(batch.can_advance)
        outcome = self._submit(job, batch)

        self.assertEqual(self._count(CuratedItem), 1)
        self.assertEqual(self._count(ApprovalLogEntry), 1)
        entry = outcome.approval_log
        self.assertEqual(entry.action, "approved")
        self.assertEqual(entry.items_count, 1)
        self.assertEqual(entry.high_confidence_count, 0)
        self.assertEqual(entry.created_by, REVIEWER)
        self.assertEqual(entry.batch_ref, str(job.id))
        self.assertTrue(outcome.advanced)
        self.assertEqual(job.status, JobStatus.COMPLETED.value)

    def test_approval_without_edit_round_trips_value(self):
        value = {"amount": 12.5, "unit": "kg"}
        job, (item,) = self._review_job(("waste.january", value, 0.5))

        outcome = self._submit(job, ReviewBatch().approve(item.id))
        curated = outcome.curated[0]
        self.assertEqual(curated.final_value, item.extracted_value)
        self.assertEqual(curated.origin_staged_item_id, item.id)
        self.assertFalse(curated.auto_inserted)
        self.assertEqual(curated.approved_by, REVIEWER)

    def test_batch_without_approvals_does_not_progress(self):
        job, (a, b) = self._review_job(("a", 1, 0.5), ("b", 2, 0.4))

        batch = ReviewBatch().reject(a.id)
        self.assertFalse(batch.can_advance)
        outcome = self._submit(job, batch)

        self.assertEqual(self._count(CuratedItem), 0)
        self.assertFalse(outcome.advanced)
        self.assertEqual(job.status, JobStatus.NEEDS_REVIEW.value)
        self.assertEqual(outcome.approval_log.action, "rejected")
        self.assertEqual(outcome.approval_log.rejected_count, 1)
        self.assertEqual([i.id for i in pending_items(self.db, job)], [b.id])

    def test_rejecting_everything_leaves_job_in_review(self):
        job, (a,) = self._review_job(("a", 1, 0.5))
        outcome = self._submit(job, ReviewBatch().reject(a.id))

        self.assertFalse(outcome.advanced)
        self.assertEqual(job.status, JobStatus.NEEDS_REVIEW.value)
        self.assertEqual(pending_items(self.db, job), [])

        # later submits, even empty ones, say why nothing can happen
        for batch in (ReviewBatch(), ReviewBatch().approve(a.id)):
            with self.assertRaises(HTTPException) as ctx:
                submit_batch(self.db, job=job, batch=batch, actor_id=REVIEWER)
            self.assertEqual(ctx.exception.status_code, 409)
            self.assertIn("no pending staged items", ctx.exception.detail)

    def test_edit_uses_edited_value_and_marks_batch_edited(self):
        job, (a, b, c) = self._review_job(("a", "ACME Ltd", 0.5), ("b", 5, 0.9), ("c", 1, 0.3))

        batch = ReviewBatch().edit(a.id, "ACME Limited").approve(b.id).reject(c.id)
        outcome = self._submit(job, batch, notes="fixed supplier name")

        entry = outcome.approval_log
        self.assertEqual(entry.action, "edited")
        self.assertEqual(entry.items_count, 3)
        self.assertEqual(entry.edited_count, 1)
        self.assertEqual(entry.rejected_count, 1)
        self.assertEqual(entry.high_confidence_count, 1)
        self.assertEqual(entry.notes, "fixed supplier name")

        finals = {row.origin_staged_item_id: row.final_value for row in outcome.curated}
        self.assertEqual(finals, {a.id: "ACME Limited", b.id: 5})
        self.assertEqual(self._count(ReviewDecision), 3)
        self.assertTrue(outcome.advanced)

    def test_edit_with_unchanged_value_is_plain_approval(self):
        job, (a,) = self._review_job(("a", "same", 0.5))
        outcome = self._submit(job, ReviewBatch().edit(a.id, "same"))
        self.assertEqual(outcome.approval_log.action, "approved")
        self.assertEqual(outcome.approval_log.edited_count, 0)

    def test_partial_approval_keeps_job_in_review(self):
        job, (a, b) = self._review_job(("a", 1, 0.5), ("b", 2, 0.4))

        outcome = self._submit(job, ReviewBatch().approve(a.id))
        self.assertFalse(outcome.advanced)
        self.assertEqual(job.status, JobStatus.NEEDS_REVIEW.value)

        outcome = self._submit(job, ReviewBatch().approve(b.id), batch_ref="batch-2")
        self.assertTrue(outcome.advanced)
        self.assertEqual(job.status, JobStatus.COMPLETED.value)
        self.assertEqual(
            [entry.batch_ref for entry in job_store.list_approval_log(self.db, job.id)],
            [str(job.id), "batch-2"],
        )

    def test_review_states_listed_per_item(self):
        job, (auto, approved, rejected, pending) = self._review_job(
            ("auto", 1, 0.95), ("approved", 2, 0.5), ("rejected", 3, 0.5), ("pending", 4, 0.5)
        )
        job_store.add_curated_item(
            self.db, staged_item=auto, final_value=1, approved_by="system:auto-insert", auto_inserted=True
        )
        self._submit(job, ReviewBatch().approve(approved.id).reject(rejected.id))

        states = {item.field_path: (state, meets) for item, state, meets in list_staged_items_with_state(self.db, job)}
        self.assertEqual(states["auto"], (ItemReviewState.AUTO_APPROVED, True))
        self.assertEqual(states["approved"], (ItemReviewState.APPROVED, False))
        self.assertEqual(states["rejected"], (ItemReviewState.REJECTED, False))
        self.assertEqual(states["pending"], (ItemReviewState.PENDING, False))

    def test_guard_rails(self):
        job, (a,) = self._review_job(("a", 1, 0.5))

        with self.assertRaises(HTTPException) as ctx:
            submit_batch(self.db, job=job, batch=ReviewBatch(), actor_id=REVIEWER)
        self.assertEqual(ctx.exception.status_code, 400)

        with self.assertRaises(HTTPException) as ctx:
            submit_batch(self.db, job=job, batch=ReviewBatch().approve(uuid.uuid4()), actor_id=REVIEWER)
        self.assertEqual(ctx.exception.status_code, 404)

        with self.assertRaises(HTTPException) as ctx:
            ReviewBatch().approve("not-a-uuid")
        self.assertEqual(ctx.exception.status_code, 400)

        self._submit(job, ReviewBatch().reject(a.id))
        with self.assertRaises(HTTPException) as ctx:
            submit_batch(self.db, job=job, batch=ReviewBatch().approve(a.id), actor_id=REVIEWER)
        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(self._count(ApprovalLogEntry), 1)

    def test_only_needs_review_jobs_accept_batches(self):
        job, (a,) = self._review_job(("a", 1, 0.5))
        job.status = JobStatus.COMPLETED.value
        self.db.commit()

        with self.assertRaises(HTTPException) as ctx:
            submit_batch(self.db, job=job, batch=ReviewBatch().approve(a.id), actor_id=REVIEWER)
        self.assertEqual(ctx.exception.status_code, 409)


if __name__ == "__main__":
    unittest.main()
