"""Retry Scheduler: periodic sweep re-invoking extraction for failed jobs.

One sweep at a time. A trigger that arrives while a sweep is in flight is
dropped, not queued.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from docrecon.core.config import get_settings
from docrecon.core.dependencies import get_session_factory
from docrecon.schemas.extraction import JobStatus
from docrecon.services import job_store
from docrecon.services.ai.document_extract.service import ExtractionClient, ProviderExtractionClient
from docrecon.services.extraction_invoker import (
    backoff_from_settings,
    invoke_extraction,
    notify_retries_exhausted,
    retry_success_message,
)
from docrecon.services.notification_outbox import EVENT_RETRY_SUCCEEDED, Notifier, OutboxNotifier

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    due: int = 0
    succeeded: int = 0
    failed: int = 0
    exhausted: int = 0


class RetryScheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        client_factory: Optional[Callable[[], ExtractionClient]] = None,
        notifier_factory: Optional[Callable[[Session], Notifier]] = None,
        backoff: Optional[Callable[[int], timedelta]] = None,
        inline_retries: Optional[int] = None,
        batch_limit: Optional[int] = None,
    ) -> None:
        self._session_factory = session_factory
        self._client_factory = client_factory or ProviderExtractionClient
        self._notifier_factory = notifier_factory or OutboxNotifier
        self._backoff = backoff
        self._inline_retries = inline_retries
        self._batch_limit = batch_limit
        self._guard = threading.Lock()

    @property
    def sweep_in_progress(self) -> bool:
        return self._guard.locked()

    async def run_sweep(self, *, now: Optional[datetime] = None) -> Optional[SweepResult]:
        """Run one sweep; ``None`` when another sweep already holds the guard."""
        if not self._guard.acquire(blocking=False):
            logger.info("Retry sweep already in progress; trigger dropped")
            return None
        try:
            return await self._sweep(now=now)
        finally:
            self._guard.release()

    async def _sweep(self, *, now: Optional[datetime]) -> SweepResult:
        settings = get_settings()
        backoff = self._backoff or backoff_from_settings(settings)
        inline_retries = (
            settings.extraction_inline_retries if self._inline_retries is None else self._inline_retries
        )
        result = SweepResult()

        db = self._session_factory()
        try:
            due_ids = [
                job.id
                for job in job_store.find_jobs_due_for_retry(
                    db, now=now or job_store.db_now(db), limit=self._batch_limit
                )
            ]
        finally:
            db.close()

        result.due = len(due_ids)
        if not due_ids:
            return result
        logger.info("Retry sweep: %s job(s) due", len(due_ids))

        # sequential, in due order
        for job_id in due_ids:
            await self._retry_one(job_id, result, backoff=backoff, inline_retries=inline_retries)

        logger.info(
            "Retry sweep done: due=%s succeeded=%s failed=%s exhausted=%s",
            result.due,
            result.succeeded,
            result.failed,
            result.exhausted,
        )
        return result

    async def _retry_one(
        self,
        job_id: Any,
        result: SweepResult,
        *,
        backoff: Callable[[int], timedelta],
        inline_retries: int,
    ) -> None:
        db = self._session_factory()
        try:
            job = job_store.get_job(db, job_id)
            if job is None or job.status != JobStatus.ERROR.value or job.is_terminal:
                return
            attempt = int(job.retry_count or 0) + 1
            outcome = await invoke_extraction(
                db,
                job,
                client=self._client_factory(),
                is_retry=True,
                retry_attempt=attempt,
                backoff=backoff,
                inline_retries=inline_retries,
            )

            notifier = self._notifier_factory(db)
            if outcome.success:
                result.succeeded += 1
                if outcome.status == JobStatus.COMPLETED:
                    notifier.notify(
                        retry_success_message(job, attempt),
                        job_id=job.id,
                        event=EVENT_RETRY_SUCCEEDED,
                    )
            else:
                result.failed += 1
                if outcome.exhausted:
                    result.exhausted += 1
                    notify_retries_exhausted(notifier, job)
            db.commit()
        except Exception:
            db.rollback()
            result.failed += 1
            logger.exception("Retry of job %s failed unexpectedly", job_id)
        finally:
            db.close()


_scheduler: Optional[RetryScheduler] = None


def get_retry_scheduler(session_factory: Optional[Callable[[], Session]] = None) -> RetryScheduler:
    """Process-wide scheduler so the timer and manual triggers share one guard."""
    global _scheduler
    if _scheduler is None:
        _scheduler = RetryScheduler(session_factory or get_session_factory())
    return _scheduler


def reset_retry_scheduler() -> None:
    global _scheduler
    _scheduler = None
