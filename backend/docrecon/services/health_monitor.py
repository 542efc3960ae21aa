"""Health Monitor: read-only rolling-window snapshot of the extraction pipeline."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.orm import Session

from docrecon.core.config import get_settings
from docrecon.schemas.extraction import HealthSnapshot, HealthStatus, JobStatus
from docrecon.services import job_store

logger = logging.getLogger(__name__)

ERROR_RATE_CRITICAL = 0.30
ERROR_RATE_DEGRADED = 0.10
QUEUE_CRITICAL = 20
QUEUE_DEGRADED = 10
AVG_PROCESSING_DEGRADED_SECONDS = 60.0

_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.CRITICAL: 2}


def _escalate(current: HealthStatus, candidate: HealthStatus) -> HealthStatus:
    return candidate if _SEVERITY[candidate] > _SEVERITY[current] else current


def derive_status(
    *,
    error_rate: float,
    queue_length: int,
    avg_processing_time: float,
    staleness: Optional[timedelta],
    stale_after: timedelta,
) -> tuple[HealthStatus, list[str]]:
    """Status only escalates; every triggered check adds its message."""
    status = HealthStatus.HEALTHY
    issues: list[str] = []

    if error_rate > ERROR_RATE_CRITICAL:
        status = _escalate(status, HealthStatus.CRITICAL)
        issues.append(f"High error rate: {error_rate * 100:.1f}%")
    elif error_rate > ERROR_RATE_DEGRADED:
        status = _escalate(status, HealthStatus.DEGRADED)
        issues.append(f"Elevated error rate: {error_rate * 100:.1f}%")

    if queue_length > QUEUE_CRITICAL:
        status = _escalate(status, HealthStatus.CRITICAL)
        issues.append(f"Processing queue backed up: {queue_length} jobs")
    elif queue_length > QUEUE_DEGRADED:
        status = _escalate(status, HealthStatus.DEGRADED)
        issues.append(f"Processing queue growing: {queue_length} jobs")

    if avg_processing_time > AVG_PROCESSING_DEGRADED_SECONDS:
        status = _escalate(status, HealthStatus.DEGRADED)
        issues.append(f"Slow processing: {avg_processing_time:.1f}s average")

    if staleness is None:
        status = _escalate(status, HealthStatus.DEGRADED)
        issues.append("No completed extraction on record")
    elif staleness > stale_after:
        status = _escalate(status, HealthStatus.DEGRADED)
        issues.append(f"No extraction completed in {int(staleness.total_seconds() // 60)} minutes")

    return status, issues


def compute_health_snapshot(
    db: Session,
    *,
    now: Optional[datetime] = None,
    window: Optional[timedelta] = None,
    settings: Any = None,
) -> HealthSnapshot:
    settings = settings or get_settings()
    now = job_store.as_db_dt(db, now) if now else job_store.db_now(db)
    window = window or timedelta(minutes=settings.health_window_minutes)

    jobs = job_store.jobs_created_between(db, now - window, now)
    total = len(jobs)
    completed = [job for job in jobs if job.status == JobStatus.COMPLETED.value]
    errored = [job for job in jobs if job.status == JobStatus.ERROR.value]

    success_rate = len(completed) / total if total else 0.0
    error_rate = len(errored) / total if total else 0.0

    durations = [
        (job.processing_end_time - job.created_at).total_seconds()
        for job in completed
        if job.processing_end_time is not None and job.created_at is not None
    ]
    avg_processing_time = sum(durations) / len(durations) if durations else 0.0

    queue_length = job_store.count_jobs_in_status(db, JobStatus.PROCESSING)
    last_processed = job_store.latest_processing_end(db)
    staleness = None
    if last_processed is not None:
        staleness = now - job_store.as_db_dt(db, last_processed)

    status, issues = derive_status(
        error_rate=error_rate,
        queue_length=queue_length,
        avg_processing_time=avg_processing_time,
        staleness=staleness,
        stale_after=timedelta(minutes=settings.health_stale_minutes),
    )
    if status != HealthStatus.HEALTHY:
        logger.warning("Extraction pipeline %s: %s", status.value, "; ".join(issues))

    return HealthSnapshot(
        status=status,
        avg_processing_time=round(avg_processing_time, 3),
        error_rate=round(error_rate, 4),
        success_rate=round(success_rate, 4),
        queue_length=queue_length,
        last_processed=last_processed,
        total_jobs=total,
        issues=issues,
    )
