from __future__ import annotations

import asyncio
import logging

from docrecon.core.config import get_settings
from docrecon.core.dependencies import SessionLocal
from docrecon.services.notification_outbox import process_notification_outbox_once
from docrecon.services.retry_scheduler import get_retry_scheduler

logger = logging.getLogger(__name__)


async def _retry_sweep_loop(*, interval_seconds: int) -> None:
    # sweep immediately on startup, then every interval
    error_sleep = max(10, min(60, interval_seconds))
    while True:
        try:
            settings = get_settings()
            if not settings.enable_recurring_jobs or not settings.enable_retry_scheduler:
                await asyncio.sleep(interval_seconds)
                continue
            if SessionLocal is None:
                await asyncio.sleep(interval_seconds)
                continue

            await get_retry_scheduler(SessionLocal).run_sweep()
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Retry scheduler worker error")
            await asyncio.sleep(error_sleep)


def start_retry_scheduler_worker() -> asyncio.Task | None:
    """
    Starts the in-process retry sweep loop. Manual sweeps through the admin API
    share the same scheduler, so they never overlap with this loop.
    """
    settings = get_settings()
    interval = getattr(settings, "retry_sweep_interval_seconds", 120) or 120
    interval = int(max(15, min(3600, interval)))
    return asyncio.create_task(_retry_sweep_loop(interval_seconds=interval))


async def _notification_outbox_loop(
    *, interval_seconds: int, batch_size: int, max_attempts: int
) -> None:
    error_sleep = max(10, min(60, interval_seconds))
    while True:
        try:
            settings = get_settings()
            if not settings.enable_recurring_jobs:
                await asyncio.sleep(interval_seconds)
                continue
            if not getattr(settings, "enable_notification_outbox", True):
                await asyncio.sleep(interval_seconds)
                continue
            if SessionLocal is None:
                await asyncio.sleep(interval_seconds)
                continue

            db = SessionLocal()
            try:
                process_notification_outbox_once(
                    db,
                    batch_size=batch_size,
                    max_attempts=max_attempts,
                )
                db.commit()
            finally:
                db.close()
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Notification outbox worker error")
            await asyncio.sleep(error_sleep)


def start_notification_outbox_worker() -> asyncio.Task | None:
    settings = get_settings()
    interval = int(max(5, min(300, int(getattr(settings, "notification_worker_interval_seconds", 30) or 30))))
    batch_size = int(max(1, min(200, int(getattr(settings, "notification_worker_batch_size", 50) or 50))))
    max_attempts = int(max(1, min(20, int(getattr(settings, "notification_worker_max_attempts", 5) or 5))))
    return asyncio.create_task(
        _notification_outbox_loop(
            interval_seconds=interval,
            batch_size=batch_size,
            max_attempts=max_attempts,
        )
    )
