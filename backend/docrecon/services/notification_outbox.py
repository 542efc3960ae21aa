"""Notification collaborator: dedupe-keyed outbox plus a dispatcher.

Only two events ever reach it: a job that succeeded after a retry, and a job
that ran out of retries. Rows are written in the caller's transaction and sent
later by the outbox worker through the configured channel.
"""

from __future__ import annotations

import hashlib
import json
import logging
import smtplib
import ssl
from dataclasses import dataclass
from datetime import datetime, timedelta
from email.message import EmailMessage
from typing import Any, Optional, Protocol

from sqlalchemy import insert, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from docrecon.core.config import get_settings
from docrecon.models.extraction import NotificationOutbox
from docrecon.services.job_store import as_db_dt, db_now

logger = logging.getLogger(__name__)

EVENT_RETRY_SUCCEEDED = "extraction_retry_succeeded"
EVENT_RETRIES_EXHAUSTED = "extraction_retries_exhausted"
SUPPORTED_CHANNELS = {"log", "email"}


class Notifier(Protocol):
    def notify(self, message: str, *, job_id: Any, event: str) -> bool: ...


def _canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def _dedupe_key(*, channel: str, template_key: str, entity_type: str, entity_id: str, payload_json: Any) -> str:
    raw = _canonical_json(
        {
            "channel": channel,
            "template_key": template_key,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "payload": payload_json,
        }
    )
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()
    return f"{channel}:{template_key}:{entity_type}:{entity_id}:{digest[:16]}"


def enqueue_notification(
    db: Session,
    *,
    entity_type: str,
    entity_id: str,
    channel: str,
    template_key: str,
    payload_json: dict[str, Any],
) -> bool:
    """
    Inserts a notification request into the outbox.
    Returns False when an identical request is already queued.
    """
    dedupe = _dedupe_key(
        channel=channel,
        template_key=template_key,
        entity_type=entity_type,
        entity_id=str(entity_id),
        payload_json=payload_json,
    )

    values = {
        "entity_type": entity_type,
        "entity_id": entity_id,
        "channel": channel,
        "template_key": template_key,
        "payload_json": payload_json,
        "dedupe_key": dedupe,
        "status": "PENDING",
        "attempt_count": 0,
        "next_attempt_at": db_now(db),
    }

    dialect = getattr(getattr(db, "bind", None), "dialect", None)
    dialect_name = getattr(dialect, "name", "") or ""
    table = NotificationOutbox.__table__

    if dialect_name == "postgresql":
        stmt = pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=["dedupe_key"])
        return bool(db.execute(stmt).rowcount)
    if dialect_name == "sqlite":
        stmt = sqlite_insert(table).values(**values).prefix_with("OR IGNORE")
        return bool(db.execute(stmt).rowcount)

    existing = db.execute(
        select(NotificationOutbox.id).where(NotificationOutbox.dedupe_key == dedupe)
    ).scalar_one_or_none()
    if existing is not None:
        return False
    db.execute(insert(table).values(**values))
    return True


class OutboxNotifier:
    """``Notifier`` writing into the outbox within *db*'s transaction."""

    def __init__(self, db: Session, *, channel: Optional[str] = None) -> None:
        self._db = db
        self._channel = channel

    def notify(self, message: str, *, job_id: Any, event: str) -> bool:
        settings = get_settings()
        channel = self._channel or settings.notification_channel
        payload = {"event": event, "message": message}
        if channel == "email":
            payload["to"] = settings.notification_email_to
            payload["subject"] = message.split(".")[0][:120]
        queued = enqueue_notification(
            self._db,
            entity_type="extraction_job",
            entity_id=str(job_id),
            channel=channel,
            template_key=event,
            payload_json=payload,
        )
        if not queued:
            logger.info("Notification %s for job %s already queued", event, job_id)
        return queued


@dataclass(frozen=True)
class SmtpConfig:
    host: str
    port: int
    user: Optional[str]
    password: Optional[str]
    use_tls: bool
    from_email: str

    @classmethod
    def from_settings(cls, settings: Any) -> Optional["SmtpConfig"]:
        if not settings.smtp_host:
            return None
        return cls(
            host=settings.smtp_host,
            port=int(settings.smtp_port),
            user=settings.smtp_user or None,
            password=settings.smtp_password or None,
            use_tls=bool(settings.smtp_use_tls),
            from_email=settings.smtp_from_email or settings.smtp_user or "",
        )


def send_email_via_smtp(*, smtp: SmtpConfig, to_email: str, subject: str, body_text: str) -> None:
    msg = EmailMessage()
    msg["From"] = smtp.from_email
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body_text)

    context = ssl.create_default_context()
    # 465 is implicit SSL, anything else STARTTLS when enabled
    if smtp.port == 465:
        server = smtplib.SMTP_SSL(smtp.host, smtp.port, timeout=20, context=context)
    else:
        server = smtplib.SMTP(smtp.host, smtp.port, timeout=20)
        if smtp.use_tls:
            server.starttls(context=context)
    try:
        if smtp.user and smtp.password:
            server.login(smtp.user, smtp.password)
        server.send_message(msg)
    finally:
        try:
            server.quit()
        except smtplib.SMTPException:
            logger.debug("SMTP quit failed", exc_info=True)


def outbox_channel_send(*, channel: str, payload: dict[str, Any], smtp: Optional[SmtpConfig] = None) -> None:
    if channel not in SUPPORTED_CHANNELS:
        raise RuntimeError(f"Unsupported channel: {channel}")

    message = str(payload.get("message") or "").strip()
    if not message:
        raise RuntimeError("Notification payload has no message")

    if channel == "log":
        logger.warning("NOTIFICATION [%s] %s", payload.get("event", "?"), message)
        return

    if smtp is None:
        raise RuntimeError("SMTP_NOT_CONFIGURED")
    to_email = str(payload.get("to") or "").strip()
    if not to_email:
        raise RuntimeError("Notification payload has no recipient")
    send_email_via_smtp(
        smtp=smtp,
        to_email=to_email,
        subject=str(payload.get("subject") or "Extraction job update"),
        body_text=message,
    )


def _compute_backoff(attempt_count: int) -> timedelta:
    # 1m, 2m, 4m, 8m, ... capped to 60m
    seconds = 60 * (2 ** max(0, attempt_count - 1))
    seconds = max(60, min(3600, seconds))
    return timedelta(seconds=seconds)


def process_notification_outbox_once(
    db: Session,
    *,
    batch_size: int = 50,
    max_attempts: int = 5,
    now: Optional[datetime] = None,
) -> int:
    """
    Processes due notifications.
    Returns number of successfully SENT items.
    """
    now = as_db_dt(db, now) if now else db_now(db)
    smtp = SmtpConfig.from_settings(get_settings())

    due = (
        db.execute(
            select(NotificationOutbox)
            .where(
                NotificationOutbox.status.in_(["PENDING", "RETRY"]),
                NotificationOutbox.next_attempt_at <= now,
            )
            .order_by(NotificationOutbox.next_attempt_at.asc())
            .limit(int(max(1, batch_size)))
        )
        .scalars()
        .all()
    )

    sent = 0
    for row in due:
        row.attempt_count = int(row.attempt_count or 0) + 1
        try:
            outbox_channel_send(channel=row.channel, payload=row.payload_json or {}, smtp=smtp)
            row.status = "SENT"
            row.sent_at = now
            row.last_error = None
            sent += 1
        except Exception as exc:
            row.last_error = str(exc)
            if int(row.attempt_count or 0) >= int(max_attempts):
                row.status = "FAILED"
                row.next_attempt_at = now + timedelta(days=365)
                logger.error("Notification %s failed permanently: %s", row.id, exc)
            else:
                row.status = "RETRY"
                row.next_attempt_at = now + _compute_backoff(int(row.attempt_count or 0))

    if due:
        logger.info("Notification outbox processed: sent=%s total=%s", sent, len(due))
    return sent
