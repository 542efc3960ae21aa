"""
Tests for notification outbox service: enqueue, process, retry, backoff, channels.

Covers:
  - Idempotent enqueue via dedupe_key
  - OutboxNotifier payloads per channel
  - process_notification_outbox_once with mocked channels
  - Retry logic and exponential backoff
  - FAILED status after max attempts
"""

from __future__ import annotations

import unittest
import uuid
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from docrecon.models.extraction import Base, NotificationOutbox
from docrecon.services.notification_outbox import (
    EVENT_RETRIES_EXHAUSTED,
    OutboxNotifier,
    SmtpConfig,
    _compute_backoff,
    enqueue_notification,
    outbox_channel_send,
    process_notification_outbox_once,
)


class NotificationOutboxTests(unittest.TestCase):
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

    def _enqueue(self, **overrides):
        defaults = {
            "entity_type": "extraction_job",
            "entity_id": str(uuid.uuid4()),
            "channel": "log",
            "template_key": EVENT_RETRIES_EXHAUSTED,
            "payload_json": {"event": EVENT_RETRIES_EXHAUSTED, "message": "Job failed permanently."},
        }
        defaults.update(overrides)
        return enqueue_notification(self.db, **defaults)

    def _rows(self):
        return self.db.execute(select(NotificationOutbox)).scalars().all()

    def test_dedupe_key_idempotent(self):
        eid = str(uuid.uuid4())
        self.assertTrue(self._enqueue(entity_id=eid))
        self.assertFalse(self._enqueue(entity_id=eid))
        self.db.commit()
        self.assertEqual(len(self._rows()), 1)

    def test_different_payloads_create_separate_records(self):
        eid = str(uuid.uuid4())
        self._enqueue(entity_id=eid, payload_json={"message": "one"})
        self._enqueue(entity_id=eid, payload_json={"message": "two"})
        self.db.commit()
        self.assertEqual(len(self._rows()), 2)

    def test_outbox_notifier_once_per_job_and_event(self):
        job_id = uuid.uuid4()
        notifier = OutboxNotifier(self.db)
        self.assertTrue(notifier.notify("Job failed.", job_id=job_id, event=EVENT_RETRIES_EXHAUSTED))
        self.assertFalse(notifier.notify("Job failed.", job_id=job_id, event=EVENT_RETRIES_EXHAUSTED))
        self.db.commit()

        (row,) = self._rows()
        self.assertEqual(row.entity_id, job_id)
        self.assertEqual(row.payload_json["message"], "Job failed.")

    def test_email_notifier_payload_has_recipient(self):
        with patch.dict("os.environ", {"NOTIFICATION_EMAIL_TO": "ops@example.com"}):
            from docrecon.core.config import get_settings

            get_settings.cache_clear()
            OutboxNotifier(self.db, channel="email").notify(
                "Extraction job 1 failed permanently. Details follow.",
                job_id=uuid.uuid4(),
                event=EVENT_RETRIES_EXHAUSTED,
            )
        self.db.commit()
        (row,) = self._rows()
        self.assertEqual(row.channel, "email")
        self.assertEqual(row.payload_json["to"], "ops@example.com")
        self.assertEqual(row.payload_json["subject"], "Extraction job 1 failed permanently")

    def test_log_channel_is_sent(self):
        self._enqueue()
        self.db.commit()

        sent = process_notification_outbox_once(self.db)
        self.db.commit()

        self.assertEqual(sent, 1)
        (row,) = self._rows()
        self.assertEqual(row.status, "SENT")
        self.assertEqual(row.attempt_count, 1)
        self.assertIsNotNone(row.sent_at)

    def test_failure_retries_with_backoff_then_fails(self):
        self._enqueue(channel="email", payload_json={"message": "x", "to": "ops@example.com"})
        self.db.commit()

        # no SMTP configured -> every attempt raises
        sent = process_notification_outbox_once(self.db, max_attempts=2)
        self.db.commit()
        (row,) = self._rows()
        self.assertEqual(sent, 0)
        self.assertEqual(row.status, "RETRY")
        self.assertEqual(row.last_error, "SMTP_NOT_CONFIGURED")
        first_retry_at = row.next_attempt_at

        process_notification_outbox_once(self.db, max_attempts=2, now=first_retry_at + timedelta(seconds=1))
        self.db.commit()
        self.db.refresh(row)
        self.assertEqual(row.status, "FAILED")
        self.assertEqual(row.attempt_count, 2)

    def test_not_yet_due_rows_are_skipped(self):
        self._enqueue()
        self.db.commit()
        (row,) = self._rows()
        row.next_attempt_at = row.next_attempt_at + timedelta(hours=1)
        self.db.commit()

        self.assertEqual(process_notification_outbox_once(self.db), 0)
        self.assertEqual(self._rows()[0].attempt_count, 0)

    def test_email_channel_uses_smtp(self):
        self._enqueue(channel="email", payload_json={"message": "done", "to": "ops@example.com", "subject": "Done"})
        self.db.commit()
        smtp = SmtpConfig(host="smtp.test", port=587, user=None, password=None, use_tls=False, from_email="a@b.c")

        with patch("docrecon.services.notification_outbox.SmtpConfig.from_settings", return_value=smtp), patch(
            "docrecon.services.notification_outbox.send_email_via_smtp"
        ) as send:
            sent = process_notification_outbox_once(self.db)

        self.assertEqual(sent, 1)
        send.assert_called_once_with(smtp=smtp, to_email="ops@example.com", subject="Done", body_text="done")


def test_compute_backoff_exponential_and_capped():
    assert _compute_backoff(1) == timedelta(minutes=1)
    assert _compute_backoff(2) == timedelta(minutes=2)
    assert _compute_backoff(3) == timedelta(minutes=4)
    assert _compute_backoff(20) == timedelta(hours=1)


def test_unknown_channel_rejected():
    with pytest.raises(RuntimeError, match="Unsupported channel"):
        outbox_channel_send(channel="sms", payload={"message": "x"})


def test_missing_message_rejected():
    with pytest.raises(RuntimeError, match="no message"):
        outbox_channel_send(channel="log", payload={})


if __name__ == "__main__":
    unittest.main()
