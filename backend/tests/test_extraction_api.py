import unittest
import uuid
from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from docrecon.api.v1.extraction import get_extraction_client
from docrecon.core.auth import CurrentUser, get_current_user
from docrecon.core.config import get_settings
from docrecon.core.dependencies import get_db, get_session_factory
from docrecon.main import app
from docrecon.models.extraction import Base
from docrecon.schemas.extraction import JobStatus
from docrecon.services import job_store
from docrecon.services.ai.document_extract.contracts import ExtractionResponse, StagedItemCandidate
from docrecon.services.retry_scheduler import get_retry_scheduler


class FixedClient:
    def __init__(self, response):
        self.response = response

    async def extract(self, request):
        return self.response


class ExtractionApiTests(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine)

        def override_get_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        self.current_user = CurrentUser(id=str(uuid.uuid4()), role="REVIEWER")
        self.extraction_client = FixedClient(
            ExtractionResponse(
                success=True,
                staged_items=[
                    StagedItemCandidate(field_path="supplier.name", extracted_value="ACME", confidence_score=0.95),
                    StagedItemCandidate(field_path="waste.january.quantity", extracted_value=120, confidence_score=0.6),
                ],
                model_version="fake:v1",
            )
        )

        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_current_user] = lambda: self.current_user
        app.dependency_overrides[get_session_factory] = lambda: self.SessionLocal
        app.dependency_overrides[get_extraction_client] = lambda: self.extraction_client
        get_settings.cache_clear()

        self.client = TestClient(app)

    def tearDown(self):
        self.client.close()
        app.dependency_overrides.clear()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()
        get_settings.cache_clear()

    def _create_job(self, **overrides):
        payload = {"document_id": "doc-100", "file_path": "uploads/report.pdf"}
        payload.update(overrides)
        resp = self.client.post("/api/v1/extraction/jobs", json=payload)
        self.assertEqual(resp.status_code, 201, resp.text)
        return resp.json()

    def test_create_job_runs_extraction_in_background(self):
        created = self._create_job()
        self.assertEqual(created["status"], JobStatus.QUEUED.value)
        self.assertEqual(created["processing_type"], "advanced_pdf_ocr")
        self.assertEqual(created["auto_insert_threshold"], 0.8)
        self.assertEqual(created["max_retries"], 3)

        job = self.client.get(f"/api/v1/extraction/jobs/{created['id']}").json()
        self.assertEqual(job["status"], JobStatus.NEEDS_REVIEW.value)
        self.assertEqual(job["ai_model_used"], "fake:v1")

        items = self.client.get(f"/api/v1/extraction/jobs/{created['id']}/staged-items").json()
        states = {item["field_path"]: item["review_state"] for item in items["items"]}
        self.assertEqual(states, {"supplier.name": "auto_approved", "waste.january.quantity": "pending"})

    def test_review_flow_completes_job_and_logs_batch(self):
        job_id = self._create_job()["id"]
        items = self.client.get(f"/api/v1/extraction/jobs/{job_id}/staged-items").json()["items"]
        pending = next(item for item in items if item["review_state"] == "pending")

        resp = self.client.post(
            f"/api/v1/extraction/jobs/{job_id}/review",
            json={"decisions": [{"staged_item_id": pending["id"], "decision": "edit", "edited_value": 125}]},
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        body = resp.json()
        self.assertTrue(body["advanced"])
        self.assertEqual(body["status"], JobStatus.COMPLETED.value)
        self.assertEqual(len(body["curated_item_ids"]), 1)
        self.assertEqual(body["approval_log"]["action"], "edited")
        self.assertEqual(body["approval_log"]["items_count"], 1)
        self.assertEqual(body["approval_log"]["created_by"], self.current_user.id)

        log = self.client.get(f"/api/v1/extraction/jobs/{job_id}/approval-log").json()
        self.assertEqual(len(log), 1)

        again = self.client.post(
            f"/api/v1/extraction/jobs/{job_id}/review",
            json={"decisions": [{"staged_item_id": pending["id"], "decision": "approve"}]},
        )
        self.assertEqual(again.status_code, 409)

    def test_review_validation(self):
        job_id = self._create_job()["id"]

        empty = self.client.post(f"/api/v1/extraction/jobs/{job_id}/review", json={"decisions": []})
        self.assertEqual(empty.status_code, 400)

        no_value = self.client.post(
            f"/api/v1/extraction/jobs/{job_id}/review",
            json={"decisions": [{"staged_item_id": str(uuid.uuid4()), "decision": "edit"}]},
        )
        self.assertEqual(no_value.status_code, 422)

        unknown = self.client.post(
            f"/api/v1/extraction/jobs/{job_id}/review",
            json={"decisions": [{"staged_item_id": str(uuid.uuid4()), "decision": "approve"}]},
        )
        self.assertEqual(unknown.status_code, 404)

    def test_unknown_job_is_404(self):
        self.assertEqual(self.client.get(f"/api/v1/extraction/jobs/{uuid.uuid4()}").status_code, 404)
        self.assertEqual(self.client.get("/api/v1/extraction/jobs/not-a-uuid").status_code, 422)

    def test_admin_endpoints_require_admin(self):
        self.assertEqual(self.client.get("/api/v1/admin/extraction/health").status_code, 403)
        self.assertEqual(self.client.post("/api/v1/admin/extraction/retry-sweep").status_code, 403)

    def test_health_snapshot_uses_camel_case(self):
        self.current_user = CurrentUser(id=str(uuid.uuid4()), role="ADMIN")
        self.extraction_client.response = ExtractionResponse(
            success=True,
            staged_items=[StagedItemCandidate(field_path="a", extracted_value=1, confidence_score=0.99)],
        )
        self._create_job()

        resp = self.client.get("/api/v1/admin/extraction/health")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["status"], "healthy")
        self.assertEqual(body["successRate"], 1.0)
        self.assertEqual(body["queueLength"], 0)
        self.assertIn("avgProcessingTime", body)
        self.assertIsNotNone(body["lastProcessed"])

    def test_manual_retry_sweep(self):
        self.current_user = CurrentUser(id=str(uuid.uuid4()), role="ADMIN")
        db = self.SessionLocal()
        try:
            job = job_store.create_job(
                db,
                document_id="doc-200",
                file_path="uploads/doc-200.exe",
                file_type="exe",
                auto_insert_threshold=0.8,
                max_retries=3,
            )
            job.status = JobStatus.ERROR.value
            job.retry_count = 1
            job.next_retry_at = job_store.as_db_dt(db, datetime.now(timezone.utc) - timedelta(minutes=1))
            db.commit()
            job_id = job.id
        finally:
            db.close()

        resp = self.client.post("/api/v1/admin/extraction/retry-sweep")
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json(), {"skipped": False, "due": 1, "succeeded": 0, "failed": 1, "exhausted": 0})

        # unsupported file type: permanent, retry budget untouched, never swept again
        db = self.SessionLocal()
        try:
            job = job_store.get_job(db, job_id)
            self.assertEqual(job.error_kind, "permanent")
            self.assertEqual(job.retry_count, 1)
        finally:
            db.close()
        self.assertEqual(self.client.post("/api/v1/admin/extraction/retry-sweep").json()["due"], 0)

    def test_manual_sweep_reports_skipped_while_running(self):
        self.current_user = CurrentUser(id=str(uuid.uuid4()), role="ADMIN")
        scheduler = get_retry_scheduler(self.SessionLocal)
        scheduler._guard.acquire()
        try:
            resp = self.client.post("/api/v1/admin/extraction/retry-sweep")
        finally:
            scheduler._guard.release()
        self.assertEqual(resp.json()["skipped"], True)

    def test_liveness(self):
        self.assertEqual(self.client.get("/health").json(), {"status": "ok"})


if __name__ == "__main__":
    unittest.main()
