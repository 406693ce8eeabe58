import dataclasses
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from fastapi.testclient import TestClient  # noqa: E402

from app.core import security  # noqa: E402
from app.core.analysis_store import AnalysisStore  # noqa: E402
from app.main import app  # noqa: E402
from app.services.reconciliation_service import ReconciliationService, get_reconciliation_service  # noqa: E402


class ReconcileApiTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.client = TestClient(app)

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.store = AnalysisStore(str(Path(self._tmp.name) / "analysis.db"))
        self.service = ReconciliationService(self.store)
        app.dependency_overrides[get_reconciliation_service] = lambda: self.service
        self._settings_patch = mock.patch.object(
            security, "settings", dataclasses.replace(security.settings, api_key="test-key")
        )
        self._settings_patch.start()
        self.headers = {"X-API-Key": "test-key"}

    def tearDown(self):
        self._settings_patch.stop()
        app.dependency_overrides.clear()
        self.store.close()
        self._tmp.cleanup()

    def test_health(self):
        response = self.client.get("/v1/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "healthy"})

    def test_api_key_is_required(self):
        response = self.client.get("/v1/reconcile/stats")
        self.assertEqual(response.status_code, 401)
        response = self.client.get("/v1/reconcile/stats", headers={"X-API-Key": "wrong"})
        self.assertEqual(response.status_code, 401)

    def test_reconcile_single_record(self):
        self.store.create_record(record_id="a", raw_envelope={"parsedJson": {"Skills": ["sql"], "Summary": "Analyst"}})

        response = self.client.post("/v1/reconcile/records/a", headers=self.headers)
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "success")
        self.assertTrue(body["changed"])
        self.assertEqual(body["canonical"]["skills"], ["sql"])
        self.assertEqual(body["canonical"]["workHistory"], [])
        self.assertEqual(body["canonical"]["score"], 50)

        record = self.client.get("/v1/reconcile/records/a", headers=self.headers)
        self.assertEqual(record.status_code, 200)
        self.assertEqual(record.json()["parsing_status"], "success")

    def test_reconcile_with_markers(self):
        self.store.create_record(
            record_id="m",
            raw_envelope={"parsedJson": {"summary": "Analyst"}},
            source_text="Jane Doe works at ACME Corp",
        )
        response = self.client.post(
            "/v1/reconcile/records/m",
            headers=self.headers,
            json={"markers": {"recent_employer": "ACME Corp"}},
        )
        body = response.json()
        self.assertEqual(body["status"], "success")
        self.assertEqual(body["canonical"]["workHistory"][0]["company"], "ACME Corp")
        self.assertEqual(len(body["warnings"]), 1)

    def test_unknown_record(self):
        response = self.client.get("/v1/reconcile/records/ghost", headers=self.headers)
        self.assertEqual(response.status_code, 404)

        response = self.client.post("/v1/reconcile/records/ghost", headers=self.headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "error")
        self.assertEqual(response.json()["detail"], "record_not_found")

        response = self.client.post("/v1/reconcile/records/ghost/reset", headers=self.headers)
        self.assertEqual(response.status_code, 404)

    def test_reset_and_process(self):
        self.store.create_record(record_id="r", raw_envelope={"unrelatedField": 1})
        self.client.post("/v1/reconcile/records/r", headers=self.headers)

        response = self.client.post("/v1/reconcile/records/r/reset", headers=self.headers)
        self.assertEqual(response.json()["status"], "pending")

        response = self.client.post("/v1/reconcile/records/r/reset?process=true", headers=self.headers)
        self.assertEqual(response.json()["status"], "failed")
        self.assertTrue(response.json()["changed"])

    def test_batch_and_stats(self):
        self.store.create_record(record_id="1", job_id="job", raw_envelope={"parsedJson": {"skills": ["sql"]}})
        self.store.create_record(record_id="2", job_id="job", raw_envelope={"unrelatedField": 1})
        self.store.create_record(record_id="3", job_id="job", raw_envelope=None)

        response = self.client.post("/v1/reconcile/batch", headers=self.headers, json={"job_id": "job"})
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(
            (body["total"], body["processed"], body["failed"], body["skipped"]),
            (3, 1, 1, 1),
        )

        stats = self.client.get("/v1/reconcile/stats", params={"job_id": "job"}, headers=self.headers).json()
        self.assertEqual(stats["total"], 3)
        self.assertEqual(stats["counts"]["success"], 1)
        self.assertEqual(stats["counts"]["failed"], 1)
        self.assertEqual(stats["counts"]["no_data"], 1)

    def test_batch_reset_with_processing(self):
        self.store.create_record(record_id="f", job_id="job", raw_envelope={"unrelatedField": 1})
        self.client.post("/v1/reconcile/batch", headers=self.headers, json={"job_id": "job"})

        response = self.client.post(
            "/v1/reconcile/batch/reset",
            headers=self.headers,
            json={"job_id": "job", "statuses": ["failed"], "process": True},
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["reset"], 1)
        self.assertEqual(body["batch"]["total"], 1)
        self.assertEqual(body["batch"]["failed"], 1)

    def test_batch_limit_must_be_positive(self):
        response = self.client.post("/v1/reconcile/batch", headers=self.headers, json={"limit": 0})
        self.assertEqual(response.status_code, 422)


if __name__ == "__main__":
    unittest.main()
