import sys
import tempfile
import threading
import unittest
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from app.core.analysis_store import AnalysisStore  # noqa: E402
from app.schemas.canonical import BatchSelector  # noqa: E402
from app.services.reconciliation_service import ReconciliationService  # noqa: E402


class _ExplodingDocuments:
    def get_source_text(self, record):
        raise RuntimeError("document store unavailable")


class ReconciliationServiceTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.store = AnalysisStore(str(Path(self._tmp.name) / "analysis.db"))
        self.service = ReconciliationService(self.store)

    def tearDown(self):
        self.store.close()
        self._tmp.cleanup()

    def _create(self, record_id, envelope, **kwargs):
        return self.store.create_record(record_id=record_id, raw_envelope=envelope, **kwargs)

    def _legacy_columns(self, record_id):
        conn = self.store._get_connection()
        return conn.execute(
            "SELECT parsed_skills, parsed_work_history, parsed_red_flags, parsed_summary, overall_score, parsed_json "
            "FROM analysis_records WHERE id = ?",
            (record_id,),
        ).fetchone()

    def test_scenario_a_direct_payload(self):
        self._create("a", {"parsedJson": {"Skills": ["sql", "python"], "Summary": "Strong analyst"}})
        result = self.service.reconcile_one("a")

        self.assertEqual(result.status, "success")
        self.assertTrue(result.changed)
        self.assertEqual(
            result.canonical.to_wire(),
            {"skills": ["sql", "python"], "workHistory": [], "redFlags": [], "summary": "Strong analyst", "score": 50},
        )
        self.assertEqual(self.store.get_record("a").canonical, result.canonical)

    def test_scenario_b_fenced_text(self):
        self._create("b", {"rawText": '```json\n{"skills": ["go"], "matching_score": 0.9}\n```'})
        result = self.service.reconcile_one("b")

        self.assertEqual(result.status, "success")
        self.assertEqual(result.canonical.skills, ["go"])
        self.assertEqual(result.canonical.score, 90)
        self.assertEqual(result.detail, "text")

    def test_scenario_c_no_envelope(self):
        self._create("c", None)
        result = self.service.reconcile_one("c")

        self.assertEqual(result.status, "no_data")
        self.assertIsNone(result.canonical)
        stored = self.store.get_record("c")
        self.assertEqual(stored.parsing_status, "no_data")
        self.assertIsNone(stored.canonical)

    def test_scenario_d_nothing_locatable(self):
        self._create("d", {"unrelatedField": 1})
        result = self.service.reconcile_one("d")

        self.assertEqual(result.status, "failed")
        self.assertEqual(result.detail, "no_locatable_content")
        self.assertIsNone(self.store.get_record("d").canonical)

    def test_unrepairable_text_records_strategy(self):
        self._create("e", {"parsedJson": "{not even close"})
        result = self.service.reconcile_one("e")

        self.assertEqual(result.status, "failed")
        self.assertEqual(result.detail, "repair_failed:direct")

    def test_missing_record_reports_error(self):
        result = self.service.reconcile_one("ghost")
        self.assertEqual(result.status, "error")
        self.assertEqual(result.detail, "record_not_found")
        self.assertFalse(result.changed)

    def test_second_run_is_a_no_op(self):
        self._create("idem", {"parsedJson": {"skills": ["sql"], "score": 7}})
        first = self.service.reconcile_one("idem")
        before = self.store.get_record("idem")

        second = self.service.reconcile_one("idem")
        after = self.store.get_record("idem")

        self.assertTrue(first.changed)
        self.assertFalse(second.changed)
        self.assertEqual(second.status, "success")
        self.assertEqual(after.canonical.model_dump_json(), before.canonical.model_dump_json())
        self.assertEqual(after.updated_at, before.updated_at)

    def test_unexpected_exception_sets_error_and_keeps_prior_data(self):
        self._create(
            "boom",
            {"parsedJson": {"skills": ["sql"]}},
            source_text="Jane Doe",
            expected_markers={"name": "Jane Doe"},
        )
        service = ReconciliationService(self.store, documents=_ExplodingDocuments())
        result = service.reconcile_one("boom")

        self.assertEqual(result.status, "error")
        self.assertIn("RuntimeError", result.detail)
        stored = self.store.get_record("boom")
        self.assertEqual(stored.parsing_status, "error")
        self.assertIsNone(stored.canonical)

    def test_failed_retry_keeps_prior_successful_result(self):
        self._create(
            "keep",
            {"parsedJson": {"skills": ["sql"], "summary": "Jane Doe", "score": 0.8}},
            source_text="Jane Doe",
            expected_markers={"name": "Jane Doe"},
        )
        first = self.service.reconcile_one("keep")
        self.assertEqual(first.status, "success")
        legacy_before = self._legacy_columns("keep")

        self.service.reset_for_reprocessing("keep")
        retry = ReconciliationService(self.store, documents=_ExplodingDocuments()).reconcile_one("keep")

        self.assertEqual(retry.status, "error")
        self.assertEqual(retry.canonical, first.canonical)
        stored = self.store.get_record("keep")
        self.assertEqual(stored.parsing_status, "error")
        self.assertEqual(stored.canonical, first.canonical)
        self.assertEqual(self._legacy_columns("keep"), legacy_before)
        self.assertEqual(legacy_before[0], '["sql"]')
        self.assertEqual(legacy_before[4], 80)

    def test_reset_then_reprocess(self):
        self._create("r", {"parsedJson": {"skills": ["sql"]}})
        self.service.reconcile_one("r")
        self.service.reset_for_reprocessing("r")
        self.assertEqual(self.store.get_record("r").parsing_status, "pending")

        result = self.service.reconcile_one("r")
        self.assertEqual(result.status, "success")
        self.assertTrue(result.changed)

    def test_reset_unknown_record_does_not_raise(self):
        self.service.reset_for_reprocessing("ghost")

    def test_verification_applies_fallbacks_and_warning(self):
        self._create(
            "v",
            {"parsedJson": {"workHistory": [{"title": "Engineer", "company": "Initech"}], "summary": "Jane Doe"}},
            source_text="Jane Doe. Senior Analyst at ACME Corp since 2020.",
            expected_markers={"recent_employer": "acme corp"},
        )
        result = self.service.reconcile_one("v")

        self.assertEqual(result.status, "success")
        self.assertEqual(result.canonical.work_history[0].company, "ACME Corp")
        self.assertEqual(result.verification.confidence, 0)
        self.assertEqual(len(result.warnings), 1)
        self.assertEqual(self.store.get_record("v").warnings, result.warnings)

    def test_call_markers_override_stored_markers(self):
        self._create(
            "m",
            {"parsedJson": {"summary": "Jane Doe"}},
            source_text="Jane Doe, ACME Corp",
            expected_markers={"recent_employer": "ACME Corp"},
        )
        result = self.service.reconcile_one("m", markers={"name": "Jane Doe"})
        self.assertEqual(result.verification.confidence, 100)
        self.assertEqual(result.warnings, [])

    def test_batch_isolates_failures(self):
        self._create("1-good", {"parsedJson": {"skills": ["sql"]}}, job_id="job")
        self._create("2-fail", {"unrelatedField": 1}, job_id="job")
        self._create("3-empty", None, job_id="job")
        self._create(
            "4-error",
            {"parsedJson": {"skills": ["sql"]}},
            job_id="job",
            source_text="Jane Doe",
            expected_markers={"name": "Jane Doe"},
        )
        self._create("5-other-job", {"parsedJson": {"skills": ["go"]}}, job_id="other")

        service = ReconciliationService(self.store, documents=_ExplodingDocuments())
        summary = service.reconcile_batch(BatchSelector(job_id="job", limit=10))

        self.assertEqual(summary.total, 4)
        self.assertEqual(summary.processed, 1)
        self.assertEqual(summary.failed, 2)
        self.assertEqual(summary.skipped, 1)
        self.assertEqual(summary.processed_ids, ["1-good"])
        self.assertEqual(sorted(summary.failed_ids), ["2-fail", "4-error"])
        self.assertEqual(self.store.get_record("5-other-job").parsing_status, "pending")

    def test_batch_only_selects_pending(self):
        self._create("done", {"parsedJson": {"skills": ["sql"]}})
        self.service.reconcile_one("done")
        summary = self.service.reconcile_batch(BatchSelector(limit=10))
        self.assertEqual(summary.total, 0)

    def test_cancelled_batch_stops_submitting(self):
        self._create("x1", {"parsedJson": {"skills": ["sql"]}})
        self._create("x2", {"parsedJson": {"skills": ["go"]}})
        cancel = threading.Event()
        cancel.set()

        summary = self.service.reconcile_batch(BatchSelector(limit=10), cancel_event=cancel)
        self.assertEqual(summary.total, 2)
        self.assertEqual(summary.processed, 0)
        self.assertEqual(self.store.status_counts()["pending"], 2)

    def test_reset_job_for_reprocessing(self):
        self._create("j1", {"unrelatedField": 1}, job_id="job")
        self._create("j2", None, job_id="job")
        self._create("j3", {"parsedJson": {"skills": ["sql"]}}, job_id="job")
        self.service.reconcile_batch(BatchSelector(job_id="job", limit=10))

        count = self.service.reset_job_for_reprocessing("job", ("failed",), 10)
        self.assertEqual(count, 1)
        counts = self.service.status_counts("job")
        self.assertEqual(counts["pending"], 1)
        self.assertEqual(counts["no_data"], 1)
        self.assertEqual(counts["success"], 1)


if __name__ == "__main__":
    unittest.main()
