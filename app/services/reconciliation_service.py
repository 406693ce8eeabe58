from __future__ import annotations

import logging
import threading
import time
from functools import lru_cache
from typing import Any, Iterable

from app.core.analysis_store import AnalysisStore, RecordNotFound, get_analysis_store
from app.core.source_documents import SourceDocumentProvider, get_default_source_documents
from app.normalize.canonical_fields import canonicalize
from app.normalize.consistency import CONFIDENCE_THRESHOLD, apply_fallbacks, verify
from app.normalize.locator import trace_locate
from app.normalize.repair import repair
from app.normalize.utils import is_blank_envelope
from app.schemas.canonical import (
    ERROR,
    FAILED,
    NO_DATA,
    PENDING,
    SUCCESS,
    AnalysisRecord,
    BatchSelector,
    BatchSummary,
    CanonicalRecord,
    ParsingStatus,
    ReconcileResult,
    VerificationReport,
)

logger = logging.getLogger(__name__)

DEFAULT_RESET_STATUSES: tuple[ParsingStatus, ...] = (FAILED, NO_DATA, ERROR)


class ReconciliationError(Exception):
    status: ParsingStatus = ERROR

    def __init__(self, detail: str, strategy: str | None = None):
        super().__init__(detail)
        self.detail = detail
        self.strategy = strategy


class NoData(ReconciliationError):
    status: ParsingStatus = NO_DATA


class ExtractionFailed(ReconciliationError):
    status: ParsingStatus = FAILED


class ReconciliationService:
    """Moves analysis records from ``pending`` to a terminal status.

    Public entry points never raise; every outcome is reported as a status.
    """

    def __init__(
        self,
        store: AnalysisStore,
        documents: SourceDocumentProvider | None = None,
        threshold: int = CONFIDENCE_THRESHOLD,
    ) -> None:
        self.store = store
        self.documents = documents or get_default_source_documents()
        self.threshold = threshold

    def _extract(self, envelope: Any) -> tuple[str, dict[str, Any]]:
        if is_blank_envelope(envelope):
            raise NoData("no_envelope")

        strategy, located = trace_locate(envelope)
        if located is None:
            detail = "no_locatable_content" if strategy is None else f"no_locatable_content:{strategy}"
            raise ExtractionFailed(detail, strategy)

        if located.content is not None:
            return located.strategy, located.content

        repaired = repair(located.text or "")
        if repaired is None:
            raise ExtractionFailed(f"repair_failed:{located.strategy}", located.strategy)
        return located.strategy, repaired

    def _verify(
        self,
        record: AnalysisRecord,
        canonical: CanonicalRecord,
        markers: dict[str, str],
    ) -> tuple[CanonicalRecord, VerificationReport | None]:
        if not markers:
            return canonical, None
        source_text = self.documents.get_source_text(record)
        if source_text is None:
            logger.debug("consistency_check_skipped record_id=%s reason=no_source_text", record.id)
            return canonical, None
        report = verify(canonical, source_text, markers, threshold=self.threshold)
        return apply_fallbacks(canonical, report, source_text, markers), report

    def _log_run(
        self,
        record_id: str,
        status: str,
        started: float,
        *,
        strategy: str | None = None,
        detail: str | None = None,
        confidence: int | None = None,
    ) -> None:
        try:
            self.store.log_reconciliation_run(
                record_id=record_id,
                status=status,
                strategy=strategy,
                detail=detail,
                confidence=confidence,
                latency_ms=int((time.perf_counter() - started) * 1000),
            )
        except Exception:
            logger.exception("reconcile_run_log_failed record_id=%s", record_id)

    def reconcile_one(self, record_id: str, markers: dict[str, str] | None = None) -> ReconcileResult:
        started = time.perf_counter()
        try:
            record = self.store.get_record(record_id)
        except RecordNotFound:
            logger.info("reconcile_record_not_found record_id=%s", record_id)
            return ReconcileResult(record_id=record_id, status=ERROR, detail="record_not_found")
        except Exception:
            logger.exception("reconcile_load_failed record_id=%s", record_id)
            return ReconcileResult(record_id=record_id, status=ERROR, detail="load_failed")

        if record.parsing_status != PENDING:
            logger.debug("reconcile_skipped_terminal record_id=%s status=%s", record_id, record.parsing_status)
            return ReconcileResult(
                record_id=record_id,
                status=record.parsing_status,
                canonical=record.canonical,
                detail=record.parsing_detail,
                warnings=list(record.warnings),
                changed=False,
            )

        strategy: str | None = None
        try:
            strategy, payload = self._extract(record.raw_envelope)
            canonical = canonicalize(payload)
            effective_markers = markers if markers is not None else record.expected_markers
            canonical, report = self._verify(record, canonical, effective_markers)
            warnings = [report.warning] if report is not None and report.warning else []

            changed = self.store.save_result(
                record_id,
                canonical=canonical,
                status=SUCCESS,
                detail=strategy,
                warnings=warnings,
            )
            if not changed:
                logger.info("reconcile_lost_race record_id=%s", record_id)
                return self._current(record_id)

            logger.info(
                "reconcile_success record_id=%s strategy=%s score=%s confidence=%s",
                record_id,
                strategy,
                canonical.score,
                report.confidence if report is not None else None,
            )
            self._log_run(
                record_id,
                SUCCESS,
                started,
                strategy=strategy,
                confidence=report.confidence if report is not None else None,
            )
            return ReconcileResult(
                record_id=record_id,
                status=SUCCESS,
                canonical=canonical,
                detail=strategy,
                warnings=warnings,
                changed=True,
                verification=report,
            )
        except ReconciliationError as exc:
            logger.info("reconcile_%s record_id=%s detail=%s", exc.status, record_id, exc.detail)
            return self._settle(record, exc.status, exc.detail, started, strategy=exc.strategy)
        except Exception as exc:
            logger.exception("reconcile_error record_id=%s strategy=%s", record_id, strategy)
            return self._settle(record, ERROR, f"{type(exc).__name__}: {exc}", started, strategy=strategy)

    def _settle(
        self,
        record: AnalysisRecord,
        status: ParsingStatus,
        detail: str,
        started: float,
        *,
        strategy: str | None = None,
    ) -> ReconcileResult:
        """Record a non-success outcome without touching canonical fields."""
        try:
            changed = self.store.mark_status(record.id, status, detail)
        except Exception:
            logger.exception("reconcile_mark_status_failed record_id=%s status=%s", record.id, status)
            return ReconcileResult(record_id=record.id, status=ERROR, canonical=record.canonical, detail=detail)

        if not changed:
            return self._current(record.id)
        self._log_run(record.id, status, started, strategy=strategy, detail=detail)
        return ReconcileResult(
            record_id=record.id,
            status=status,
            canonical=record.canonical,
            detail=detail,
            changed=True,
        )

    def _current(self, record_id: str) -> ReconcileResult:
        try:
            record = self.store.get_record(record_id)
        except Exception:
            logger.exception("reconcile_reload_failed record_id=%s", record_id)
            return ReconcileResult(record_id=record_id, status=ERROR, detail="reload_failed")
        return ReconcileResult(
            record_id=record_id,
            status=record.parsing_status,
            canonical=record.canonical,
            detail=record.parsing_detail,
            warnings=list(record.warnings),
            changed=False,
        )

    def reconcile_batch(
        self,
        selector: BatchSelector,
        cancel_event: threading.Event | None = None,
    ) -> BatchSummary:
        summary = BatchSummary()
        try:
            records = self.store.fetch_pending(job_id=selector.job_id, limit=selector.limit)
        except Exception:
            logger.exception("reconcile_batch_fetch_failed job_id=%s", selector.job_id)
            return summary

        summary.total = len(records)
        for record in records:
            if cancel_event is not None and cancel_event.is_set():
                logger.info(
                    "reconcile_batch_cancelled job_id=%s remaining=%s",
                    selector.job_id,
                    summary.total - summary.processed - summary.skipped - summary.failed,
                )
                break

            result = self.reconcile_one(record.id)
            if result.changed and result.status == SUCCESS:
                summary.processed += 1
                summary.processed_ids.append(record.id)
            elif result.status in (FAILED, ERROR):
                summary.failed += 1
                summary.failed_ids.append(record.id)
            else:
                summary.skipped += 1

        logger.info(
            "reconcile_batch_done job_id=%s total=%s processed=%s skipped=%s failed=%s",
            selector.job_id,
            summary.total,
            summary.processed,
            summary.skipped,
            summary.failed,
        )
        return summary

    def reset_for_reprocessing(self, record_id: str) -> None:
        """Put a record back to ``pending``. Unknown ids are logged and ignored."""
        try:
            self.store.reset_status(record_id)
        except RecordNotFound:
            logger.info("reconcile_reset_not_found record_id=%s", record_id)
            return
        except Exception:
            logger.exception("reconcile_reset_failed record_id=%s", record_id)
            return
        logger.info("reconcile_reset record_id=%s", record_id)

    def reset_job_for_reprocessing(
        self,
        job_id: str | None,
        statuses: Iterable[ParsingStatus] = DEFAULT_RESET_STATUSES,
        limit: int = 50,
    ) -> int:
        try:
            count = self.store.reset_statuses(statuses=tuple(statuses), job_id=job_id, limit=limit)
        except Exception:
            logger.exception("reconcile_batch_reset_failed job_id=%s", job_id)
            return 0
        logger.info("reconcile_batch_reset job_id=%s count=%s", job_id, count)
        return count

    def status_counts(self, job_id: str | None = None) -> dict[str, int]:
        return self.store.status_counts(job_id=job_id)


@lru_cache(maxsize=1)
def get_reconciliation_service() -> ReconciliationService:
    return ReconciliationService(get_analysis_store())
