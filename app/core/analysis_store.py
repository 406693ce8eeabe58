from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import uuid
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Iterable

from pydantic import ValidationError

from app.core.config import settings
from app.schemas.canonical import (
    PENDING,
    TERMINAL_STATUSES,
    AnalysisRecord,
    CanonicalRecord,
    ParsingStatus,
)

logger = logging.getLogger(__name__)


class RecordNotFound(LookupError):
    def __init__(self, record_id: str):
        super().__init__(f"Analysis record not found: '{record_id}'")
        self.record_id = record_id


_RECORD_COLUMNS = (
    "id",
    "job_id",
    "resume_id",
    "raw_envelope_json",
    "source_text",
    "expected_markers_json",
    "parsing_status",
    "parsing_detail",
    "parsed_json",
    "warnings_json",
    "created_at",
    "updated_at",
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _loads(raw: str | None, default: Any) -> Any:
    if raw is None or raw == "":
        return default
    return json.loads(raw)


class AnalysisStore:
    """sqlite-backed store of analysis records and their reconciliation state.

    Every write that moves a record out of ``pending`` is conditional on the
    row still being ``pending``; a concurrent run that already settled the
    record makes the write a no-op and the method returns False.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        with self._lock:
            if self._conn is not None:
                return self._conn

            directory = os.path.dirname(self.db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

            conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                timeout=5,
                isolation_level=None,
            )
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA busy_timeout=5000;")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS analysis_records (
                    id TEXT PRIMARY KEY,
                    job_id TEXT,
                    resume_id TEXT,
                    raw_envelope_json TEXT,
                    source_text TEXT,
                    expected_markers_json TEXT,
                    parsing_status TEXT NOT NULL DEFAULT 'pending',
                    parsing_detail TEXT,
                    parsed_json TEXT,
                    parsed_skills TEXT,
                    parsed_work_history TEXT,
                    parsed_red_flags TEXT,
                    parsed_summary TEXT,
                    overall_score INTEGER,
                    warnings_json TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_analysis_records_status
                ON analysis_records (parsing_status, job_id, created_at);
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS reconciliation_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    strategy TEXT,
                    detail TEXT,
                    confidence INTEGER,
                    latency_ms INTEGER
                );
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_reconciliation_runs_created_at
                ON reconciliation_runs (created_at);
                """
            )
            self._conn = conn
            return conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # ── Records ──────────────────────────────────────────────────────────

    def create_record(
        self,
        *,
        raw_envelope: Any,
        job_id: str | None = None,
        resume_id: str | None = None,
        source_text: str | None = None,
        expected_markers: dict[str, str] | None = None,
        record_id: str | None = None,
    ) -> AnalysisRecord:
        conn = self._get_connection()
        record_id = record_id or uuid.uuid4().hex
        now = _utc_now()
        envelope_json = None if raw_envelope is None else _dumps(raw_envelope)
        with self._lock:
            conn.execute(
                """
                INSERT INTO analysis_records (
                    id, job_id, resume_id, raw_envelope_json, source_text,
                    expected_markers_json, parsing_status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record_id,
                    job_id,
                    resume_id,
                    envelope_json,
                    source_text,
                    _dumps(expected_markers or {}),
                    PENDING,
                    now,
                    now,
                ),
            )
            conn.commit()
        return self.get_record(record_id)

    def _row_to_record(self, row: tuple) -> AnalysisRecord:
        data = dict(zip(_RECORD_COLUMNS, row))
        parsed = _loads(data["parsed_json"], None)
        return AnalysisRecord(
            id=data["id"],
            job_id=data["job_id"],
            resume_id=data["resume_id"],
            raw_envelope=_loads(data["raw_envelope_json"], None),
            source_text=data["source_text"],
            expected_markers=_loads(data["expected_markers_json"], {}),
            parsing_status=data["parsing_status"],
            parsing_detail=data["parsing_detail"],
            canonical=CanonicalRecord.model_validate(parsed) if parsed is not None else None,
            warnings=_loads(data["warnings_json"], []),
            created_at=data["created_at"],
            updated_at=data["updated_at"],
        )

    def get_record(self, record_id: str) -> AnalysisRecord:
        conn = self._get_connection()
        with self._lock:
            cur = conn.execute(
                f"SELECT {', '.join(_RECORD_COLUMNS)} FROM analysis_records WHERE id = ?",
                (record_id,),
            )
            row = cur.fetchone()
        if not row:
            raise RecordNotFound(record_id)
        return self._row_to_record(row)

    def fetch_pending(self, *, job_id: str | None = None, limit: int = 50) -> list[AnalysisRecord]:
        conn = self._get_connection()
        query = f"SELECT {', '.join(_RECORD_COLUMNS)} FROM analysis_records WHERE parsing_status = ?"
        params: list[Any] = [PENDING]
        if job_id is not None:
            query += " AND job_id = ?"
            params.append(job_id)
        query += " ORDER BY created_at ASC, id ASC LIMIT ?"
        params.append(max(1, int(limit)))
        with self._lock:
            rows = conn.execute(query, params).fetchall()

        records: list[AnalysisRecord] = []
        for row in rows:
            try:
                records.append(self._row_to_record(row))
            except (ValueError, ValidationError) as exc:
                record_id = row[0]
                logger.warning("analysis_record_undecodable record_id=%s: %s", record_id, exc)
                self.mark_status(record_id, "error", "undecodable_record")
        return records

    def save_result(
        self,
        record_id: str,
        *,
        canonical: CanonicalRecord,
        status: ParsingStatus,
        detail: str | None = None,
        warnings: list[str] | None = None,
    ) -> bool:
        """Write canonical fields and status in one statement, only from pending."""
        conn = self._get_connection()
        wire = canonical.to_wire()
        with self._lock:
            cur = conn.execute(
                """
                UPDATE analysis_records
                SET parsed_json = ?,
                    parsed_skills = ?,
                    parsed_work_history = ?,
                    parsed_red_flags = ?,
                    parsed_summary = ?,
                    overall_score = ?,
                    parsing_status = ?,
                    parsing_detail = ?,
                    warnings_json = ?,
                    updated_at = ?
                WHERE id = ? AND parsing_status = ?
                """,
                (
                    _dumps(wire),
                    _dumps(wire["skills"]),
                    _dumps(wire["workHistory"]),
                    _dumps(wire["redFlags"]),
                    wire["summary"],
                    wire["score"],
                    status,
                    detail,
                    _dumps(warnings or []),
                    _utc_now(),
                    record_id,
                    PENDING,
                ),
            )
            conn.commit()
        return int(cur.rowcount or 0) == 1

    def mark_status(self, record_id: str, status: ParsingStatus, detail: str | None = None) -> bool:
        """Settle a pending record without touching its canonical fields."""
        conn = self._get_connection()
        with self._lock:
            cur = conn.execute(
                """
                UPDATE analysis_records
                SET parsing_status = ?, parsing_detail = ?, updated_at = ?
                WHERE id = ? AND parsing_status = ?
                """,
                (status, detail, _utc_now(), record_id, PENDING),
            )
            conn.commit()
        return int(cur.rowcount or 0) == 1

    def reset_status(self, record_id: str) -> None:
        conn = self._get_connection()
        with self._lock:
            cur = conn.execute(
                """
                UPDATE analysis_records
                SET parsing_status = ?, parsing_detail = NULL, updated_at = ?
                WHERE id = ?
                """,
                (PENDING, _utc_now(), record_id),
            )
            conn.commit()
        if int(cur.rowcount or 0) == 0:
            raise RecordNotFound(record_id)

    def reset_statuses(
        self,
        *,
        statuses: Iterable[ParsingStatus],
        job_id: str | None = None,
        limit: int = 50,
    ) -> int:
        conn = self._get_connection()
        wanted = [status for status in statuses if status in TERMINAL_STATUSES]
        if not wanted:
            return 0
        placeholders = ", ".join("?" for _ in wanted)
        where = f"parsing_status IN ({placeholders})"
        params: list[Any] = list(wanted)
        if job_id is not None:
            where += " AND job_id = ?"
            params.append(job_id)
        with self._lock:
            cur = conn.execute(
                f"""
                UPDATE analysis_records
                SET parsing_status = ?, parsing_detail = NULL, updated_at = ?
                WHERE id IN (
                    SELECT id FROM analysis_records
                    WHERE {where}
                    ORDER BY created_at ASC, id ASC
                    LIMIT ?
                )
                """,
                (PENDING, _utc_now(), *params, max(1, int(limit))),
            )
            conn.commit()
        return int(cur.rowcount or 0)

    def status_counts(self, *, job_id: str | None = None) -> dict[str, int]:
        conn = self._get_connection()
        query = "SELECT parsing_status, COUNT(*) FROM analysis_records"
        params: tuple[Any, ...] = ()
        if job_id is not None:
            query += " WHERE job_id = ?"
            params = (job_id,)
        query += " GROUP BY parsing_status"
        with self._lock:
            rows = conn.execute(query, params).fetchall()
        counts = {"pending": 0, "success": 0, "failed": 0, "no_data": 0, "error": 0}
        for status, count in rows:
            counts[str(status)] = int(count)
        return counts

    # ── Run log ──────────────────────────────────────────────────────────

    def log_reconciliation_run(
        self,
        *,
        record_id: str,
        status: str,
        strategy: str | None = None,
        detail: str | None = None,
        confidence: int | None = None,
        latency_ms: int | None = None,
    ) -> None:
        if not settings.run_log_enabled:
            return
        conn = self._get_connection()
        with self._lock:
            conn.execute(
                """
                INSERT INTO reconciliation_runs (
                    created_at, record_id, status, strategy, detail, confidence, latency_ms
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (_utc_now(), record_id, status, strategy, detail, confidence, latency_ms),
            )
            conn.commit()

    def latest_runs(self, *, record_id: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        conn = self._get_connection()
        query = (
            "SELECT created_at, record_id, status, strategy, detail, confidence, latency_ms "
            "FROM reconciliation_runs"
        )
        params: list[Any] = []
        if record_id is not None:
            query += " WHERE record_id = ?"
            params.append(record_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            cur = conn.execute(query, params)
            rows = cur.fetchall()
            columns = [col[0] for col in cur.description]
        return [dict(zip(columns, row)) for row in rows]

    def purge_old_runs(self, retention_days: int | None = None) -> int:
        days = max(1, int(retention_days or settings.run_log_retention_days))
        conn = self._get_connection()
        with self._lock:
            cur = conn.execute(
                "DELETE FROM reconciliation_runs WHERE created_at < ?",
                (_cutoff_iso(days),),
            )
            conn.commit()
        return int(cur.rowcount or 0)


def _cutoff_iso(days: int) -> str:
    return (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()


@lru_cache(maxsize=1)
def get_analysis_store() -> AnalysisStore:
    return AnalysisStore(settings.analysis_db_path)
