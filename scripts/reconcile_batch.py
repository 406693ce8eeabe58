from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from app.core.analysis_store import AnalysisStore  # noqa: E402
from app.core.config import settings  # noqa: E402
from app.schemas.canonical import BatchSelector  # noqa: E402
from app.services.reconciliation_service import DEFAULT_RESET_STATUSES, ReconciliationService  # noqa: E402


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def main() -> None:
    parser = argparse.ArgumentParser(description="Reconcile pending analysis records into canonical fields.")
    parser.add_argument("--db", default=settings.analysis_db_path, help="Path to the analysis sqlite database")
    parser.add_argument("--job-id", default=None, help="Only touch records belonging to this job")
    parser.add_argument(
        "--limit",
        type=int,
        default=settings.reconcile_batch_default_limit,
        help="Maximum number of records to select",
    )
    parser.add_argument("--record-id", default=None, help="Reconcile a single record instead of a batch")
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Reset failed/no_data/error records (or --record-id) to pending before processing",
    )
    parser.add_argument(
        "--status",
        action="append",
        choices=["success", "failed", "no_data", "error"],
        help="Status to reset with --reset; repeatable (default: failed, no_data, error)",
    )
    parser.add_argument("--stats", action="store_true", help="Print status counts and exit")
    args = parser.parse_args()

    logging.basicConfig(level=settings.log_level, format="%(message)s")

    limit = max(1, min(args.limit, settings.reconcile_batch_max_limit))
    service = ReconciliationService(AnalysisStore(args.db))

    if args.stats:
        _print(service.status_counts(job_id=args.job_id))
        return

    if args.record_id:
        if args.reset:
            service.reset_for_reprocessing(args.record_id)
        result = service.reconcile_one(args.record_id)
        _print(result.model_dump(by_alias=True, exclude_none=True))
        return

    if args.reset:
        statuses = tuple(args.status) if args.status else DEFAULT_RESET_STATUSES
        count = service.reset_job_for_reprocessing(args.job_id, statuses, limit)
        print(f"Reset {count} record(s) to pending.")

    cancel_event = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: cancel_event.set())

    summary = service.reconcile_batch(BatchSelector(job_id=args.job_id, limit=limit), cancel_event=cancel_event)
    _print(summary.model_dump())


if __name__ == "__main__":
    main()
