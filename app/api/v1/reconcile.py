from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from app.core.analysis_store import RecordNotFound
from app.core.config import settings
from app.core.rate_limit import rate_limit
from app.core.security import check_api_key
from app.schemas.canonical import AnalysisRecord, BatchSelector, BatchSummary, ReconcileResult
from app.schemas.reconcile import (
    BatchReconcileRequest,
    BatchResetRequest,
    BatchResetResponse,
    ReconcileRecordRequest,
    StatusCountsResponse,
)
from app.services.reconciliation_service import ReconciliationService, get_reconciliation_service

router = APIRouter()


def require_api_key(x_api_key: str | None = Header(default=None, alias="X-API-Key")) -> None:
    check_api_key(x_api_key)


def _batch_limit(limit: int | None) -> int:
    if limit is None:
        return settings.reconcile_batch_default_limit
    return min(limit, settings.reconcile_batch_max_limit)


@router.get(
    "/reconcile/records/{record_id}",
    response_model=AnalysisRecord,
    dependencies=[Depends(require_api_key)],
)
def get_record(
    record_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    try:
        return service.store.get_record(record_id)
    except RecordNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.post(
    "/reconcile/records/{record_id}",
    response_model=ReconcileResult,
    dependencies=[Depends(require_api_key)],
)
def reconcile_record(
    record_id: str,
    payload: ReconcileRecordRequest | None = None,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    markers = payload.markers if payload is not None else None
    return service.reconcile_one(record_id, markers=markers)


@router.post(
    "/reconcile/records/{record_id}/reset",
    response_model=ReconcileResult,
    dependencies=[Depends(require_api_key)],
)
def reset_record(
    record_id: str,
    process: bool = Query(default=False),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    try:
        service.store.get_record(record_id)
    except RecordNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    service.reset_for_reprocessing(record_id)
    if process:
        return service.reconcile_one(record_id)
    record = service.store.get_record(record_id)
    return ReconcileResult(
        record_id=record_id,
        status=record.parsing_status,
        canonical=record.canonical,
        warnings=list(record.warnings),
        changed=False,
    )


@router.post(
    "/reconcile/batch",
    response_model=BatchSummary,
    dependencies=[Depends(require_api_key)],
)
@rate_limit(settings.reconcile_batch_rate_limit)
def reconcile_batch(
    request: Request,
    payload: BatchReconcileRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    _ = request
    selector = BatchSelector(job_id=payload.job_id, limit=_batch_limit(payload.limit))
    return service.reconcile_batch(selector)


@router.post(
    "/reconcile/batch/reset",
    response_model=BatchResetResponse,
    dependencies=[Depends(require_api_key)],
)
@rate_limit(settings.reconcile_batch_rate_limit)
def reset_batch(
    request: Request,
    payload: BatchResetRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    _ = request
    limit = _batch_limit(payload.limit)
    count = service.reset_job_for_reprocessing(payload.job_id, payload.statuses, limit)
    batch = None
    if payload.process and count:
        batch = service.reconcile_batch(BatchSelector(job_id=payload.job_id, limit=limit))
    return BatchResetResponse(reset=count, batch=batch)


@router.get(
    "/reconcile/stats",
    response_model=StatusCountsResponse,
    dependencies=[Depends(require_api_key)],
)
def reconcile_stats(
    job_id: str | None = Query(default=None),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    counts = service.status_counts(job_id=job_id)
    return StatusCountsResponse(job_id=job_id, counts=counts, total=sum(counts.values()))
