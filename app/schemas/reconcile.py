from __future__ import annotations

from pydantic import BaseModel, Field

from app.schemas.canonical import BatchSummary, ParsingStatus


class ReconcileRecordRequest(BaseModel):
    markers: dict[str, str] | None = None


class BatchReconcileRequest(BaseModel):
    job_id: str | None = Field(default=None, max_length=200)
    limit: int | None = Field(default=None, ge=1)


class BatchResetRequest(BaseModel):
    job_id: str | None = Field(default=None, max_length=200)
    statuses: list[ParsingStatus] = Field(default_factory=lambda: ["failed", "no_data", "error"])
    limit: int | None = Field(default=None, ge=1)
    process: bool = False


class BatchResetResponse(BaseModel):
    reset: int
    batch: BatchSummary | None = None


class StatusCountsResponse(BaseModel):
    job_id: str | None = None
    counts: dict[str, int]
    total: int
