from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

ParsingStatus = Literal["pending", "success", "failed", "no_data", "error"]

PENDING: ParsingStatus = "pending"
SUCCESS: ParsingStatus = "success"
FAILED: ParsingStatus = "failed"
NO_DATA: ParsingStatus = "no_data"
ERROR: ParsingStatus = "error"

TERMINAL_STATUSES: tuple[ParsingStatus, ...] = (SUCCESS, FAILED, NO_DATA, ERROR)


class WorkItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = ""
    company: str = ""
    location: str | None = None
    start_date: str | None = Field(default=None, alias="startDate")
    end_date: str | None = Field(default=None, alias="endDate")
    duration_months: int | None = Field(default=None, alias="durationMonths")
    is_current_role: bool | None = Field(default=None, alias="isCurrentRole")
    description: str | None = None


class CanonicalRecord(BaseModel):
    """Fixed-shape result of reconciling one analysis response."""

    model_config = ConfigDict(populate_by_name=True)

    skills: list[str] = Field(default_factory=list)
    work_history: list[WorkItem] = Field(default_factory=list, alias="workHistory")
    red_flags: list[str] = Field(default_factory=list, alias="redFlags")
    summary: str = ""
    score: int = Field(default=0, ge=0, le=100)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class VerificationReport(BaseModel):
    checks: dict[str, bool] = Field(default_factory=dict)
    unchecked: list[str] = Field(default_factory=list)
    checked: int = 0
    satisfied: int = 0
    confidence: int = Field(default=100, ge=0, le=100)
    threshold: int = 85
    passed: bool = True
    warning: str | None = None

    @property
    def failed_markers(self) -> list[str]:
        return [key for key, ok in self.checks.items() if not ok]


class AnalysisRecord(BaseModel):
    id: str
    job_id: str | None = None
    resume_id: str | None = None
    raw_envelope: Any = None
    source_text: str | None = None
    expected_markers: dict[str, str] = Field(default_factory=dict)
    parsing_status: ParsingStatus = PENDING
    parsing_detail: str | None = None
    canonical: CanonicalRecord | None = None
    warnings: list[str] = Field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None


class ReconcileResult(BaseModel):
    record_id: str
    status: ParsingStatus
    canonical: CanonicalRecord | None = None
    detail: str | None = None
    warnings: list[str] = Field(default_factory=list)
    changed: bool = False
    verification: VerificationReport | None = None


class BatchSelector(BaseModel):
    job_id: str | None = None
    limit: int = Field(default=50, ge=1)


class BatchSummary(BaseModel):
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    total: int = 0
    processed_ids: list[str] = Field(default_factory=list)
    failed_ids: list[str] = Field(default_factory=list)
