from __future__ import annotations

import logging
import re
from typing import Any

from app.schemas.canonical import CanonicalRecord, WorkItem

from .score import normalize_score
from .utils import find_alias, first_text, stringify

logger = logging.getLogger(__name__)

# Priority order matters: the first alias present in an object wins.
SKILLS_ALIASES = (
    "skills",
    "Skills",
    "SKILLS",
    "skill_list",
    "skillList",
    "key_skills",
    "keySkills",
    "candidate_skills",
    "technical_skills",
    "technicalSkills",
    "soft_skills",
    "hardSkills",
    "softSkills",
    "analysis.skills",
)
WORK_HISTORY_ALIASES = (
    "workHistory",
    "work_history",
    "Work_History",
    "WorkHistory",
    "Work History",
    "work-history",
    "employment_history",
    "employmentHistory",
    "work experience",
    "workExperience",
    "work_experience",
    "experience",
    "Experience",
    "jobs",
    "positions",
    "career_history",
    "professional_experience",
    "employment",
    "analysis.workHistory",
    "analysis.recentRoles",
)
RED_FLAGS_ALIASES = (
    "redFlags",
    "red_flags",
    "Red_Flags",
    "RedFlags",
    "Red Flags",
    "red-flags",
    "flags.red_flags",
    "flags",
    "concerns",
    "warnings",
    "issues",
    "potential_issues",
    "potential_concerns",
    "cautions",
    "warning_signs",
    "resume_issues",
    "analysis.redFlags",
    "analysis.potentialRedFlags",
)
SUMMARY_ALIASES = (
    "summary",
    "Summary",
    "overview",
    "Overview",
    "profile",
    "Profile",
    "candidate_summary",
    "executive_summary",
    "resume_summary",
    "analysis.summary",
)
SCORE_ALIASES = (
    "matching_score",
    "matchingScore",
    "Matching Score",
    "score",
    "Score",
    "match_score",
    "matchScore",
    "overallScore",
    "overall_score",
    "fit_score",
    "analysis.score",
)

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "skills": SKILLS_ALIASES,
    "workHistory": WORK_HISTORY_ALIASES,
    "redFlags": RED_FLAGS_ALIASES,
    "summary": SUMMARY_ALIASES,
    "score": SCORE_ALIASES,
}

_SKILL_NAME_KEYS = ("name", "skill", "Skill", "title", "label", "value", "text")
_FLAG_TEXT_KEYS = ("description", "issue", "text", "flag", "reason", "message", "title", "name")

_TITLE_KEYS = ("title", "Title", "position", "Position", "role", "Role", "job_title", "jobTitle")
_COMPANY_KEYS = (
    "company",
    "Company",
    "employer",
    "Employer",
    "organization",
    "organisation",
    "company_name",
    "companyName",
)
_LOCATION_KEYS = ("location", "Location", "city")
_START_KEYS = ("startDate", "start_date", "Start Date", "start", "from")
_END_KEYS = ("endDate", "end_date", "End Date", "end", "to")
_DURATION_KEYS = ("durationMonths", "duration_months", "duration", "Duration")
_CURRENT_KEYS = ("isCurrentRole", "is_current_role", "isCurrent", "current", "currentRole")
_DESCRIPTION_KEYS = ("description", "Description", "summary", "responsibilities")

_CURRENT_END_WORDS = {"present", "current", "now", "ongoing", "today"}
_AT_SPLIT_RE = re.compile(r"\s+(?:at|@)\s+", re.IGNORECASE)
_MONTHS_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(?:months?|mos?)?\s*$", re.IGNORECASE)
_YEARS_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(?:years?|yrs?)\s*$", re.IGNORECASE)


def has_canonical_fields(obj: Any) -> bool:
    if not isinstance(obj, dict):
        return False
    return any(find_alias(obj, aliases) is not None for aliases in FIELD_ALIASES.values())


def _coerce_text_entry(entry: Any, name_keys: tuple[str, ...]) -> str | None:
    if entry is None:
        return None
    if isinstance(entry, dict):
        name = first_text(entry, name_keys)
        return name if name is not None else stringify(entry)
    text = stringify(entry)
    return text or None


def _coerce_text_list(value: Any, name_keys: tuple[str, ...], field: str) -> list[str]:
    if not isinstance(value, list):
        if value not in (None, ""):
            logger.debug("canonical_field_type_mismatch field=%s type=%s", field, type(value).__name__)
        return []
    items: list[str] = []
    for entry in value:
        text = _coerce_text_entry(entry, name_keys)
        if text is None:
            logger.debug("canonical_entry_dropped field=%s entry=%r", field, entry)
            continue
        items.append(text)
    return items


def _coerce_duration(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return int(round(value)) if value >= 0 else None
    if isinstance(value, str):
        if match := _MONTHS_RE.match(value):
            return int(round(float(match.group(1))))
        if match := _YEARS_RE.match(value):
            return int(round(float(match.group(1)) * 12))
    return None


def _coerce_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "y", "1"}:
            return True
        if lowered in {"false", "no", "n", "0"}:
            return False
    if isinstance(value, (int, float)):
        return bool(value)
    return None


def _first_value(entry: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if key in entry:
            return entry[key]
    return None


def _coerce_work_item(entry: Any) -> WorkItem | None:
    if entry is None:
        return None
    if isinstance(entry, str):
        text = entry.strip()
        if not text:
            return None
        parts = _AT_SPLIT_RE.split(text, maxsplit=1)
        if len(parts) == 2:
            return WorkItem(title=parts[0].strip(), company=parts[1].strip())
        return WorkItem(title=text)
    if not isinstance(entry, dict):
        return WorkItem(title=stringify(entry))

    end_date = first_text(entry, _END_KEYS)
    is_current = _coerce_bool(_first_value(entry, _CURRENT_KEYS))
    if is_current is None and end_date and end_date.strip().lower() in _CURRENT_END_WORDS:
        is_current = True

    return WorkItem(
        title=first_text(entry, _TITLE_KEYS) or "",
        company=first_text(entry, _COMPANY_KEYS) or "",
        location=first_text(entry, _LOCATION_KEYS),
        start_date=first_text(entry, _START_KEYS),
        end_date=end_date,
        duration_months=_coerce_duration(_first_value(entry, _DURATION_KEYS)),
        is_current_role=is_current,
        description=first_text(entry, _DESCRIPTION_KEYS),
    )


def _coerce_work_history(value: Any) -> list[WorkItem]:
    if not isinstance(value, list):
        if value not in (None, ""):
            logger.debug("canonical_field_type_mismatch field=workHistory type=%s", type(value).__name__)
        return []
    items: list[WorkItem] = []
    for entry in value:
        item = _coerce_work_item(entry)
        if item is None:
            logger.debug("canonical_entry_dropped field=workHistory entry=%r", entry)
            continue
        items.append(item)
    return items


def _resolve(obj: dict[str, Any], field: str) -> Any:
    found = find_alias(obj, FIELD_ALIASES[field])
    return None if found is None else found[1]


def find_raw_score(obj: Any) -> Any:
    if not isinstance(obj, dict):
        return None
    return _resolve(obj, "score")


def canonicalize(obj: Any) -> CanonicalRecord:
    """Map an arbitrary analysis object onto the canonical record.

    Never raises: unknown shapes and mismatched types fall back to the
    per-field defaults, and the score goes through normalize_score.
    """
    if isinstance(obj, list):
        obj = next((item for item in obj if isinstance(item, dict)), {})
    if not isinstance(obj, dict):
        return CanonicalRecord(score=normalize_score(None))

    try:
        summary = _resolve(obj, "summary")
        return CanonicalRecord(
            skills=_coerce_text_list(_resolve(obj, "skills"), _SKILL_NAME_KEYS, "skills"),
            work_history=_coerce_work_history(_resolve(obj, "workHistory")),
            red_flags=_coerce_text_list(_resolve(obj, "redFlags"), _FLAG_TEXT_KEYS, "redFlags"),
            summary=summary.strip() if isinstance(summary, str) else "",
            score=normalize_score(find_raw_score(obj)),
        )
    except Exception as exc:  # noqa: BLE001 - canonicalize must stay total
        logger.warning("canonicalize_fallback_to_defaults: %s", exc)
        return CanonicalRecord(score=normalize_score(None))
