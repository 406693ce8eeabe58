"""Cross-check a canonical record against literal text from the source document.

Markers are short strings known to be true of the source (candidate name,
latest employer, latest title). A marker that occurs in the source but not
anywhere in the canonical record suggests the model invented content.
"""

from __future__ import annotations

import json
import logging

from app.schemas.canonical import CanonicalRecord, VerificationReport, WorkItem

logger = logging.getLogger(__name__)

CONFIDENCE_THRESHOLD = 85

_COMPANY_MARKERS = {"recent_employer", "recent_company", "current_employer", "employer"}
_TITLE_MARKERS = {"recent_title", "current_title", "title"}


def _serialize(canonical: CanonicalRecord) -> str:
    return json.dumps(canonical.to_wire(), ensure_ascii=False).lower()


def verify(
    canonical: CanonicalRecord,
    source_text: str,
    expected_markers: dict[str, str],
    threshold: int = CONFIDENCE_THRESHOLD,
) -> VerificationReport:
    source_lower = (source_text or "").lower()
    serialized = _serialize(canonical)

    checks: dict[str, bool] = {}
    unchecked: list[str] = []
    for key, marker in (expected_markers or {}).items():
        needle = (marker or "").strip().lower()
        if not needle or needle not in source_lower:
            unchecked.append(key)
            continue
        checks[key] = needle in serialized

    checked = len(checks)
    satisfied = sum(1 for ok in checks.values() if ok)
    confidence = 100 if checked == 0 else int(round(satisfied * 100 / checked))
    passed = confidence >= threshold

    warning = None
    if not passed:
        missing = ", ".join(sorted(key for key, ok in checks.items() if not ok))
        warning = (
            f"Possible fabricated content: confidence {confidence}% is below {threshold}%. "
            f"Source markers not reproduced: {missing}."
        )
        logger.info("consistency_check_low_confidence confidence=%s missing=%s", confidence, missing)

    return VerificationReport(
        checks=checks,
        unchecked=unchecked,
        checked=checked,
        satisfied=satisfied,
        confidence=confidence,
        threshold=threshold,
        passed=passed,
        warning=warning,
    )


def literal_from_source(source_text: str, marker: str) -> str | None:
    """Return the marker as it is spelled in the source text."""
    if not source_text or not marker:
        return None
    index = source_text.lower().find(marker.strip().lower())
    if index < 0:
        return None
    return source_text[index : index + len(marker.strip())]


def apply_fallbacks(
    canonical: CanonicalRecord,
    report: VerificationReport,
    source_text: str,
    expected_markers: dict[str, str],
) -> CanonicalRecord:
    """Swap model-derived values for literal source values on failed markers."""
    if report.passed:
        return canonical

    updated = canonical.model_copy(deep=True)
    for key in report.failed_markers:
        literal = literal_from_source(source_text, expected_markers.get(key, ""))
        if literal is None:
            continue
        normalized_key = key.strip().lower()
        if normalized_key in _COMPANY_MARKERS or normalized_key in _TITLE_MARKERS:
            if not updated.work_history:
                updated.work_history.append(WorkItem())
            latest = updated.work_history[0]
            if normalized_key in _COMPANY_MARKERS:
                latest.company = literal
            else:
                latest.title = literal
        elif normalized_key.startswith("skill"):
            updated.skills.append(literal)
        else:
            continue
        logger.info("consistency_fallback_applied marker=%s", key)
    return updated
