from __future__ import annotations

import math
from typing import Any

NEUTRAL_SCORE = 50


def _coerce_number(raw: Any) -> float | None:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        try:
            value = float(raw)
        except OverflowError:
            # Integers beyond float range are treated like infinities.
            return None
    elif isinstance(raw, str):
        text = raw.strip().rstrip("%").strip()
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            return None
    else:
        return None
    return value if math.isfinite(value) else None


def normalize_score(raw: Any) -> int:
    """Rescale a 0-1, 0-10 or 0-100 score onto an integer 0-100.

    Unparseable or missing scores land on the neutral midpoint rather than 0
    so they do not sink to the bottom of a ranking.
    """
    value = _coerce_number(raw)
    if value is None:
        return NEUTRAL_SCORE

    if 0 < value <= 1:
        value *= 100
    elif 1 < value < 10:
        value *= 10

    value = min(100.0, max(0.0, value))
    return int(math.floor(value + 0.5))
