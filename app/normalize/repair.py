"""Turn near-JSON model output into parseable JSON.

Rewrites only touch text outside string literals, so values such as
``"summary": "True story, partial rewrite"`` come through untouched.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterator

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```[A-Za-z0-9_-]*[ \t]*")
_BOOL_RE = re.compile(r"(?<![A-Za-z0-9_$])(True|False|None)(?![A-Za-z0-9_$])")
_ENUM_VALUE_RE = re.compile(
    r"(:\s*)(partially|partial|fully|full|none|high|medium|low)(?=\s*(?:[,}\]]|$))",
    re.IGNORECASE,
)
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_BARE_VALUE_RE = re.compile(r"(:\s*)([A-Za-z_][A-Za-z0-9_\-]*)(?=\s*(?:[,}\]]|$))")

_LITERALS = {"True": "true", "False": "false", "None": "null"}
_ENUM_CANONICAL = {"partially": "partial", "fully": "full"}
_JSON_KEYWORDS = {"true", "false", "null"}


def _segments(text: str) -> Iterator[tuple[str, bool]]:
    """Yield (chunk, is_string_literal) pieces of text."""
    start = 0
    index = 0
    length = len(text)
    while index < length:
        if text[index] != '"':
            index += 1
            continue
        if index > start:
            yield text[start:index], False
        end = index + 1
        while end < length:
            char = text[end]
            if char == "\\":
                end += 2
                continue
            if char == '"':
                end += 1
                break
            end += 1
        yield text[index:end], True
        start = index = end
    if start < length:
        yield text[start:], False


def _quote_enum(match: re.Match[str]) -> str:
    word = match.group(2).lower()
    return f'{match.group(1)}"{_ENUM_CANONICAL.get(word, word)}"'


def _quote_bare(match: re.Match[str]) -> str:
    word = match.group(2)
    if word in _JSON_KEYWORDS:
        return match.group(0)
    return f'{match.group(1)}"{word}"'


def _rewrite_code(chunk: str) -> str:
    chunk = _BOOL_RE.sub(lambda m: _LITERALS[m.group(1)], chunk)
    chunk = _ENUM_VALUE_RE.sub(_quote_enum, chunk)
    chunk = _TRAILING_COMMA_RE.sub(r"\1", chunk)
    chunk = _BARE_VALUE_RE.sub(_quote_bare, chunk)
    return chunk


def strip_code_fences(text: str) -> str:
    """Remove markdown fences outside string literals."""
    return "".join(chunk if is_string else _FENCE_RE.sub("", chunk) for chunk, is_string in _segments(text))


def normalize_json_text(text: str) -> str:
    cleaned = strip_code_fences(text).strip()
    parts: list[str] = []
    for chunk, is_string in _segments(cleaned):
        parts.append(chunk if is_string else _rewrite_code(chunk))
    return "".join(parts)


def _loads_object(text: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def balanced_spans(text: str) -> Iterator[str]:
    """Yield every maximal balanced {...} span, ignoring braces inside strings."""
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start >= 0:
                yield text[start : index + 1]
                start = -1


def repair(candidate_text: str) -> dict[str, Any] | None:
    if not isinstance(candidate_text, str) or not candidate_text.strip():
        return None
    try:
        parsed = _loads_object(normalize_json_text(candidate_text))
        if parsed is not None:
            return parsed

        for span in balanced_spans(candidate_text):
            parsed = _loads_object(normalize_json_text(span))
            if parsed is not None:
                return parsed
    except Exception as exc:  # noqa: BLE001 - repair reports failure as None
        logger.warning("json_repair_crashed text_len=%s: %s", len(candidate_text), exc)
        return None

    logger.debug("json_repair_failed text_len=%s", len(candidate_text))
    return None
