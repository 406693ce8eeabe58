from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable

from .canonical_fields import has_canonical_fields
from .utils import is_blank_envelope

logger = logging.getLogger(__name__)

PAYLOAD_KEYS = ("parsedJson", "parsed_json")
WRAPPER_KEYS = ("rawResponse", "raw_response", "response", "data", "result")
SECTIONS_KEYS = ("extractedSections", "sections")
TEXT_KEYS = ("rawText", "raw_text", "text", "content", "completion")

_JSON_SPAN_RE = re.compile(r"\{.*\}", re.DOTALL)


@dataclass(frozen=True)
class LocatedPayload:
    strategy: str
    content: dict[str, Any] | None = None
    text: str | None = None

    @property
    def needs_repair(self) -> bool:
        return self.content is None


class _Outcome:
    """A strategy either does not apply (None) or settles the search."""

    def __init__(self, payload: LocatedPayload | None) -> None:
        self.payload = payload


def _wrapper(obj: dict[str, Any]) -> dict[str, Any] | None:
    for key in WRAPPER_KEYS:
        value = obj.get(key)
        if isinstance(value, dict):
            return value
    return None


def _wrappers(obj: dict[str, Any], depth: int) -> list[dict[str, Any]]:
    found: list[dict[str, Any]] = []
    current: dict[str, Any] | None = obj
    for _ in range(depth):
        current = _wrapper(current) if current is not None else None
        if current is None:
            break
        found.append(current)
    return found


def _from_payload_field(obj: dict[str, Any], strategy: str) -> _Outcome | None:
    for key in PAYLOAD_KEYS:
        value = obj.get(key)
        if isinstance(value, dict) and value:
            return _Outcome(LocatedPayload(strategy=strategy, content=value))
        if isinstance(value, str) and value.strip():
            return _Outcome(LocatedPayload(strategy=strategy, text=value))
    return None


def _from_text_field(obj: dict[str, Any], strategy: str) -> _Outcome | None:
    for key in TEXT_KEYS:
        value = obj.get(key)
        if not isinstance(value, str) or not value.strip():
            continue
        match = _JSON_SPAN_RE.search(value)
        if match is None:
            logger.info("payload_locator_text_without_json strategy=%s field=%s", strategy, key)
            return _Outcome(None)
        return _Outcome(LocatedPayload(strategy=strategy, text=match.group(0)))
    return None


def _direct(envelope: dict[str, Any]) -> _Outcome | None:
    return _from_payload_field(envelope, "direct")


def _wrapped(envelope: dict[str, Any]) -> _Outcome | None:
    for wrapper in _wrappers(envelope, depth=2):
        outcome = _from_payload_field(wrapper, "wrapped")
        if outcome is not None:
            return outcome
    return None


def _sections(envelope: dict[str, Any]) -> _Outcome | None:
    for container in [envelope, *_wrappers(envelope, depth=1)]:
        for key in SECTIONS_KEYS:
            sections = container.get(key)
            if not isinstance(sections, dict) or not sections:
                continue
            outcome = _from_payload_field(sections, "sections")
            if outcome is not None:
                return outcome
            if has_canonical_fields(sections):
                return _Outcome(LocatedPayload(strategy="sections", content=sections))
    return None


def _text(envelope: dict[str, Any]) -> _Outcome | None:
    return _from_text_field(envelope, "text")


def _wrapped_text(envelope: dict[str, Any]) -> _Outcome | None:
    for wrapper in _wrappers(envelope, depth=1):
        outcome = _from_text_field(wrapper, "wrapped_text")
        if outcome is not None:
            return outcome
    return None


def _bare_fields(envelope: dict[str, Any]) -> _Outcome | None:
    for container in [envelope, *_wrappers(envelope, depth=1)]:
        if has_canonical_fields(container):
            return _Outcome(LocatedPayload(strategy="bare_fields", content=container))
    return None


STRATEGIES: tuple[tuple[str, Callable[[dict[str, Any]], _Outcome | None]], ...] = (
    ("direct", _direct),
    ("wrapped", _wrapped),
    ("sections", _sections),
    ("text", _text),
    ("wrapped_text", _wrapped_text),
    ("bare_fields", _bare_fields),
)


def coerce_envelope(envelope: Any) -> dict[str, Any] | str | None:
    """Decode serialized envelopes and unwrap single-item lists."""
    if is_blank_envelope(envelope):
        return None
    if isinstance(envelope, (bytes, bytearray)):
        envelope = envelope.decode("utf-8", errors="replace")
    if isinstance(envelope, str):
        try:
            decoded = json.loads(envelope)
        except (json.JSONDecodeError, ValueError):
            return envelope
        if isinstance(decoded, str):
            return decoded
        envelope = decoded
    if isinstance(envelope, list):
        envelope = next((item for item in envelope if isinstance(item, dict)), None)
    return envelope if isinstance(envelope, dict) and envelope else None


def trace_locate(envelope: Any) -> tuple[str | None, LocatedPayload | None]:
    """Run the strategy list and report which strategy settled the search.

    The strategy name is returned even when that strategy came up empty, so
    callers can record what was tried.
    """
    coerced = coerce_envelope(envelope)
    if coerced is None:
        logger.debug("payload_locator_empty_envelope")
        return None, None

    if isinstance(coerced, str):
        match = _JSON_SPAN_RE.search(coerced)
        if match is None:
            logger.info("payload_locator_text_without_json strategy=envelope_text")
            return "envelope_text", None
        return "envelope_text", LocatedPayload(strategy="envelope_text", text=match.group(0))

    for name, strategy in STRATEGIES:
        outcome = strategy(coerced)
        if outcome is None:
            continue
        if outcome.payload is None:
            logger.info("payload_locator_strategy_failed strategy=%s", name)
        else:
            logger.debug("payload_locator_match strategy=%s keys=%s", name, list(coerced)[:12])
        return name, outcome.payload

    logger.info("payload_locator_no_match keys=%s", list(coerced)[:12])
    return None, None


def locate(envelope: Any) -> LocatedPayload | None:
    return trace_locate(envelope)[1]
