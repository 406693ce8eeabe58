from __future__ import annotations

import json
import re
from typing import Any, Iterable

_MISSING = object()
_KEY_NOISE_RE = re.compile(r"[\s_\-]+")


def normalize_key(key: str) -> str:
    return _KEY_NOISE_RE.sub("", key).lower()


def get_path(obj: Any, path: str, default: Any = _MISSING) -> Any:
    """Resolve a dotted path such as 'analysis.recentRoles' through nested dicts."""
    current = obj
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def find_alias(obj: dict[str, Any], aliases: Iterable[str]) -> tuple[str, Any] | None:
    """Return the highest-priority alias present in obj as (key, value).

    Each alias is tried exactly first, then with case and separators ignored,
    before moving on to the next alias. When several keys fold onto the same
    alias, a key that is itself listed earlier in aliases wins, then the
    sorted-first key.
    """
    aliases = tuple(aliases)
    rank = {alias: index for index, alias in reversed(list(enumerate(aliases)))}

    folded: dict[str, list[str]] = {}
    for key in obj:
        if isinstance(key, str):
            folded.setdefault(normalize_key(key), []).append(key)

    for alias in aliases:
        value = get_path(obj, alias)
        if value is not _MISSING:
            return alias, value
        if "." in alias:
            continue
        candidates = folded.get(normalize_key(alias))
        if candidates:
            key = min(candidates, key=lambda item: (rank.get(item, len(aliases)), item))
            return key, obj[key]
    return None


def stringify(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    try:
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError):
        return str(value)


def first_text(entry: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = entry.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
    return None


def is_blank_envelope(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (dict, list)):
        return len(value) == 0
    return False
