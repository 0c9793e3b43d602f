"""
Helpers for reading loosely-typed JSON documents.

LLM replies and JSONB metadata arrive as plain dicts whose values may be missing,
null or of the wrong type. These helpers normalise them without raising.
"""

from __future__ import annotations

import json
import math
from collections.abc import Iterable, Mapping
from typing import Any
from uuid import UUID


def str_from_any(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return ""


def float_from_any(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        f = float(value)
        return default if math.isnan(f) or math.isinf(f) else f
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return default
    return default


def int_from_any(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return default if math.isnan(value) or math.isinf(value) else int(value)
    if isinstance(value, str):
        try:
            return int(float(value.strip()))
        except ValueError:
            return default
    return default


def bool_from_any(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y", "on")
    return False


def dict_from_any(value: Any) -> dict[str, Any]:
    """Return a dict for mappings or JSON object strings, else an empty dict."""
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, (str, bytes)) and value:
        try:
            decoded = json.loads(value)
        except ValueError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


def list_from_any(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return []


def str_list_from_any(value: Any) -> list[str]:
    """Trimmed, non-empty strings from a list-ish value (order kept)."""
    out: list[str] = []
    for item in list_from_any(value):
        s = str_from_any(item).strip()
        if s:
            out.append(s)
    return out


def dedupe_strings(values: Iterable[str]) -> list[str]:
    """Drop blanks and duplicates, keeping first occurrence order."""
    seen: set[str] = set()
    out: list[str] = []
    for v in values:
        s = (v or "").strip()
        if not s or s in seen:
            continue
        seen.add(s)
        out.append(s)
    return out


def dedupe_strings_fold(values: Iterable[str]) -> list[str]:
    """Like dedupe_strings but case-insensitive."""
    seen: set[str] = set()
    out: list[str] = []
    for v in values:
        s = (v or "").strip()
        key = s.lower()
        if not s or key in seen:
            continue
        seen.add(key)
        out.append(s)
    return out


def clamp01(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, value))


def truncate(text: str, limit: int, suffix: str = "") -> str:
    text = text or ""
    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit].rstrip() + suffix


def canonical_json(value: Any) -> str:
    """Deterministic JSON: sorted keys, compact separators, UUIDs and datetimes as strings."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=_json_default, ensure_ascii=False)


def _json_default(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
