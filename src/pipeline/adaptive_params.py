"""
Adaptive parameter resolver.

Stage knobs (excerpt budgets, section caps, batch sizes) scale with the size and
shape of the material set. Every knob has an environment ceiling that is a hard
maximum; with adaptive mode off the ceiling itself is used. Each resolved knob
is reported as ``{name: {actual, ceiling}}`` in the stage output.
"""

from __future__ import annotations

import math
import os
import posixpath
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any

from config import Settings

CODE_EXTENSIONS = {
    ".go", ".py", ".js", ".ts", ".java", ".c", ".cc", ".cpp",
    ".rs", ".cs", ".rb", ".php", ".swift", ".kt", ".m",
}
SLIDE_EXTENSIONS = {".ppt", ".pptx", ".key"}

# content type -> multiplier
EXCERPT_CHARS_FACTOR = {"slides": 0.7, "mixed": 0.9, "code": 0.85, "prose": 1.15}
EXCERPT_LINES_FACTOR = {"slides": 0.6, "mixed": 0.85, "code": 0.75, "prose": 1.1}
MIN_TEXT_CHARS_FACTOR = {"slides": 0.6, "mixed": 0.85, "code": 0.9, "prose": 1.2}


def round_half_up(value: float) -> int:
    """Round halves away from zero (Python's round() is banker's rounding)."""
    if value >= 0:
        return int(math.floor(value + 0.5))
    return -int(math.floor(-value + 0.5))


def clamp_int_ceiling(value: int, floor: int, ceiling: int) -> int:
    """Clamp to ``[floor, ceiling]``; a ceiling <= 0 means unbounded above."""
    if value < floor:
        value = floor
    if ceiling > 0 and value > ceiling:
        value = ceiling
    return value


def adaptive_from_ratio(total: int, ratio: float, floor: int, ceiling: int) -> int:
    if total <= 0:
        return clamp_int_ceiling(floor, floor, ceiling)
    return clamp_int_ceiling(round_half_up(total * ratio), floor, ceiling)


def _scale(base: int, content_type: str, factors: Mapping[str, float]) -> int:
    if base <= 0:
        return base
    factor = factors.get((content_type or "").strip().lower(), 1.0)
    return round_half_up(base * factor)


def adjust_excerpt_chars(base: int, content_type: str) -> int:
    return _scale(base, content_type, EXCERPT_CHARS_FACTOR)


def adjust_excerpt_lines(base: int, content_type: str) -> int:
    return _scale(base, content_type, EXCERPT_LINES_FACTOR)


def adjust_min_text_chars(base: int, content_type: str) -> int:
    return _scale(base, content_type, MIN_TEXT_CHARS_FACTOR)


def detect_content_type(files: Sequence[Any]) -> str:
    """Classify a set as ``slides``, ``code``, ``prose`` or ``mixed``."""
    if not files:
        return "mixed"
    code = slides = 0
    for f in files:
        name = (getattr(f, "original_name", "") or "").strip().lower()
        mime = (getattr(f, "mime_type", "") or "").strip().lower()
        kind = (getattr(f, "extracted_kind", "") or "").strip().lower()
        ext = posixpath.splitext(name)[1]
        if ext in SLIDE_EXTENSIONS or "presentation" in mime or "slides" in kind:
            slides += 1
        elif ext in CODE_EXTENSIONS or mime.startswith("text/x-") or "text/plain" in mime:
            code += 1
    total = len(files)
    if slides * 100 >= total * 60:
        return "slides"
    if code * 100 >= total * 60:
        return "code"
    if slides == 0 and code == 0:
        return "prose"
    return "mixed"


@dataclass
class AdaptiveSignals:
    file_count: int = 0
    page_count: int = 0
    section_count: int = 0
    chunk_count: int = 0
    concept_count: int = 0
    edge_count: int = 0
    node_count: int = 0
    avg_pages_per_file: float = 0.0
    avg_chunks_per_file: float = 0.0
    chunks_per_node: float = 0.0
    content_type: str = "mixed"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def signals_from_materials(
    files: Sequence[Any],
    chunks_by_file: Mapping[Any, Sequence[Any]],
    section_count: int = 0,
    concept_count: int = 0,
    edge_count: int = 0,
    node_count: int = 0,
) -> AdaptiveSignals:
    """Derive set signals from already-loaded files, chunks and section counts."""
    out = AdaptiveSignals(
        section_count=section_count,
        concept_count=concept_count,
        edge_count=edge_count,
        node_count=node_count,
    )
    out.file_count = len(files)
    if not files:
        return out
    out.content_type = detect_content_type(files)
    pages: set[tuple[Any, int]] = set()
    for f in files:
        chunks = chunks_by_file.get(f.id) or []
        out.chunk_count += len(chunks)
        for c in chunks:
            if c.page is not None:
                pages.add((f.id, c.page))
    out.page_count = len(pages)
    if out.page_count == 0 and out.chunk_count > 0:
        out.page_count = max(1, math.ceil(out.chunk_count / 3))
    out.avg_pages_per_file = out.page_count / out.file_count
    out.avg_chunks_per_file = out.chunk_count / out.file_count
    out.chunks_per_node = out.chunk_count / max(out.node_count, 1)
    return out


def adaptive_enabled_for_stage(stage: str, settings: Settings) -> bool:
    if not settings.adaptive_params_enabled:
        return False
    stage = (stage or "").strip()
    if not stage:
        return True
    flag = os.environ.get(f"ADAPTIVE_PARAMS_DISABLE_{stage.upper()}", "").strip().lower()
    if flag in ("1", "true", "yes", "on"):
        return False
    return stage.lower() not in settings.adaptive_disabled_stages()


@dataclass
class AdaptiveParam:
    name: str
    ceiling: int
    actual: int
    enabled: bool

    @property
    def value(self) -> int:
        return self.actual if self.enabled else self.ceiling


@dataclass
class AdaptiveTrace:
    """Resolved knobs for one stage invocation."""

    stage: str
    enabled: bool
    signals: AdaptiveSignals
    params: dict[str, AdaptiveParam] = field(default_factory=dict)

    def add(self, name: str, actual: int, ceiling: int) -> int:
        param = AdaptiveParam(name=name, ceiling=ceiling, actual=actual, enabled=self.enabled)
        self.params[name] = param
        return param.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "enabled": self.enabled,
            "signals": self.signals.to_dict(),
            "params": {
                name: {"actual": p.value, "ceiling": p.ceiling} for name, p in sorted(self.params.items())
            },
        }
