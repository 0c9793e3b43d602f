"""
Text heuristics over extracted chunks.

Pure functions shared by the file-signature and intake stages: content
fingerprints, stratified excerpt sampling, heading detection, citation
extraction, quality signals and outline flattening.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from src.core.coerce import (
    clamp01,
    dedupe_strings,
    dict_from_any,
    float_from_any,
    list_from_any,
    str_from_any,
)

URL_RE = re.compile(r"https?://[^\s\)\]]+")
DOI_RE = re.compile(r"\b10\.\d{4,9}/[^\s]+")
RFC_RE = re.compile(r"\bRFC\s?\d{3,5}\b")
HEADING_PREFIX_RE = re.compile(r"^(\d+(\.\d+)*|[IVX]+)\s+")

HEADING_MIN_LEN = 4
HEADING_MAX_LEN = 80
HEADING_UPPER_RATIO = 0.6


def chunk_kind(chunk: Any) -> str:
    return str_from_any(dict_from_any(getattr(chunk, "meta", None)).get("kind")).strip()


def is_unextractable(chunk: Any) -> bool:
    if chunk_kind(chunk).lower() == "unextractable":
        return True
    return (chunk.text or "").strip().lower().startswith("no extractable ")


def shorten(text: str, limit: int) -> str:
    text = (text or "").strip()
    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit] + "..."


def file_fingerprint(file: Any, chunks: Sequence[Any]) -> str:
    """SHA-1 over name, size, mime, sorted chunk ids and total text length."""
    h = hashlib.sha1()
    if file is not None:
        h.update((file.original_name or "").strip().encode("utf-8"))
        h.update(f"|{int(file.size_bytes or 0)}|{(file.mime_type or '').strip()}".encode("utf-8"))
    ids = []
    total_chars = 0
    for c in chunks:
        if c is None or c.id is None:
            continue
        ids.append(str(c.id))
        total_chars += len(c.text or "")
    for chunk_id in sorted(ids):
        h.update(f"|{chunk_id}".encode("utf-8"))
    h.update(f"|len:{total_chars}".encode("utf-8"))
    return h.hexdigest()


def stratified_excerpts(
    chunks: Sequence[Any],
    per_file: int,
    max_chars: int,
    max_lines: int = 0,
    max_total_chars: int = 0,
) -> tuple[str, list[Any]]:
    """
    Sample up to ``per_file`` chunks per file at uniform index strides.

    Each sampled chunk becomes one ``[chunk_id=...] text`` line truncated to
    ``max_chars``. Sampling stops when ``max_lines`` or ``max_total_chars`` would
    be exceeded. Files are visited in id order, chunks in index order.

    Returns:
        (excerpt text, ids of the chunks that made it in)
    """
    per_file = per_file if per_file > 0 else 12
    max_chars = max_chars if max_chars > 0 else 700

    by_file: dict[str, list[Any]] = {}
    for c in chunks:
        if c is None or c.material_file_id is None or is_unextractable(c):
            continue
        if not (c.text or "").strip():
            continue
        by_file.setdefault(str(c.material_file_id), []).append(c)

    parts: list[str] = []
    size = 0
    lines_used = 0
    ids: list[Any] = []
    done = False
    for file_id in sorted(by_file):
        arr = sorted(by_file[file_id], key=lambda c: c.index)
        n = len(arr)
        k = min(per_file, n)
        if max_lines > 0:
            remaining = max_lines - lines_used
            if remaining <= 0:
                break
            k = min(k, remaining)
        if k <= 0:
            break
        step = n / k
        for i in range(k):
            c = arr[min(max(int(i * step), 0), n - 1)]
            txt = shorten(c.text, max_chars)
            if not txt:
                continue
            line = f"[chunk_id={c.id}] {txt}\n"
            if max_total_chars > 0 and size + len(line) > max_total_chars:
                done = True
                break
            parts.append(line)
            size += len(line)
            ids.append(c.id)
            lines_used += 1
            if max_lines > 0 and lines_used >= max_lines:
                done = True
                break
        if done:
            break
        parts.append("\n")
        size += 1
        if max_total_chars > 0 and size >= max_total_chars:
            break
    return "".join(parts).strip(), ids


def looks_like_heading(line: str) -> bool:
    """
    Heuristic heading test for a single trimmed line.

    Accepts 4-80 character lines that are all caps, mostly caps (>= 60% of
    letters) or start with a numeric (``3.1``) or Roman (``IV``) prefix.
    """
    if not line or len(line) < HEADING_MIN_LEN or len(line) > HEADING_MAX_LEN:
        return False
    if line.endswith(".") and len(line) < 10:
        return False
    letters = [ch for ch in line if ch.isalpha()]
    if not letters:
        return False
    upper = sum(1 for ch in letters if ch.isupper())
    if upper == len(letters):
        return True
    if upper > 0 and upper / len(letters) >= HEADING_UPPER_RATIO:
        return True
    return bool(HEADING_PREFIX_RE.match(line))


@dataclass
class HeadingCandidate:
    title: str
    start_page: int | None = None
    end_page: int | None = None
    start_sec: float | None = None
    end_sec: float | None = None


def extract_heading_candidates(chunks: Sequence[Any], max_sections: int) -> list[HeadingCandidate]:
    if not chunks or max_sections <= 0:
        return []
    seen: set[str] = set()
    out: list[HeadingCandidate] = []
    for c in sorted((c for c in chunks if c is not None), key=lambda c: c.index):
        if not (c.text or "").strip():
            continue
        for raw in c.text.split("\n"):
            line = raw.strip()
            if not looks_like_heading(line):
                continue
            key = line.lower()
            if key in seen:
                continue
            seen.add(key)
            out.append(
                HeadingCandidate(
                    title=line,
                    start_page=c.page,
                    end_page=c.page,
                    start_sec=c.start_sec,
                    end_sec=c.end_sec,
                )
            )
            if len(out) >= max_sections:
                return out
    return out


def outline_hint_from_diagnostics(diagnostics: Any, max_sections: int) -> dict[str, Any] | None:
    hint = dict_from_any(dict_from_any(diagnostics).get("outline_hint"))
    sections = list_from_any(hint.get("sections"))
    if not sections:
        return None
    if max_sections > 0:
        sections = sections[:max_sections]
    out: dict[str, Any] = {"title": str_from_any(hint.get("title")).strip(), "sections": sections}
    source = str_from_any(hint.get("source")).strip()
    if source:
        out["source"] = source
    confidence = float_from_any(hint.get("confidence"), 0.0)
    if confidence > 0:
        out["confidence"] = confidence
    return out


def build_outline_hint(file: Any, chunks: Sequence[Any], max_sections: int) -> dict[str, Any] | None:
    """Outline from extraction diagnostics when present, else inferred headings."""
    if file is None:
        return None
    hint = outline_hint_from_diagnostics(getattr(file, "extraction_diagnostics", None), max_sections)
    if hint is not None:
        return hint
    sections = [
        {
            "title": h.title,
            "path": str(i + 1),
            "start_page": h.start_page,
            "end_page": h.end_page,
            "start_sec": h.start_sec,
            "end_sec": h.end_sec,
            "children": [],
        }
        for i, h in enumerate(extract_heading_candidates(chunks, max_sections))
    ]
    return {"title": (file.original_name or "").strip() or "Document", "sections": sections}


def extract_citations(text: str) -> list[str]:
    """URLs, DOIs and RFC references found in ``text``, deduplicated."""
    if not (text or "").strip():
        return []
    found = URL_RE.findall(text)
    found += [m.group(0) for m in DOI_RE.finditer(text)]
    found += RFC_RE.findall(text)
    return dedupe_strings(found)


def build_quality_signals(chunks: Sequence[Any], excerpt: str, min_text_chars: int) -> dict[str, Any]:
    total_chars = alpha = noise = 0
    table = ocr = transcript = 0
    for c in chunks:
        if c is None:
            continue
        txt = c.text or ""
        total_chars += len(txt)
        for ch in txt:
            if ch.isalpha():
                alpha += 1
            elif not ch.isalnum() and not ch.isspace():
                noise += 1
        kind = chunk_kind(c)
        if kind == "table_text":
            table += 1
        elif kind == "ocr_text":
            ocr += 1
        elif kind == "transcript":
            transcript += 1

    coverage = 0.5
    if excerpt.strip() and total_chars > 0:
        coverage = clamp01(len(excerpt) / total_chars)

    return {
        "text_chars": total_chars,
        "alpha_ratio": alpha / total_chars if total_chars else 0.0,
        "noise_ratio": noise / total_chars if total_chars else 0.0,
        "chunk_count": len(chunks),
        "table_chunks": table,
        "ocr_chunks": ocr,
        "transcript_chunks": transcript,
        "coverage": coverage,
        "low_text_signal": min_text_chars > 0 and 0 < total_chars < min_text_chars,
    }


def _optional_int(value: Any) -> int | None:
    n = int(float_from_any(value, 0.0))
    return n or None


def _optional_float(value: Any) -> float | None:
    f = float_from_any(value, 0.0)
    return f or None


def flatten_outline_sections(outline: Any, max_sections: int) -> list[dict[str, Any]]:
    """
    Top-level outline sections as section rows, at most ``max_sections``.

    Rows carry a dense ``section_index`` starting at 1. Zero page/second
    values become None.
    """
    if max_sections <= 0:
        return []
    out: list[dict[str, Any]] = []
    for item in list_from_any(dict_from_any(outline).get("sections")):
        if len(out) >= max_sections:
            break
        if not isinstance(item, dict):
            continue
        title = str_from_any(item.get("title")).strip()
        out.append(
            {
                "section_index": len(out) + 1,
                "title": title,
                "path": str_from_any(item.get("path")).strip(),
                "start_page": _optional_int(item.get("start_page")),
                "end_page": _optional_int(item.get("end_page")),
                "start_sec": _optional_float(item.get("start_sec")),
                "end_sec": _optional_float(item.get("end_sec")),
                "text_excerpt": title,
                "metadata": {"source": "outline"},
            }
        )
    return out
