"""
Intake normalization.

The LLM intake is a plain JSON object; these functions repair it in place so
every file lands in exactly one path, path ids are unique, the alignment mode
matches the path count and the primary path exists. Also derives the material
filter stored on the path and the deterministic fallback intake.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping, Sequence
from typing import Any

from src.core.coerce import (
    bool_from_any,
    dedupe_strings,
    dict_from_any,
    float_from_any,
    list_from_any,
    str_from_any,
    str_list_from_any,
)

DEFAULT_GOAL = "Learn the uploaded materials"
GOAL_SEED_NAMES = ("learning_goal.txt", "learning_goal.md")
FALLBACK_NOTE = "fallback_intake"

# Soft-split thresholds
JACCARD_STRONG = 0.35
JACCARD_WEAK = 0.25
LOW_CONFIDENCE_WITH_WEAK_JACCARD = 0.55
WEAK_CONFIDENCE = 0.45
COSINE_STRONG = 0.72
PAIR_SCORE_STRONG = 0.70
UNCERTAIN_WORDS = ("unsure", "unclear", "not sure", "maybe", "possibly", "might")
STRUCTURE_QUESTION_ID = "structure_clarify"

_TOKEN_RE = re.compile(r"[a-z0-9]+")
_STOPWORDS = frozenset(
    "a an and are as at be by for from in into is it of on or the to with".split()
)


def _text(value: Any) -> str:
    return str_from_any(value).strip()


def _file_ids(files: Sequence[Any]) -> list[str]:
    return dedupe_strings(str(f.id) for f in files if f is not None and f.id is not None)


def normalize_file_intents(intake: dict[str, Any], files: Sequence[Any]) -> None:
    """One intent per known file: unknown ids dropped, missing files appended, blanks defaulted."""
    names = {str(f.id): (f.original_name or "").strip() for f in files if f is not None and f.id is not None}
    if not names:
        return
    out: list[dict[str, Any]] = []
    seen: set[str] = set()
    for item in list_from_any(intake.get("file_intents")):
        if not isinstance(item, dict):
            continue
        fid = _text(item.get("file_id"))
        if not fid or fid in seen or fid not in names:
            continue
        seen.add(fid)
        if not _text(item.get("original_name")):
            item["original_name"] = names[fid]
        if not _text(item.get("aim")):
            item["aim"] = "Unknown"
        item.setdefault("topics", [])
        item.setdefault("confidence", 0.0)
        if not _text(item.get("uncertainty_note")):
            item["uncertainty_note"] = "Added for completeness."
        if not _text(item.get("alignment")):
            item["alignment"] = "unclear"
        item.setdefault("include_in_primary_path", True)
        if not _text(item.get("alignment_reason")):
            item["alignment_reason"] = "Added for completeness; alignment unclear."
        out.append(item)
    for fid in _file_ids(files):
        if fid in seen:
            continue
        out.append(
            {
                "file_id": fid,
                "original_name": names[fid],
                "aim": "Unknown (missing from intake)",
                "topics": [],
                "confidence": 0.0,
                "uncertainty_note": "Added missing file for completeness.",
                "alignment": "unclear",
                "include_in_primary_path": True,
                "alignment_reason": "Added for completeness; alignment unknown.",
            }
        )
    intake["file_intents"] = out


def normalize_intake_paths(intake: dict[str, Any], files: Sequence[Any]) -> None:
    """
    Enforce the path partition on an intake in place.

    Every file ends up in exactly one path (core before support, first path
    wins), empty paths are dropped, duplicate path ids get ``_2``, ``_3``
    suffixes and leftovers are gathered into an "Additional materials" path.
    """
    if files:
        all_ids = _file_ids(files)
        normalize_file_intents(intake, files)
    else:
        all_ids = dedupe_strings(
            _text(dict_from_any(it).get("file_id"))
            for it in list_from_any(intake.get("file_intents"))
            if _text(dict_from_any(it).get("file_id"))
        )
    valid = set(all_ids)

    alignment = intake.get("material_alignment")
    if not isinstance(alignment, dict):
        alignment = {}
        intake["material_alignment"] = alignment

    default_goal = _text(intake.get("combined_goal")) or _text(alignment.get("primary_goal")) or DEFAULT_GOAL

    def default_path(note: str) -> None:
        if not all_ids:
            return
        intake["paths"] = [
            {
                "path_id": "path_1",
                "title": "Primary path",
                "goal": default_goal,
                "core_file_ids": list(all_ids),
                "support_file_ids": [],
                "confidence": float_from_any(intake.get("confidence"), 0.25),
                "notes": note,
            }
        ]
        intake["primary_path_id"] = "path_1"
        alignment["mode"] = "single_goal"
        if not str_list_from_any(alignment.get("include_file_ids")):
            alignment["include_file_ids"] = list(all_ids)

    raw_paths = [p for p in list_from_any(intake.get("paths")) if isinstance(p, dict)]
    if not raw_paths:
        default_path("Paths were missing/empty; defaulted to a single path.")
        return

    seen: set[str] = set()
    assigned: set[str] = set()
    out: list[dict[str, Any]] = []
    auto_n = 1
    for path in raw_paths:
        pid = _text(path.get("path_id"))
        if not pid:
            pid = f"path_{auto_n}"
            auto_n += 1
        if pid in seen:
            base, k = pid, 2
            while pid in seen:
                pid = f"{base}_{k}"
                k += 1
        path["path_id"] = pid
        seen.add(pid)

        def keep(ids: Any) -> list[str]:
            kept = []
            for fid in dedupe_strings(s.strip() for s in str_list_from_any(ids)):
                if fid and fid in valid and fid not in assigned:
                    assigned.add(fid)
                    kept.append(fid)
            return kept

        core = keep(path.get("core_file_ids"))
        support = keep(path.get("support_file_ids"))
        if not core and not support:
            continue
        if not _text(path.get("title")):
            path["title"] = f"Path {len(out) + 1}"
        if not _text(path.get("goal")):
            path["goal"] = default_goal
        path["core_file_ids"] = core
        path["support_file_ids"] = support
        out.append(path)

    unassigned = [fid for fid in all_ids if fid not in assigned]
    if unassigned:
        pid = f"path_{len(out) + 1}"
        while pid in seen:
            pid = f"{pid}_2"
        seen.add(pid)
        out.append(
            {
                "path_id": pid,
                "title": "Additional materials",
                "goal": "Review the remaining materials",
                "core_file_ids": unassigned,
                "support_file_ids": [],
                "confidence": float_from_any(intake.get("confidence"), 0.2),
                "notes": "Added to ensure every file is assigned to a path.",
            }
        )

    if not out:
        default_path("Paths were empty after normalization; defaulted to a single path.")
        return
    intake["paths"] = out

    kept_ids = {p["path_id"] for p in out}
    if _text(intake.get("primary_path_id")) not in kept_ids:
        intake["primary_path_id"] = out[0]["path_id"]
    alignment["mode"] = "multi_goal" if len(out) > 1 else "single_goal"
    if not str_list_from_any(alignment.get("include_file_ids")) and all_ids:
        alignment["include_file_ids"] = list(all_ids)


def build_fallback_intake(files: Sequence[Any], summary: Any, user_context: str = "", user_answers: str = "") -> dict[str, Any]:
    """Deterministic single-path intake used without a thread or after an LLM failure."""
    include_ids = _file_ids(files)
    goal = (getattr(summary, "subject", "") or "").strip() or DEFAULT_GOAL
    level = (getattr(summary, "level", "") or "").strip() or "unknown"
    return {
        "file_intents": [
            {
                "file_id": str(f.id),
                "original_name": f.original_name or "",
                "aim": "Unknown (fallback)",
                "topics": [],
                "confidence": 0.0,
                "uncertainty_note": "Automatic inference unavailable; proceeding with best effort.",
                "alignment": "unclear",
                "include_in_primary_path": True,
                "alignment_reason": "Fallback: cannot reliably determine alignment; including by default.",
            }
            for f in files
            if f is not None
        ],
        "material_alignment": {
            "mode": "unclear",
            "primary_goal": goal,
            "include_file_ids": list(include_ids),
            "exclude_file_ids": [],
            "noise_file_ids": [],
            "notes": "Fallback alignment used due to missing/failed AI call.",
            "recommended_next_step": "proceed",
            "recommended_next_step_reason": "Fallback intake cannot ask questions; proceeding with best effort.",
            "recommended_next_step_confidence": 0.2,
        },
        "paths": [
            {
                "path_id": "path_1",
                "title": "Primary path",
                "goal": goal,
                "core_file_ids": list(include_ids),
                "support_file_ids": [],
                "confidence": 0.2,
                "notes": "Fallback intake; paths inferred deterministically from available files.",
            }
        ],
        "primary_path_id": "path_1",
        "combined_goal": goal,
        "learning_intent": {
            "goal_kind": "unknown",
            "deadline": "",
            "prior_knowledge": "",
            "priority_topics": [],
            "deprioritize": [],
            "constraints": [],
            "success_criteria": "",
            "plan_notes": "",
            "confidence": 0.1,
            "uncertainty_notes": [FALLBACK_NOTE],
        },
        "audience_level_guess": level,
        "confidence": 0.2,
        "uncertainty_reasons": [FALLBACK_NOTE],
        "needs_clarification": False,
        "clarifying_questions": [],
        "assumptions": ["Proceeding without additional user context."],
        "notes": "Fallback intake used due to missing/failed AI call.",
        "user_context": user_context.strip(),
        "user_answers": user_answers.strip(),
    }


def build_intake_material_filter(files: Sequence[Any], intake: Mapping[str, Any]) -> dict[str, Any]:
    """
    Filter persisted for downstream planners.

    Multi-goal intakes include every file. Excluded and noise files are never
    included; a ``learning_goal.txt``/``.md`` seed is always prepended.
    """
    all_ids = _file_ids(files)
    valid = set(all_ids)
    goal_ids = [
        str(f.id)
        for f in files
        if f is not None and (f.original_name or "").strip().lower() in GOAL_SEED_NAMES
    ]

    alignment = dict_from_any(intake.get("material_alignment"))
    mode = _text(alignment.get("mode")).lower() or "unclear"

    def filter_ids(ids: Any) -> list[str]:
        return dedupe_strings(s.strip() for s in str_list_from_any(ids) if s.strip() in valid)

    include = filter_ids(alignment.get("include_file_ids"))
    exclude = filter_ids(alignment.get("exclude_file_ids"))
    noise = filter_ids(alignment.get("noise_file_ids"))
    intents = [dict_from_any(it) for it in list_from_any(intake.get("file_intents"))]

    if not noise:
        noise = filter_ids([_text(it.get("file_id")) for it in intents if _text(it.get("alignment")).lower() == "noise"])

    if mode == "multi_goal" or len(list_from_any(intake.get("paths"))) > 1:
        include = list(all_ids)
    elif not include:
        include = filter_ids(
            [_text(it.get("file_id")) for it in intents if bool_from_any(it.get("include_in_primary_path"))]
        )
    if not include:
        include = list(all_ids)

    blocked = set(exclude) | set(noise)
    include = [fid for fid in include if fid not in blocked]
    for gid in goal_ids:
        if gid not in blocked:
            include = dedupe_strings([gid] + include)

    return {
        "mode": mode,
        "primary_goal": _text(alignment.get("primary_goal")),
        "include_file_ids": include,
        "exclude_file_ids": exclude,
        "noise_file_ids": noise,
        "notes": _text(alignment.get("notes")),
    }


def file_names_by_id(intake: Mapping[str, Any]) -> dict[str, str]:
    out = {}
    for item in list_from_any(intake.get("file_intents")):
        item = dict_from_any(item)
        fid, name = _text(item.get("file_id")), _text(item.get("original_name"))
        if fid and name:
            out[fid] = name
    return out


def names_for_ids(ids: Sequence[str], names: Mapping[str, str], limit: int = 0) -> list[str]:
    """Display names for ids, deduplicated by name, unknown ids skipped."""
    out: list[str] = []
    for fid in ids:
        name = names.get((fid or "").strip(), "").strip()
        if not name or name in out:
            continue
        out.append(name)
        if limit > 0 and len(out) >= limit:
            break
    return out


def intake_paths_brief_json(meta: Mapping[str, Any] | None, max_files_per_path: int = 4) -> str:
    """
    Compact planner-facing view of a multi-path intake (names instead of ids).

    Returns "" for single-path intakes or when nothing usable is stored.
    """
    intake = dict_from_any((meta or {}).get("intake"))
    if not intake:
        return ""
    mode = _text(dict_from_any(intake.get("material_alignment")).get("mode")).lower()
    paths = [dict_from_any(p) for p in list_from_any(intake.get("paths"))]
    if not paths or (mode != "multi_goal" and len(paths) <= 1):
        return ""
    if max_files_per_path <= 0:
        max_files_per_path = 4
    names = file_names_by_id(intake)

    brief = []
    for p in paths:
        title, goal = _text(p.get("title")), _text(p.get("goal"))
        if not title and not goal:
            continue
        brief.append(
            {
                "path_id": _text(p.get("path_id")) or _text(p.get("id")),
                "title": title,
                "goal": goal,
                "core_files": names_for_ids(dedupe_strings(str_list_from_any(p.get("core_file_ids"))), names, max_files_per_path),
                "support_files": names_for_ids(
                    dedupe_strings(str_list_from_any(p.get("support_file_ids"))), names, max_files_per_path
                ),
                "confidence": float_from_any(p.get("confidence"), 0.0),
                "notes": _text(p.get("notes")),
            }
        )
    if not brief:
        return ""
    brief.sort(key=lambda p: (p["path_id"], p["title"]))
    return json.dumps(
        {
            "mode": mode,
            "combined_goal": _text(intake.get("combined_goal")),
            "primary_path_id": _text(intake.get("primary_path_id")),
            "paths": brief,
        },
        ensure_ascii=False,
    )


# ========================================
# SOFT-SPLIT CHECK
# ========================================


def tokenize(text: str) -> set[str]:
    return {t for t in _TOKEN_RE.findall((text or "").lower()) if len(t) > 1 and t not in _STOPWORDS}


def jaccard(a: set[str], b: set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def path_file_ids(path: Mapping[str, Any]) -> list[str]:
    return dedupe_strings(str_list_from_any(path.get("core_file_ids")) + str_list_from_any(path.get("support_file_ids")))


def path_tokens(path: Mapping[str, Any], intents_by_id: Mapping[str, Mapping[str, Any]]) -> set[str]:
    """Tokens over the path title and goal plus its files' names, aims and topics."""
    parts = [_text(path.get("title")), _text(path.get("goal"))]
    for fid in path_file_ids(path):
        intent = intents_by_id.get(fid) or {}
        parts.append(_text(intent.get("original_name")))
        parts.append(_text(intent.get("aim")))
        parts.extend(str_list_from_any(intent.get("topics")))
    return tokenize(" ".join(parts))


def has_weak_notes(paths: Sequence[Mapping[str, Any]]) -> bool:
    for p in paths:
        notes = _text(p.get("notes")).lower()
        if any(word in notes for word in UNCERTAIN_WORDS):
            return True
    return min_path_confidence(paths) < WEAK_CONFIDENCE


def min_path_confidence(paths: Sequence[Mapping[str, Any]]) -> float:
    return min((float_from_any(p.get("confidence"), 0.0) for p in paths), default=0.0)


def split_looks_soft(
    max_jaccard: float,
    min_confidence: float,
    max_cosine: float = 0.0,
    max_pair_score: float = 0.0,
    weak_notes: bool = False,
) -> bool:
    return (
        max_jaccard >= JACCARD_STRONG
        or (max_jaccard >= JACCARD_WEAK and min_confidence < LOW_CONFIDENCE_WITH_WEAK_JACCARD)
        or max_cosine >= COSINE_STRONG
        or max_pair_score >= PAIR_SCORE_STRONG
        or weak_notes
    )


def add_structure_question(intake: dict[str, Any]) -> None:
    """Append the grouping confirmation question once and flag the intake."""
    questions = [q for q in list_from_any(intake.get("clarifying_questions")) if isinstance(q, dict)]
    if not any(_text(q.get("id")) == STRUCTURE_QUESTION_ID for q in questions):
        questions.append(
            {
                "id": STRUCTURE_QUESTION_ID,
                "question": (
                    "Should these materials stay as separate paths, or would you rather learn them "
                    "together as one combined path?"
                ),
                "reason": "The proposed paths overlap enough that the split may not be what you want.",
            }
        )
    intake["clarifying_questions"] = questions
    intake["needs_clarification"] = True
