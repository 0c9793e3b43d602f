"""
Deterministic derivations over chunk signals.

Everything here is a pure function of already-loaded rows: fallback intents and
signals, chunk batching, set-level coverage, file-to-file edges, chunk-to-chunk
links, set-position scores and compound weights. Rows returned for persistence
are dicts keyed by column name so they can go straight into ``upsert_rows``.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any
from uuid import UUID

from src.core.coerce import (
    clamp01,
    dedupe_strings,
    dict_from_any,
    float_from_any,
    int_from_any,
    str_list_from_any,
)

TRAJECTORY_SLOTS = ("establishes", "reinforces", "builds_on", "points_toward")

# trajectory slot -> coverage type, strongest first
COVERAGE_PRECEDENCE = (
    ("establishes", "introduces"),
    ("reinforces", "reinforces"),
    ("builds_on", "assumes"),
    ("points_toward", "mentions"),
)

SIGNATURE_SEED_SCORE = 0.35
DEPTH_THOROUGH = 0.75
DEPTH_MODERATE = 0.45
MIN_EDGE_STRENGTH = 0.18
MAX_EDGE_BRIDGES = 8
DEFAULT_CROSS_SET_RELEVANCE = 0.5
DEFAULT_ALIGNMENT = 0.5

FALLBACK_INTENT_NOTE = "fallback_intent"
FALLBACK_SIGNAL_NOTE = "fallback_signal"

CHUNK_META_KEYS = {
    "role": "signal_role",
    "signal_strength": "signal_strength",
    "floor_signal": "signal_floor",
    "intent_alignment_score": "intent_alignment_score",
    "novelty_score": "signal_novelty",
    "density_score": "signal_density",
    "complexity_score": "signal_complexity",
    "load_bearing_score": "signal_load_bearing",
    "trajectory": "signal_trajectory",
}


# ========================================
# INTENTS
# ========================================


def intent_lists(intent: Any) -> tuple[list[str], list[str], list[str]]:
    if intent is None:
        return [], [], []
    return (
        str_list_from_any(getattr(intent, "destination_concepts", None)),
        str_list_from_any(getattr(intent, "prerequisite_concepts", None)),
        str_list_from_any(getattr(intent, "assumed_knowledge", None)),
    )


def has_fallback_note(meta: Any, note: str = FALLBACK_INTENT_NOTE) -> bool:
    notes = str_list_from_any(dict_from_any(meta).get("notes"))
    return any(n.strip().lower() == note for n in notes)


def intent_needs_rebuild(intent: Any) -> bool:
    """True when the intent is missing, a fallback placeholder, or entirely empty."""
    if intent is None:
        return True
    if has_fallback_note(getattr(intent, "meta", None)):
        return True
    if (getattr(intent, "core_thread", "") or "").strip():
        return False
    return not any(intent_lists(intent))


def fallback_intent_row(file: Any, signature: Any = None) -> dict[str, Any]:
    """Placeholder intent derived from the signature row or dict (or just the file name)."""
    topics: list[str] = []
    concepts: list[str] = []
    summary = ""
    if signature is not None:
        get = signature.get if isinstance(signature, Mapping) else lambda k: getattr(signature, k, None)
        topics = dedupe_strings(str_list_from_any(get("topics")))
        concepts = dedupe_strings(str_list_from_any(get("concept_keys")))
        summary = (get("summary_md") or "").strip()
    core = next((s for s in (summary, ", ".join(topics), file.original_name or "") if s.strip()), "")
    return {
        "material_file_id": file.id,
        "material_set_id": file.material_set_id,
        "from_state": "basic familiarity with the topic",
        "to_state": "working understanding of the material",
        "core_thread": core.strip(),
        "destination_concepts": concepts,
        "prerequisite_concepts": [],
        "assumed_knowledge": [],
        "metadata": {"notes": [FALLBACK_INTENT_NOTE]},
    }


def intent_row_from_llm(file: Any, obj: Mapping[str, Any], source: str) -> dict[str, Any] | None:
    """Intent row from an LLM reply, or None when every intent field is empty."""
    row = {
        "material_file_id": file.id,
        "material_set_id": file.material_set_id,
        "from_state": str(obj.get("from_state") or "").strip(),
        "to_state": str(obj.get("to_state") or "").strip(),
        "core_thread": str(obj.get("core_thread") or "").strip(),
        "destination_concepts": dedupe_strings(str_list_from_any(obj.get("destination_concepts"))),
        "prerequisite_concepts": dedupe_strings(str_list_from_any(obj.get("prerequisite_concepts"))),
        "assumed_knowledge": dedupe_strings(str_list_from_any(obj.get("assumed_knowledge"))),
        "metadata": {"notes": dedupe_strings(str_list_from_any(obj.get("notes"))), "source": source},
    }
    fields = ("from_state", "to_state", "core_thread", "destination_concepts", "prerequisite_concepts", "assumed_knowledge")
    if not any(row[f] for f in fields):
        return None
    return row


def intent_json(intent: Any) -> dict[str, Any]:
    """The intent fields sent to prompts; accepts ORM rows or row dicts."""
    get = intent.get if isinstance(intent, Mapping) else lambda k: getattr(intent, k, None)
    return {
        "from_state": get("from_state") or "",
        "to_state": get("to_state") or "",
        "core_thread": get("core_thread") or "",
        "destination_concepts": str_list_from_any(get("destination_concepts")),
        "prerequisite_concepts": str_list_from_any(get("prerequisite_concepts")),
        "assumed_knowledge": str_list_from_any(get("assumed_knowledge")),
    }


def estimate_intent_alignment(intent: Any, excerpt: str) -> float:
    """
    Substring heuristic used when the LLM cannot score a chunk.

    Starts at 0.5 (0.4 for empty text), +0.2 when the core thread occurs in the
    text, and +0.1 plus 0.05 per destination/prerequisite key found.
    """
    if intent is None:
        return DEFAULT_ALIGNMENT
    text = (excerpt or "").strip().lower()
    if not text:
        return 0.4
    data = intent_json(intent)
    score = DEFAULT_ALIGNMENT
    core = data["core_thread"].strip().lower()
    if core and core in text:
        score += 0.2
    hits = 0
    for key in data["destination_concepts"] + data["prerequisite_concepts"]:
        key = key.strip().lower()
        if key and key in text:
            hits += 1
    if hits > 0:
        score += 0.1 + 0.05 * hits
    return clamp01(score)


# ========================================
# CHUNK SIGNALS
# ========================================


@dataclass
class ChunkSignalInput:
    chunk_id: str
    section_path: str
    page: int
    excerpt: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def chunk_page(chunk: Any) -> int | None:
    if chunk.page is not None:
        return chunk.page
    meta = dict_from_any(chunk.meta)
    if "page" in meta:
        page = int_from_any(meta["page"], -1)
        if page >= 0:
            return page
    return None


def chunk_start_sec(chunk: Any) -> float | None:
    if chunk.start_sec is not None:
        return chunk.start_sec
    meta = dict_from_any(chunk.meta)
    if "start_sec" in meta:
        sec = float_from_any(meta["start_sec"], -1.0)
        if sec >= 0:
            return sec
    return None


@dataclass
class _SectionRange:
    label: str
    depth: int
    start_page: int | None
    end_page: int | None
    start_sec: float | None
    end_sec: float | None

    def includes_page(self, page: int) -> bool:
        if self.start_page is None and self.end_page is None:
            return False
        if self.start_page is not None and page < self.start_page:
            return False
        return not (self.end_page is not None and page > self.end_page)

    def includes_sec(self, sec: float) -> bool:
        if self.start_sec is None and self.end_sec is None:
            return False
        if self.start_sec is not None and sec < self.start_sec:
            return False
        return not (self.end_sec is not None and sec > self.end_sec)


def section_path_by_chunk(chunks: Sequence[Any], sections: Sequence[Any]) -> dict[UUID, str]:
    """Map each chunk to the deepest section whose page or time range contains it."""
    ranges = []
    for s in sections:
        label = (s.path or "").strip() or (s.title or "").strip()
        if not label:
            continue
        ranges.append(
            _SectionRange(
                label=label,
                depth=len(label.split(">")),
                start_page=s.start_page,
                end_page=s.end_page,
                start_sec=s.start_sec,
                end_sec=s.end_sec,
            )
        )
    out: dict[UUID, str] = {}
    for chunk in chunks:
        page = chunk_page(chunk)
        sec = chunk_start_sec(chunk)
        best, best_depth = "", -1
        for r in ranges:
            if page is not None:
                if not r.includes_page(page):
                    continue
            elif sec is not None and not r.includes_sec(sec):
                continue
            if r.depth > best_depth:
                best, best_depth = r.label, r.depth
        if best:
            out[chunk.id] = best
    return out


def build_chunk_batches(
    chunks: Sequence[Any],
    section_paths: Mapping[UUID, str],
    existing: set[UUID],
    batch_size: int,
    excerpt_chars: int,
    max_chunks: int = 0,
) -> list[list[ChunkSignalInput]]:
    """Split unsignalled, non-empty chunks into LLM batches."""
    batch_size = max(1, batch_size)
    out: list[list[ChunkSignalInput]] = []
    batch: list[ChunkSignalInput] = []
    count = 0
    for chunk in chunks:
        if chunk.id in existing:
            continue
        if max_chunks > 0 and count >= max_chunks:
            break
        excerpt = (chunk.text or "").strip()
        if not excerpt:
            continue
        if excerpt_chars > 0 and len(excerpt) > excerpt_chars:
            excerpt = excerpt[:excerpt_chars] + "..."
        batch.append(
            ChunkSignalInput(
                chunk_id=str(chunk.id),
                section_path=section_paths.get(chunk.id, ""),
                page=chunk_page(chunk) or 0,
                excerpt=excerpt,
            )
        )
        if len(batch) >= batch_size:
            out.append(batch)
            batch = []
        count += 1
    if batch:
        out.append(batch)
    return out


def parse_trajectory(value: Any) -> dict[str, list[str]]:
    raw = dict_from_any(value)
    return {slot: dedupe_strings(str_list_from_any(raw.get(slot))) for slot in TRAJECTORY_SLOTS}


def trajectory_keys(value: Any) -> list[str]:
    """Lowercased concept keys across all four slots, first occurrence kept."""
    traj = parse_trajectory(value)
    return dedupe_strings(k.lower() for slot in TRAJECTORY_SLOTS for k in traj[slot])


def _parse_uuid(value: Any) -> UUID | None:
    try:
        parsed = UUID(str(value).strip())
    except (TypeError, ValueError):
        return None
    return None if parsed.int == 0 else parsed


def chunk_signal_rows_from_llm(
    file: Any,
    obj: Mapping[str, Any],
    batch: Sequence[ChunkSignalInput] | None = None,
) -> list[dict[str, Any]]:
    """
    Signal rows for the items the LLM returned.

    With ``batch`` given, items for chunks outside the batch are dropped. The
    first item per chunk wins.
    """
    allowed = None if batch is None else {_parse_uuid(b.chunk_id) for b in batch} - {None}
    seen: set[UUID] = set()
    rows = []
    for item in obj.get("items") or []:
        if not isinstance(item, Mapping):
            continue
        chunk_id = _parse_uuid(item.get("chunk_id"))
        if chunk_id is None or chunk_id in seen:
            continue
        if allowed is not None and chunk_id not in allowed:
            continue
        seen.add(chunk_id)
        rows.append(
            {
                "material_chunk_id": chunk_id,
                "material_file_id": file.id,
                "material_set_id": file.material_set_id,
                "role": str(item.get("role") or "").strip(),
                "signal_strength": clamp01(float_from_any(item.get("signal_strength"), 0.5)),
                "floor_signal": clamp01(float_from_any(item.get("floor_signal"), 0.2)),
                "intent_alignment_score": clamp01(float_from_any(item.get("intent_alignment_score"), 0.5)),
                "novelty_score": clamp01(float_from_any(item.get("novelty_score"), 0.4)),
                "density_score": clamp01(float_from_any(item.get("density_score"), 0.4)),
                "complexity_score": clamp01(float_from_any(item.get("complexity_score"), 0.4)),
                "load_bearing_score": clamp01(float_from_any(item.get("load_bearing_score"), 0.4)),
                "trajectory": parse_trajectory(item.get("trajectory")),
                "metadata": {"notes": dedupe_strings(str_list_from_any(item.get("notes")))},
            }
        )
    return rows


def fallback_chunk_signal_rows(file: Any, intent: Any, batch: Sequence[ChunkSignalInput]) -> list[dict[str, Any]]:
    rows = []
    for item in batch:
        chunk_id = _parse_uuid(item.chunk_id)
        if chunk_id is None:
            continue
        rows.append(
            {
                "material_chunk_id": chunk_id,
                "material_file_id": file.id,
                "material_set_id": file.material_set_id,
                "role": "explanation",
                "signal_strength": 0.5,
                "floor_signal": 0.25,
                "intent_alignment_score": estimate_intent_alignment(intent, item.excerpt),
                "novelty_score": 0.4,
                "density_score": 0.4,
                "complexity_score": 0.4,
                "load_bearing_score": 0.4,
                "trajectory": {slot: [] for slot in TRAJECTORY_SLOTS},
                "metadata": {"notes": [FALLBACK_SIGNAL_NOTE]},
            }
        )
    return rows


def chunk_metadata_updates(row: Mapping[str, Any]) -> dict[str, Any]:
    """Signal fields mirrored into the chunk's own metadata."""
    return {meta_key: row[col] for col, meta_key in CHUNK_META_KEYS.items()}


def dedupe_max(
    rows: Iterable[dict[str, Any]],
    key: Callable[[dict[str, Any]], Any],
    score_field: str,
) -> list[dict[str, Any]]:
    """Keep one row per key (the one with the highest ``score_field``), first-seen order."""
    best: dict[Any, dict[str, Any]] = {}
    for row in rows:
        k = key(row)
        current = best.get(k)
        if current is None or float(row.get(score_field) or 0.0) > float(current.get(score_field) or 0.0):
            best[k] = row
    return list(best.values())


# ========================================
# SET COVERAGE
# ========================================


@dataclass
class FileConceptStat:
    """Concept keys a file touches, per trajectory slot (max score per key)."""

    slots: dict[str, dict[str, float]] = field(
        default_factory=lambda: {slot: {} for slot in TRAJECTORY_SLOTS}
    )

    def add(self, slot: str, key: str, score: float) -> None:
        bucket = self.slots[slot]
        if score > bucket.get(key, -1.0):
            bucket[key] = score

    def keys(self, slot: str) -> set[str]:
        return set(self.slots[slot])


@dataclass
class _ConceptAggregate:
    score_sum: float = 0.0
    score_count: int = 0
    file_ids: set[str] = field(default_factory=set)
    slots: set[str] = field(default_factory=set)


def coverage_type_for(slots: set[str]) -> str:
    for slot, coverage_type in COVERAGE_PRECEDENCE:
        if slot in slots:
            return coverage_type
    return "mentions"


def depth_for(score: float) -> str:
    if score >= DEPTH_THOROUGH:
        return "thorough"
    if score >= DEPTH_MODERATE:
        return "moderate"
    return "surface"


@dataclass
class CoverageResult:
    rows: list[dict[str, Any]]
    weights: dict[str, float]
    file_stats: dict[str, FileConceptStat]


def build_set_coverage(
    material_set_id: UUID,
    path_id: UUID | None,
    signals: Sequence[Any],
    signatures: Mapping[Any, Any],
    concepts_by_key: Mapping[str, Any],
) -> CoverageResult:
    """
    Aggregate chunk trajectories (plus weak signature seeds) into set coverage.

    Returns coverage rows sorted by concept key, a ``{key: score}`` weight map
    and per-file slot stats used for edge derivation.
    """
    aggregates: dict[str, _ConceptAggregate] = {}
    file_stats: dict[str, FileConceptStat] = {}

    def record(file_id: str, slot: str, key: str, score: float) -> None:
        agg = aggregates.setdefault(key, _ConceptAggregate())
        agg.score_sum += score
        agg.score_count += 1
        agg.file_ids.add(file_id)
        agg.slots.add(slot)
        file_stats.setdefault(file_id, FileConceptStat()).add(slot, key, score)

    for sig in signals:
        file_id = str(sig.material_file_id)
        score = clamp01(float_from_any(sig.signal_strength, 0.0))
        traj = parse_trajectory(sig.trajectory)
        for slot in TRAJECTORY_SLOTS:
            for key in dedupe_strings(k.lower() for k in traj[slot]):
                record(file_id, slot, key, score)

    for file_id, signature in signatures.items():
        if signature is None:
            continue
        for key in dedupe_strings(k.lower() for k in str_list_from_any(signature.concept_keys)):
            record(str(file_id), "points_toward", key, SIGNATURE_SEED_SCORE)

    rows: list[dict[str, Any]] = []
    weights: dict[str, float] = {}
    for key in sorted(aggregates):
        agg = aggregates[key]
        score = clamp01(agg.score_sum / agg.score_count) if agg.score_count else 0.0
        concept = concepts_by_key.get(key)
        canonical_id = None
        if concept is not None:
            canonical_id = concept.canonical_concept_id or concept.id
        rows.append(
            {
                "material_set_id": material_set_id,
                "path_id": path_id,
                "concept_key": key,
                "canonical_concept_id": canonical_id,
                "coverage_type": coverage_type_for(agg.slots),
                "depth": depth_for(score),
                "score": score,
                "source_material_file_ids": sorted(agg.file_ids),
                "metadata": {"score_count": agg.score_count},
            }
        )
        weights[key] = score
    return CoverageResult(rows=rows, weights=weights, file_stats=file_stats)


# ========================================
# FILE EDGES & CHUNK LINKS
# ========================================


def _overlap(a: set[str], b: set[str]) -> list[str]:
    return sorted(a & b)


def build_material_edges(material_set_id: UUID, file_stats: Mapping[str, FileConceptStat]) -> list[dict[str, Any]]:
    """
    One best edge per ordered file pair from trajectory overlaps.

    Candidates are scored as ``|overlap| / |B.slot|`` in a fixed order and the
    first strictly greater score wins; edges under 0.18 are dropped.
    """
    file_ids = sorted(file_stats)
    out: list[dict[str, Any]] = []
    for a_id in file_ids:
        a = file_stats[a_id]
        for b_id in file_ids:
            if a_id == b_id:
                continue
            b = file_stats[b_id]
            candidates = (
                ("prerequisite", a.keys("establishes"), b.keys("builds_on")),
                ("reinforces", a.keys("establishes"), b.keys("reinforces")),
                ("extends", a.keys("points_toward"), b.keys("establishes")),
                ("alternative", a.keys("establishes"), b.keys("establishes")),
            )
            best_type, best_strength, best_bridge = "", 0.0, []
            for edge_type, left, right in candidates:
                if not right:
                    continue
                bridge = _overlap(left, right)
                strength = len(bridge) / len(right)
                if strength > best_strength:
                    best_type, best_strength, best_bridge = edge_type, strength, bridge
            if not best_type or best_strength < MIN_EDGE_STRENGTH:
                continue
            out.append(
                {
                    "material_set_id": material_set_id,
                    "from_material_file_id": UUID(a_id),
                    "to_material_file_id": UUID(b_id),
                    "edge_type": best_type,
                    "strength": clamp01(best_strength),
                    "bridging_concepts": best_bridge[:MAX_EDGE_BRIDGES],
                    "metadata": {"source": "signal_overlap"},
                }
            )
    return dedupe_max(
        out,
        lambda r: (r["from_material_file_id"], r["to_material_file_id"], r["edge_type"]),
        "strength",
    )


def build_chunk_links(
    material_set_id: UUID,
    signals: Sequence[Any],
    max_per_concept: int,
    max_links: int,
) -> list[dict[str, Any]]:
    """Pairwise links between the strongest chunks sharing a concept key."""
    buckets: dict[str, list[Any]] = {}
    for sig in signals:
        for key in trajectory_keys(sig.trajectory):
            buckets.setdefault(key, []).append(sig)

    links: list[dict[str, Any]] = []
    for key in sorted(buckets):
        if max_links > 0 and len(links) >= max_links:
            break
        seen: set[Any] = set()
        members = []
        for sig in buckets[key]:
            if sig.material_chunk_id in seen:
                continue
            seen.add(sig.material_chunk_id)
            members.append(sig)
        members.sort(key=lambda s: (-float(s.signal_strength or 0.0), str(s.material_chunk_id)))
        if max_per_concept > 0:
            members = members[:max_per_concept]
        for i, a in enumerate(members):
            for b in members[i + 1 :]:
                if max_links > 0 and len(links) >= max_links:
                    break
                same_role = (a.role or "").strip().lower() == (b.role or "").strip().lower()
                links.append(
                    {
                        "material_set_id": material_set_id,
                        "from_material_chunk_id": a.material_chunk_id,
                        "to_material_chunk_id": b.material_chunk_id,
                        "relation": "redundant" if same_role else "reinforces",
                        "strength": clamp01((float(a.signal_strength or 0.0) + float(b.signal_strength or 0.0)) / 2),
                        "metadata": {"source": "concept_overlap", "concept_key": key},
                    }
                )
    return dedupe_max(links, lambda r: (r["from_material_chunk_id"], r["to_material_chunk_id"]), "strength")


# ========================================
# SET POSITION & COMPOUND WEIGHT
# ========================================


@dataclass
class SetPositionContext:
    spine: set[str] = field(default_factory=set)
    satellite: set[str] = field(default_factory=set)
    core_thread: str = ""
    gaps: set[str] = field(default_factory=set)
    redundancy: str = ""

    @classmethod
    def from_intent(cls, intent: Any) -> SetPositionContext:
        if intent is None:
            return cls()
        return cls(
            spine={s.lower() for s in str_list_from_any(intent.spine_material_file_ids)},
            satellite={s.lower() for s in str_list_from_any(intent.satellite_material_file_ids)},
            core_thread=(intent.core_thread or "").strip().lower(),
            gaps={s.lower() for s in str_list_from_any(intent.gaps_concept_keys)},
            redundancy=" ".join(str_list_from_any(intent.redundancy_notes)).lower(),
        )


def set_position_score(file_id: Any, concept_keys: Sequence[str], ctx: SetPositionContext) -> float:
    fid = str(file_id).lower()
    if fid in ctx.spine:
        score = 1.0
    elif fid in ctx.satellite:
        score = 0.6
    else:
        score = 0.8
    keys = [k for k in concept_keys if k]
    if ctx.core_thread and any(k in ctx.core_thread for k in keys):
        score += 0.2
    if ctx.gaps and any(k in ctx.gaps for k in keys):
        score += 0.3
    if ctx.redundancy and any(k in ctx.redundancy for k in keys):
        score -= 0.2
    return clamp01(score)


def cross_set_for_keys(keys: Sequence[str], cross_set_by_key: Mapping[str, float]) -> float:
    best = 0.0
    for key in keys:
        best = max(best, float(cross_set_by_key.get(key, 0.0)))
    return best if best > 0 else DEFAULT_CROSS_SET_RELEVANCE


def compound_weight(strength: float, alignment: float, set_position: float, cross_set: float) -> float:
    return clamp01(clamp01(strength) * clamp01(alignment) * clamp01(set_position) * clamp01(cross_set))


def set_position_updates(signals: Sequence[Any], intent: Any) -> list[dict[str, Any]]:
    ctx = SetPositionContext.from_intent(intent)
    return [
        {
            "id": sig.id,
            "set_position_score": set_position_score(sig.material_file_id, trajectory_keys(sig.trajectory), ctx),
        }
        for sig in signals
    ]


def compound_weight_updates(
    signals: Sequence[Any],
    intent: Any,
    cross_set_by_key: Mapping[str, float],
) -> list[dict[str, Any]]:
    """
    Recompute alignment, set position and compound weight for every signal.

    Non-positive stored alignment falls back to 0.5; non-positive stored set
    position is recomputed from the set intent.
    """
    ctx = SetPositionContext.from_intent(intent)
    out = []
    for sig in signals:
        keys = trajectory_keys(sig.trajectory)
        alignment = float(sig.intent_alignment_score or 0.0)
        if alignment <= 0:
            alignment = DEFAULT_ALIGNMENT
        set_pos = float(sig.set_position_score or 0.0)
        if set_pos <= 0:
            set_pos = set_position_score(sig.material_file_id, keys, ctx)
        cross = cross_set_for_keys(keys, cross_set_by_key)
        out.append(
            {
                "id": sig.id,
                "intent_alignment_score": clamp01(alignment),
                "set_position_score": clamp01(set_pos),
                "compound_weight": compound_weight(float(sig.signal_strength or 0.0), alignment, set_pos, cross),
            }
        )
    return out


def compound_weights_by_key(signals: Sequence[Any], max_rows: int = 2000) -> dict[str, float]:
    """Highest compound weight per concept key over the top ``max_rows`` signals."""
    ranked = sorted(signals, key=lambda s: float(s.compound_weight or 0.0), reverse=True)
    if max_rows > 0:
        ranked = ranked[:max_rows]
    if not any(float(s.compound_weight or 0.0) > 0 for s in ranked):
        return {}
    out: dict[str, float] = {}
    for sig in ranked:
        weight = float(sig.compound_weight or 0.0)
        for key in trajectory_keys(sig.trajectory):
            if weight > out.get(key, 0.0):
                out[key] = weight
    return out
