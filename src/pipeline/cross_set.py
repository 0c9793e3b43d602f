"""
Cross-Set Builder.

Works across every source material set (no parent) owned by a user: global
concept coverage per canonical concept, set-to-set edges from coverage overlaps,
and LLM-proposed emergent concepts and extra set edges. The resulting
``{concept_key: cross_set_relevance}`` map feeds chunk compound weights.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from loguru import logger

from src.core.coerce import clamp01, dedupe_strings, float_from_any, str_list_from_any

from .prompts import cross_set_prompt
from .signal_math import dedupe_max
from .stage import LLM

EXPOSURE_SET_DIVISOR = 5.0
DEPTH_WEIGHT = 0.35
EXPOSURE_WEIGHT = 0.45
BRIDGE_BOOST = 0.20
EMERGENT_BOOST = 0.25
GAP_BOOST = 0.20

PREREQUISITE_MIN_OVERLAP = 0.30
SET_EDGE_MIN_STRENGTH = 0.20
MAX_SET_EDGE_BRIDGES = 10
LLM_SET_EDGE_DEFAULT_STRENGTH = 0.4
TOP_CONCEPTS_PER_SET = 12


@dataclass
class CrossSetResult:
    set_edges_upserted: int = 0
    global_coverage_upserted: int = 0
    emergent_upserted: int = 0
    cross_set_by_key: dict[str, float] = field(default_factory=dict)


def _key(value: Any) -> str:
    return (value or "").strip().lower()


def key_to_canonical(coverage: Sequence[Any]) -> dict[str, UUID]:
    out: dict[str, UUID] = {}
    for c in coverage:
        key = _key(c.concept_key)
        if key and c.canonical_concept_id is not None and c.canonical_concept_id.int != 0:
            out[key] = c.canonical_concept_id
    return out


def build_global_coverage(user_id: UUID, coverage: Sequence[Any]) -> list[dict[str, Any]]:
    """One row per canonical concept: sorted set ids, mean depth, exposure."""
    sets: dict[UUID, set[str]] = {}
    sums: dict[UUID, list[float]] = {}
    for c in coverage:
        cid = c.canonical_concept_id
        if cid is None or cid.int == 0:
            continue
        sets.setdefault(cid, set()).add(str(c.material_set_id))
        acc = sums.setdefault(cid, [0.0, 0.0])
        acc[0] += float(c.score or 0.0)
        acc[1] += 1
    rows = []
    for cid in sorted(sets, key=str):
        total, count = sums[cid]
        set_ids = sorted(sets[cid])
        rows.append(
            {
                "user_id": user_id,
                "global_concept_id": cid,
                "material_set_ids": set_ids,
                "coverage_depth": clamp01(total / count) if count else 0.0,
                "exposure_score": clamp01(len(set_ids) / EXPOSURE_SET_DIVISOR),
                "cross_set_relevance": 0.0,
                "metadata": {"source": "material_signal_build"},
            }
        )
    return rows


def _coverage_keys(rows: Sequence[Any], coverage_type: str) -> set[str]:
    return {_key(c.concept_key) for c in rows if _key(c.coverage_type) == coverage_type and _key(c.concept_key)}


def build_set_edges(
    user_id: UUID,
    set_ids: Sequence[UUID],
    coverage_by_set: Mapping[UUID, Sequence[Any]],
) -> list[dict[str, Any]]:
    """
    Ordered set pairs related by coverage overlap.

    ``prerequisite`` when what A introduces covers at least 30% of what B
    assumes; otherwise ``parallel`` on shared reinforced concepts. Edges under
    0.2 are dropped.
    """
    out = []
    for a in set_ids:
        a_rows = coverage_by_set.get(a, [])
        a_intro = _coverage_keys(a_rows, "introduces")
        a_reinf = _coverage_keys(a_rows, "reinforces")
        for b in set_ids:
            if a == b:
                continue
            b_rows = coverage_by_set.get(b, [])
            b_assume = _coverage_keys(b_rows, "assumes")
            b_reinf = _coverage_keys(b_rows, "reinforces")
            bridge = sorted(a_intro & b_assume)
            strength = len(bridge) / len(b_assume) if b_assume else 0.0
            relation = ""
            if strength >= PREREQUISITE_MIN_OVERLAP:
                relation = "prerequisite"
            else:
                overlap = sorted(a_reinf & b_reinf)
                if overlap:
                    relation = "parallel"
                    bridge = overlap
                    strength = len(overlap) / len(b_reinf)
            if not relation or strength < SET_EDGE_MIN_STRENGTH:
                continue
            out.append(
                {
                    "user_id": user_id,
                    "from_material_set_id": a,
                    "to_material_set_id": b,
                    "relation": relation,
                    "strength": clamp01(strength),
                    "bridging_concept_ids": bridge[:MAX_SET_EDGE_BRIDGES],
                    "metadata": {"source": "coverage_overlap"},
                }
            )
    return out


def _mapped_ids(keys: Any, canonical: Mapping[str, UUID]) -> set[UUID]:
    return {canonical[_key(k)] for k in str_list_from_any(keys) if _key(k) in canonical}


def apply_cross_set_relevance(
    rows: list[dict[str, Any]],
    canonical: Mapping[str, UUID],
    set_intents: Sequence[Any],
    bridging_keys: Sequence[Sequence[str]],
    emergent: Sequence[Any],
) -> dict[str, float]:
    """
    Fill ``cross_set_relevance`` on global rows in place.

    relevance = clamp01(clamp01(0.35 * depth + 0.45 * exposure) + boosts), with
    boosts for bridging concepts, emergent prerequisites and set gaps. Returns
    the relevance per concept key.
    """
    gap_ids: set[UUID] = set()
    for intent in set_intents:
        gap_ids |= _mapped_ids(intent.gaps_concept_keys, canonical)
    bridge_ids: set[UUID] = set()
    for keys in bridging_keys:
        bridge_ids |= _mapped_ids(keys, canonical)
    emergent_ids: set[UUID] = set()
    for concept in emergent:
        emergent_ids |= _mapped_ids(concept.prereq_concept_ids, canonical)

    by_id: dict[UUID, float] = {}
    for row in rows:
        cid = row["global_concept_id"]
        set_count = len(row["material_set_ids"])
        exposure = clamp01(set_count / EXPOSURE_SET_DIVISOR)
        base = clamp01(DEPTH_WEIGHT * row["coverage_depth"] + EXPOSURE_WEIGHT * exposure)
        boost = 0.0
        if cid in bridge_ids:
            boost += BRIDGE_BOOST
        if cid in emergent_ids:
            boost += EMERGENT_BOOST
        if cid in gap_ids:
            boost += GAP_BOOST
        row["cross_set_relevance"] = clamp01(base + boost)
        row["metadata"] = {
            "source": "material_signal_build",
            "bridge": cid in bridge_ids,
            "emergent": cid in emergent_ids,
            "gap": cid in gap_ids,
            "set_count": set_count,
        }
        by_id[cid] = row["cross_set_relevance"]
    return {key: by_id[cid] for key, cid in canonical.items() if cid in by_id}


def build_user_sets_json(
    sets: Sequence[Any],
    intents_by_set: Mapping[UUID, Any],
    coverage_by_set: Mapping[UUID, Sequence[Any]],
) -> str:
    payload = []
    for s in sets:
        intent = intents_by_set.get(s.id)
        top = sorted(coverage_by_set.get(s.id, []), key=lambda c: float(c.score or 0.0), reverse=True)
        payload.append(
            {
                "material_set_id": str(s.id),
                "title": (getattr(s, "title", "") or "").strip(),
                "intent": {
                    "from_state": (intent.from_state or "").strip() if intent else "",
                    "to_state": (intent.to_state or "").strip() if intent else "",
                    "core_thread": (intent.core_thread or "").strip() if intent else "",
                },
                "top_concepts": [
                    {"concept_key": c.concept_key, "coverage_type": c.coverage_type, "score": c.score}
                    for c in top[:TOP_CONCEPTS_PER_SET]
                ],
            }
        )
    return json.dumps({"sets": payload}, ensure_ascii=False)


def _parse_uuid(value: Any) -> UUID | None:
    try:
        parsed = UUID(str(value or "").strip())
    except ValueError:
        return None
    return None if parsed.int == 0 else parsed


def parse_emergent_concepts(obj: Mapping[str, Any], user_id: UUID) -> list[dict[str, Any]]:
    rows = []
    for item in obj.get("emergent_concepts") or []:
        if not isinstance(item, Mapping):
            continue
        key = _key(item.get("key"))
        if not key:
            continue
        rows.append(
            {
                "user_id": user_id,
                "key": key,
                "name": str(item.get("name") or "").strip(),
                "summary": str(item.get("summary") or "").strip(),
                "source_material_set_ids": dedupe_strings(str_list_from_any(item.get("source_set_ids"))),
                "prereq_concept_ids": dedupe_strings(str_list_from_any(item.get("prereq_concept_keys"))),
                "metadata": {"source": "cross_set_signal"},
            }
        )
    return list({r["key"]: r for r in rows}.values())


def parse_llm_set_edges(
    obj: Mapping[str, Any],
    user_id: UUID,
    set_ids: Iterable[UUID] | None = None,
) -> list[dict[str, Any]]:
    """LLM-proposed set edges between known sets; blank relations and self-loops are dropped."""
    known = None if set_ids is None else set(set_ids)
    rows = []
    for item in obj.get("set_edges") or []:
        if not isinstance(item, Mapping):
            continue
        from_id = _parse_uuid(item.get("from_set_id"))
        to_id = _parse_uuid(item.get("to_set_id"))
        if from_id is None or to_id is None or from_id == to_id:
            continue
        if known is not None and (from_id not in known or to_id not in known):
            continue
        relation = str(item.get("relation") or "").strip()
        if not relation:
            continue
        rows.append(
            {
                "user_id": user_id,
                "from_material_set_id": from_id,
                "to_material_set_id": to_id,
                "relation": relation,
                "strength": clamp01(float_from_any(item.get("strength"), LLM_SET_EDGE_DEFAULT_STRENGTH)),
                "bridging_concept_ids": dedupe_strings(str_list_from_any(item.get("bridging_concepts"))),
                "metadata": {"source": "cross_set_signal"},
            }
        )
    return dedupe_max(
        rows,
        lambda r: (r["from_material_set_id"], r["to_material_set_id"], r["relation"]),
        "strength",
    )


async def build_cross_set_signals(store, user_id: UUID, llm: LLM | None = None) -> CrossSetResult:
    """Recompute the user's cross-set aggregates; fewer than two source sets is a no-op."""
    out = CrossSetResult()
    async with store.transaction() as repos:
        sets = await repos.materials.list_source_sets(user_id)
        if len(sets) < 2:
            logger.debug("cross_set: user {} has {} source sets, skipping", user_id, len(sets))
            return out
        set_ids = [s.id for s in sets]
        intents = await repos.signals.list_set_intents(set_ids)
        coverage = await repos.signals.list_coverage(set_ids)
        existing_edges = await repos.cross_set.list_set_edges(user_id)
        emergent = await repos.cross_set.list_emergent_concepts(user_id)

    coverage_by_set: dict[UUID, list[Any]] = {}
    for c in coverage:
        coverage_by_set.setdefault(c.material_set_id, []).append(c)
    canonical = key_to_canonical(coverage)
    global_rows = build_global_coverage(user_id, coverage)
    set_edges = build_set_edges(user_id, set_ids, coverage_by_set)

    if global_rows:
        bridging = [e.bridging_concept_ids for e in existing_edges] + [e["bridging_concept_ids"] for e in set_edges]
        out.cross_set_by_key = apply_cross_set_relevance(global_rows, canonical, intents, bridging, emergent)

    async with store.transaction() as repos:
        out.global_coverage_upserted = await repos.cross_set.upsert_global_coverage(global_rows)
        out.set_edges_upserted = await repos.cross_set.upsert_set_edges(set_edges)

    if llm is None:
        return out
    prompt = cross_set_prompt(build_user_sets_json(sets, {i.material_set_id: i for i in intents}, coverage_by_set))
    try:
        obj = await llm.generate_json(prompt.system, prompt.user, prompt.schema_name, prompt.schema)
        emergent_rows = parse_emergent_concepts(obj, user_id)
        llm_edges = parse_llm_set_edges(obj, user_id, set_ids)
        async with store.transaction() as repos:
            out.emergent_upserted = await repos.cross_set.upsert_emergent_concepts(emergent_rows)
            out.set_edges_upserted += await repos.cross_set.upsert_set_edges(llm_edges)
    except Exception as e:  # Intentionally broad - LLM links are optional enrichment
        logger.warning("cross_set: cross-set signal generation failed for user {}: {}", user_id, e)
    return out


async def load_cross_set_relevance_by_key(store, user_id: UUID, material_set_id: UUID) -> dict[str, float]:
    """Persisted cross-set relevance for the set's concept keys (positive values only)."""
    async with store.transaction() as repos:
        coverage = await repos.signals.list_coverage([material_set_id])
        canonical = key_to_canonical(coverage)
        if not canonical:
            return {}
        rows = await repos.cross_set.list_global_coverage(user_id, sorted(set(canonical.values()), key=str))
    by_id = {r.global_concept_id: float(r.cross_set_relevance or 0.0) for r in rows}
    return {key: by_id[cid] for key, cid in canonical.items() if by_id.get(cid, 0.0) > 0}
