"""
Material Signal Builder.

Per file: reuse or derive a material intent, then score every unsignalled chunk
in LLM batches (role, strength, trajectory). Per set: aggregate trajectories
into concept coverage, file edges and chunk links, ask the LLM for a set-level
intent, refresh cross-set aggregates and finally recompute compound weights.

LLM failures at the chunk and intent level degrade to deterministic fallbacks;
set-level and cross-set failures are logged and skipped.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import asdict, dataclass, field
from typing import Any
from uuid import UUID

from loguru import logger

from src.core.coerce import dedupe_strings, str_list_from_any
from src.core.concurrency import bounded_gather
from src.core.exceptions import UpstreamDataError

from .adaptive_params import (
    AdaptiveTrace,
    adaptive_enabled_for_stage,
    adjust_excerpt_chars,
    clamp_int_ceiling,
    round_half_up,
    signals_from_materials,
)
from .cross_set import build_cross_set_signals, load_cross_set_relevance_by_key
from .prompts import chunk_signal_prompt, material_intent_prompt, set_signal_prompt
from .signal_math import (
    build_chunk_batches,
    build_chunk_links,
    build_material_edges,
    build_set_coverage,
    chunk_metadata_updates,
    chunk_signal_rows_from_llm,
    compound_weight_updates,
    compound_weights_by_key,
    dedupe_max,
    fallback_chunk_signal_rows,
    fallback_intent_row,
    intent_json,
    intent_needs_rebuild,
    intent_row_from_llm,
    section_path_by_chunk,
    set_position_updates,
)
from .stage import BuildDeps, StageInput, require_ids
from .text_signals import shorten

__all__ = [
    "MaterialSignalOutput",
    "compound_weights_by_key",
    "load_cross_set_relevance_by_key",
    "load_material_set_signal_context",
    "run_material_signal",
]

STAGE = "material_signal_build"
INTENT_EXCERPT_CHUNKS = 12
INTENT_EXCERPT_CHARS = 600
SET_PROMPT_TOP_CONCEPTS = 24
CONTEXT_TOP_EDGES = 40
NO_EXCERPT = "No extractable excerpt available."


@dataclass
class MaterialSignalOutput:
    files_total: int = 0
    intents_upserted: int = 0
    chunk_signals_upserted: int = 0
    set_coverage_upserted: int = 0
    set_edges_upserted: int = 0
    chunk_links_upserted: int = 0
    global_edges_upserted: int = 0
    global_coverage_upserted: int = 0
    emergent_upserted: int = 0
    skipped: bool = False
    adaptive: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class _Knobs:
    intent_concurrency: int
    concurrency: int
    batch_size: int
    excerpt_chars: int
    max_chunks: int
    metadata_concurrency: int


def _resolve_knobs(deps: BuildDeps, files, chunks_by_file) -> tuple[_Knobs, AdaptiveTrace]:
    cfg = deps.settings.get_material_signal_config()
    enabled = adaptive_enabled_for_stage(STAGE, deps.settings)
    signals = signals_from_materials(files, chunks_by_file)
    trace = AdaptiveTrace(stage=STAGE, enabled=enabled, signals=signals)

    excerpt_ceiling = cfg["chunk_excerpt_chars"] if cfg["chunk_excerpt_chars"] > 0 else 900
    batch_ceiling = cfg["chunk_batch_size"] if cfg["chunk_batch_size"] > 0 else 24
    excerpt_chars = trace.add(
        "MATERIAL_SIGNAL_CHUNK_EXCERPT_CHARS",
        clamp_int_ceiling(adjust_excerpt_chars(excerpt_ceiling, signals.content_type), 200, excerpt_ceiling),
        excerpt_ceiling,
    )
    batch_size = trace.add(
        "MATERIAL_SIGNAL_CHUNK_BATCH_SIZE",
        clamp_int_ceiling(round_half_up(signals.avg_chunks_per_file / 4.0), 8, batch_ceiling),
        batch_ceiling,
    )
    knobs = _Knobs(
        intent_concurrency=max(1, cfg["intent_concurrency"]),
        concurrency=max(1, cfg["concurrency"]),
        batch_size=batch_size,
        excerpt_chars=excerpt_chars,
        max_chunks=max(0, cfg["max_chunks_per_file"]),
        metadata_concurrency=max(1, cfg["metadata_update_concurrency"]),
    )
    if enabled:
        logger.info("{}: adaptive params {}", STAGE, trace.to_dict()["params"])
    return knobs, trace


def _intent_row_from_model(intent) -> dict[str, Any]:
    return {
        "material_file_id": intent.material_file_id,
        "material_set_id": intent.material_set_id,
        "from_state": intent.from_state or "",
        "to_state": intent.to_state or "",
        "core_thread": intent.core_thread or "",
        "destination_concepts": str_list_from_any(intent.destination_concepts),
        "prerequisite_concepts": str_list_from_any(intent.prerequisite_concepts),
        "assumed_knowledge": str_list_from_any(intent.assumed_knowledge),
        "metadata": dict(intent.meta or {}),
    }


def _intent_excerpts(chunks) -> str:
    lines = []
    for c in chunks:
        text = shorten(c.text or "", INTENT_EXCERPT_CHARS)
        if not text:
            continue
        lines.append(text)
        if len(lines) >= INTENT_EXCERPT_CHUNKS:
            break
    return "\n".join(lines) or NO_EXCERPT


def _material_context(f, signature) -> dict[str, Any]:
    ctx: dict[str, Any] = {
        "file_id": str(f.id),
        "original_name": (f.original_name or "").strip(),
        "mime_type": (f.mime_type or "").strip(),
        "size_bytes": int(f.size_bytes or 0),
    }
    if signature is not None:
        ctx.update(
            summary_md=signature.summary_md or "",
            topics=str_list_from_any(signature.topics),
            concept_keys=str_list_from_any(signature.concept_keys),
            difficulty=signature.difficulty or "",
            domain_tags=str_list_from_any(signature.domain_tags),
        )
    return ctx


async def _build_intent(deps: BuildDeps, f, chunks, signature) -> dict[str, Any]:
    try:
        prompt = material_intent_prompt(
            json.dumps(_material_context(f, signature), ensure_ascii=False),
            _intent_excerpts(chunks),
        )
        obj = await deps.llm.generate_json(prompt.system, prompt.user, prompt.schema_name, prompt.schema)
        row = intent_row_from_llm(f, obj, source=STAGE)
        if row is not None:
            return row
        logger.warning("{}: empty intent for file {}, using fallback", STAGE, f.id)
    except Exception as e:  # Intentionally broad - fallback intent keeps the file in the set
        logger.warning("{}: intent generation failed for file {}: {}", STAGE, f.id, e)
    return fallback_intent_row(f, signature)


async def run_material_signal(deps: BuildDeps, inp: StageInput) -> MaterialSignalOutput:
    """
    Build intents, chunk signals and every set-level derivation for one material set.

    Raises:
        ConfigurationError: missing collaborators or ids
        UpstreamDataError: the set has no files
    """
    cfg = deps.settings.get_material_signal_config()
    if not cfg["enabled"]:
        logger.info("{}: disabled, skipping set {}", STAGE, inp.material_set_id)
        return MaterialSignalOutput(skipped=True)
    deps.require(STAGE, "store", "llm")
    require_ids(STAGE, owner_user_id=inp.owner_user_id, material_set_id=inp.material_set_id, saga_id=inp.saga_id)
    force = bool(cfg["force_rebuild"])
    out = MaterialSignalOutput()

    async with deps.store.transaction() as repos:
        files = await repos.materials.list_files(inp.material_set_id)
        out.files_total = len(files)
        if not files:
            raise UpstreamDataError("no files for set", stage=STAGE)
        file_ids = [f.id for f in files]
        chunks_by_file = await repos.materials.list_chunks(file_ids)
        signatures = await repos.materials.get_signatures(file_ids)
        sections = await repos.materials.list_sections(file_ids)
        existing_intents = {} if force else await repos.materials.get_intents(file_ids)
        existing_signals: set[UUID] = set()
        if not force:
            all_chunk_ids = [c.id for chunks in chunks_by_file.values() for c in chunks]
            existing_signals = await repos.signals.existing_signal_chunk_ids(all_chunk_ids)
        concepts = await repos.materials.list_concepts(inp.path_id) if inp.path_id else []
    concepts_by_key = {(c.key or "").strip().lower(): c for c in concepts if (c.key or "").strip()}

    knobs, trace = _resolve_knobs(deps, files, chunks_by_file)
    out.adaptive = trace.to_dict()

    # Intents
    async def intent_for(f) -> dict[str, Any]:
        existing = existing_intents.get(f.id)
        if not intent_needs_rebuild(existing):
            return _intent_row_from_model(existing)
        return await _build_intent(deps, f, chunks_by_file.get(f.id) or [], signatures.get(f.id))

    intent_rows = await bounded_gather(knobs.intent_concurrency, files, intent_for)
    for row in intent_rows:
        row["material_set_id"] = inp.material_set_id
    intents_by_file = {row["material_file_id"]: row for row in intent_rows}

    # Chunk signals
    jobs = []
    for f in files:
        chunks = chunks_by_file.get(f.id) or []
        paths = section_path_by_chunk(chunks, sections.get(f.id) or [])
        for batch in build_chunk_batches(
            chunks, paths, existing_signals, knobs.batch_size, knobs.excerpt_chars, knobs.max_chunks
        ):
            jobs.append((f, batch))

    lock = asyncio.Lock()
    signal_rows: list[dict[str, Any]] = []
    metadata_updates: list[tuple[UUID, dict[str, Any]]] = []

    async def score(job) -> None:
        f, batch = job
        intent = intents_by_file.get(f.id)
        llm_rows: list[dict[str, Any]] = []
        try:
            prompt = chunk_signal_prompt(
                json.dumps(intent_json(intent) if intent else {}, ensure_ascii=False),
                json.dumps([b.to_dict() for b in batch], ensure_ascii=False),
            )
            obj = await deps.llm.generate_json(prompt.system, prompt.user, prompt.schema_name, prompt.schema)
            llm_rows = chunk_signal_rows_from_llm(f, obj, batch)
        except Exception as e:  # Intentionally broad - fallback signals keep coverage complete
            logger.warning("{}: chunk signal batch failed for file {}: {}", STAGE, f.id, e)
        scored = {r["material_chunk_id"] for r in llm_rows}
        missing = [b for b in batch if UUID(b.chunk_id) not in scored]
        if llm_rows and missing:
            logger.debug("{}: {} chunks of file {} missing from LLM reply", STAGE, len(missing), f.id)
        fallback_rows = fallback_chunk_signal_rows(f, intent, missing)
        async with lock:
            signal_rows.extend(llm_rows)
            signal_rows.extend(fallback_rows)
            metadata_updates.extend((r["material_chunk_id"], chunk_metadata_updates(r)) for r in llm_rows)

    await bounded_gather(knobs.concurrency, jobs, score)
    signal_rows = dedupe_max(signal_rows, lambda r: r["material_chunk_id"], "signal_strength")

    async with deps.store.transaction() as repos:
        out.intents_upserted = await repos.materials.upsert_intents(intent_rows)
        out.chunk_signals_upserted = await repos.signals.upsert_chunk_signals(signal_rows)

    if cfg["write_chunk_metadata"] and metadata_updates:

        async def write_metadata(update) -> None:
            chunk_id, values = update
            try:
                async with deps.store.transaction() as repos:
                    await repos.materials.update_chunk_metadata(chunk_id, values)
            except Exception as e:  # Intentionally broad - chunk metadata mirrors are best-effort
                logger.warning("{}: chunk metadata update failed for {}: {}", STAGE, chunk_id, e)

        await bounded_gather(knobs.metadata_concurrency, metadata_updates, write_metadata)

    await _aggregate_set(deps, inp, files, signatures, concepts_by_key, out)
    logger.info(
        "{}: set {} intents={} signals={} coverage={} edges={} links={}",
        STAGE,
        inp.material_set_id,
        out.intents_upserted,
        out.chunk_signals_upserted,
        out.set_coverage_upserted,
        out.set_edges_upserted,
        out.chunk_links_upserted,
    )
    return out


async def _aggregate_set(deps: BuildDeps, inp: StageInput, files, signatures, concepts_by_key, out) -> None:
    cfg = deps.settings.get_material_signal_config()
    set_id = inp.material_set_id

    async with deps.store.transaction() as repos:
        signals = await repos.signals.list_chunk_signals(set_id)
    coverage = build_set_coverage(set_id, inp.path_id, signals, signatures, concepts_by_key)
    edges = build_material_edges(set_id, coverage.file_stats)
    links = build_chunk_links(set_id, signals, cfg["max_links_per_concept"], cfg["max_chunk_links"])

    async with deps.store.transaction() as repos:
        out.set_coverage_upserted = await repos.signals.upsert_coverage(coverage.rows)
        out.set_edges_upserted = await repos.signals.upsert_edges(edges)
        out.chunk_links_upserted = await repos.signals.upsert_chunk_links(links)

    if inp.path_id and coverage.weights:
        try:
            async with deps.store.transaction() as repos:
                await repos.materials.update_concept_weights(inp.path_id, coverage.weights)
        except Exception as e:  # Intentionally broad - concept weights are advisory
            logger.warning("{}: concept weight update failed for path {}: {}", STAGE, inp.path_id, e)

    if cfg["set_enabled"] and deps.llm is not None:
        try:
            await _upsert_set_intent(deps, set_id, files, coverage.rows, edges)
        except Exception as e:  # Intentionally broad - set intent is an enrichment layer
            logger.warning("{}: set intent failed for set {}: {}", STAGE, set_id, e)

    async with deps.store.transaction() as repos:
        set_intent = await repos.signals.get_set_intent(set_id)
    if set_intent is not None:
        try:
            async with deps.store.transaction() as repos:
                await repos.signals.update_signal_scores(set_position_updates(signals, set_intent))
        except Exception as e:  # Intentionally broad - compound weights recompute set position below
            logger.warning("{}: set position update failed for set {}: {}", STAGE, set_id, e)

    cross_set_by_key: dict[str, float] = {}
    if cfg["global_enabled"]:
        try:
            result = await build_cross_set_signals(deps.store, inp.owner_user_id, deps.llm)
            out.global_edges_upserted = result.set_edges_upserted
            out.global_coverage_upserted = result.global_coverage_upserted
            out.emergent_upserted = result.emergent_upserted
            cross_set_by_key = result.cross_set_by_key
        except Exception as e:  # Intentionally broad - cross-set relevance falls back to stored values
            logger.warning("{}: cross-set build failed for user {}: {}", STAGE, inp.owner_user_id, e)
    if not cross_set_by_key:
        cross_set_by_key = await load_cross_set_relevance_by_key(deps.store, inp.owner_user_id, set_id)

    async with deps.store.transaction() as repos:
        signals = await repos.signals.list_chunk_signals(set_id)
        await repos.signals.update_signal_scores(compound_weight_updates(signals, set_intent, cross_set_by_key))


async def _upsert_set_intent(deps: BuildDeps, set_id: UUID, files, coverage_rows, edges) -> None:
    async with deps.store.transaction() as repos:
        intents = await repos.materials.get_intents([f.id for f in files])
    names = {f.id: (f.original_name or "").strip() for f in files}
    intents_payload = {
        "files": [
            {"file_id": str(fid), "original_name": names.get(fid, ""), **intent_json(intent)}
            for fid, intent in intents.items()
        ]
    }
    top = sorted(coverage_rows, key=lambda r: r["score"], reverse=True)[:SET_PROMPT_TOP_CONCEPTS]
    coverage_payload = {
        "top_concepts": [
            {"concept_key": r["concept_key"], "coverage_type": r["coverage_type"], "depth": r["depth"], "score": r["score"]}
            for r in top
        ]
    }
    edges_payload = {
        "edges": [
            {
                "from_file_id": str(e["from_material_file_id"]),
                "to_file_id": str(e["to_material_file_id"]),
                "relation": e["edge_type"],
                "strength": e["strength"],
                "bridging_concepts": e["bridging_concepts"],
            }
            for e in edges
        ]
    }
    prompt = set_signal_prompt(
        json.dumps({"material_set_id": str(set_id), "file_count": len(files)}),
        json.dumps(intents_payload, ensure_ascii=False),
        json.dumps(coverage_payload, ensure_ascii=False),
        json.dumps(edges_payload, ensure_ascii=False),
    )
    obj = await deps.llm.generate_json(prompt.system, prompt.user, prompt.schema_name, prompt.schema)

    def strings(name: str) -> list[str]:
        return dedupe_strings(str_list_from_any(obj.get(name)))

    row = {
        "material_set_id": set_id,
        "from_state": str(obj.get("from_state") or "").strip(),
        "to_state": str(obj.get("to_state") or "").strip(),
        "core_thread": str(obj.get("core_thread") or "").strip(),
        "spine_material_file_ids": strings("spine_file_ids"),
        "satellite_material_file_ids": strings("satellite_file_ids"),
        "gaps_concept_keys": strings("gaps_concept_keys"),
        "redundancy_notes": strings("redundancy_notes"),
        "conflict_notes": strings("conflict_notes"),
        "metadata": {"edge_hints": obj.get("edge_hints") or []},
    }
    async with deps.store.transaction() as repos:
        await repos.signals.upsert_set_intent(row)


async def load_material_set_signal_context(store, material_set_id: UUID, top_concepts: int = 30) -> dict[str, Any]:
    """
    Persisted set-level signal context for downstream prompts.

    Returns ``intent_json``, ``coverage_json`` and ``edges_json`` strings (empty
    when absent) plus ``weights_by_key`` from chunk compound weights.
    """
    async with store.transaction() as repos:
        intent = await repos.signals.get_set_intent(material_set_id)
        coverage = await repos.signals.list_coverage([material_set_id])
        edges = await repos.signals.list_edges(material_set_id)
        signals = await repos.signals.list_chunk_signals(material_set_id)

    out: dict[str, Any] = {"intent_json": "", "coverage_json": "", "edges_json": "", "weights_by_key": {}}
    if intent is not None:
        out["intent_json"] = json.dumps(
            {
                "from_state": intent.from_state or "",
                "to_state": intent.to_state or "",
                "core_thread": intent.core_thread or "",
                "spine_material_file_ids": str_list_from_any(intent.spine_material_file_ids),
                "satellite_material_file_ids": str_list_from_any(intent.satellite_material_file_ids),
                "gaps_concept_keys": str_list_from_any(intent.gaps_concept_keys),
            },
            ensure_ascii=False,
        )
    if coverage:
        ranked = sorted(coverage, key=lambda c: float(c.score or 0.0), reverse=True)[:top_concepts]
        out["coverage_json"] = json.dumps(
            [
                {"concept_key": c.concept_key, "coverage_type": c.coverage_type, "depth": c.depth, "score": c.score}
                for c in ranked
            ],
            ensure_ascii=False,
        )
    if edges:
        ranked_edges = sorted(edges, key=lambda e: float(e.strength or 0.0), reverse=True)[:CONTEXT_TOP_EDGES]
        out["edges_json"] = json.dumps(
            [
                {
                    "from_file_id": str(e.from_material_file_id),
                    "to_file_id": str(e.to_material_file_id),
                    "edge_type": e.edge_type,
                    "strength": e.strength,
                    "bridging_concepts": str_list_from_any(e.bridging_concepts),
                }
                for e in ranked_edges
            ],
            ensure_ascii=False,
        )
    out["weights_by_key"] = compound_weights_by_key(signals)
    return out
