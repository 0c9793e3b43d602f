"""
File Signature Builder.

Per file: sample stratified excerpts, ask the LLM for a structured signature
(summary, topics, concept keys, outline, intent), embed the summary, flatten the
outline into sections with embeddings, and persist signature + intent +
sections in one transaction. Files whose stored signature matches the current
fingerprint are skipped; a whole-set artifact cache short-circuits reruns.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import asdict, dataclass, field
from typing import Any

from loguru import logger

from src.core.coerce import (
    dedupe_strings,
    dict_from_any,
    float_from_any,
    str_from_any,
    str_list_from_any,
)
from src.core.concurrency import bounded_gather
from src.core.exceptions import UpstreamDataError
from src.integrations.vector_store import VectorRecord
from src.semantic.embedding_service import EmbeddingService

from .adaptive_params import (
    AdaptiveTrace,
    adaptive_enabled_for_stage,
    adjust_excerpt_chars,
    adjust_min_text_chars,
    clamp_int_ceiling,
    round_half_up,
    signals_from_materials,
)
from .artifact_cache import ArtifactCache, ArtifactKey, compute_artifact_hash, env_snapshot, files_fingerprint
from .prompts import file_signature_prompt
from .signal_math import fallback_intent_row, intent_needs_rebuild, intent_row_from_llm
from .stage import BuildDeps, StageInput, require_ids
from .text_signals import (
    build_outline_hint,
    build_quality_signals,
    extract_citations,
    file_fingerprint,
    flatten_outline_sections,
    stratified_excerpts,
)

STAGE = "file_signature_build"
SIGNATURE_VERSION = 2
DEFAULT_OUTLINE_CONFIDENCE = 0.4


@dataclass
class FileSignatureOutput:
    files_total: int = 0
    files_processed: int = 0
    signatures_upserted: int = 0
    sections_upserted: int = 0
    signatures_skipped: int = 0
    intents_upserted: int = 0
    intents_skipped: int = 0
    cache_hit: bool = False
    adaptive: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class _Knobs:
    per_file: int
    max_chars: int
    max_total: int
    max_sections: int
    concurrency: int
    min_text_chars: int
    section_batch: int
    section_concurrency: int


def _resolve_knobs(deps: BuildDeps, files, chunks_by_file, section_count: int) -> tuple[_Knobs, AdaptiveTrace]:
    cfg = deps.settings.get_file_signature_config()
    enabled = adaptive_enabled_for_stage(STAGE, deps.settings)
    signals = signals_from_materials(files, chunks_by_file, section_count=section_count)
    trace = AdaptiveTrace(stage=STAGE, enabled=enabled, signals=signals)

    per_file_ceiling = cfg["excerpts_per_file"] if cfg["excerpts_per_file"] > 0 else 10
    max_chars_ceiling = cfg["excerpt_max_chars"] if cfg["excerpt_max_chars"] > 0 else 800
    max_total_ceiling = cfg["excerpt_max_total_chars"] if cfg["excerpt_max_total_chars"] > 0 else 12000
    max_sections_ceiling = cfg["max_sections"] if cfg["max_sections"] > 0 else 60
    sections_basis = signals.section_count or signals.page_count

    per_file = trace.add(
        "FILE_SIGNATURE_EXCERPTS_PER_FILE",
        clamp_int_ceiling(round_half_up(signals.avg_pages_per_file / 8.0), 2, per_file_ceiling),
        per_file_ceiling,
    )
    max_chars = trace.add(
        "FILE_SIGNATURE_EXCERPT_MAX_CHARS",
        clamp_int_ceiling(adjust_excerpt_chars(max_chars_ceiling, signals.content_type), 200, max_chars_ceiling),
        max_chars_ceiling,
    )
    max_total = trace.add(
        "FILE_SIGNATURE_EXCERPT_MAX_TOTAL_CHARS",
        clamp_int_ceiling(round_half_up(signals.page_count * 200), 6000, max_total_ceiling),
        max_total_ceiling,
    )
    max_sections = trace.add(
        "FILE_SIGNATURE_MAX_SECTIONS",
        clamp_int_ceiling(round_half_up(sections_basis * 0.8), 20, max_sections_ceiling),
        max_sections_ceiling,
    )
    concurrency = max(1, cfg["concurrency"])
    trace.add("FILE_SIGNATURE_CONCURRENCY", concurrency, concurrency)
    min_text_base = max(0, cfg["min_text_chars"])
    min_text = trace.add(
        "FILE_SIGNATURE_MIN_TEXT_CHARS",
        clamp_int_ceiling(adjust_min_text_chars(min_text_base, signals.content_type), 0, 0),
        min_text_base,
    )
    knobs = _Knobs(
        per_file=per_file,
        max_chars=max_chars,
        max_total=max_total,
        max_sections=max_sections,
        concurrency=concurrency,
        min_text_chars=min_text,
        section_batch=cfg["section_embed_batch_size"] if cfg["section_embed_batch_size"] > 0 else 64,
        section_concurrency=max(1, cfg["section_embed_concurrency"]),
    )
    if enabled:
        logger.info("{}: adaptive params {}", STAGE, trace.to_dict()["params"])
    return knobs, trace


def _is_fresh(signature, fingerprint: str) -> bool:
    return (
        signature is not None
        and (signature.fingerprint or "").strip() == fingerprint
        and (signature.version or 0) >= SIGNATURE_VERSION
    )


def _max_updated(rows) -> Any:
    stamps = [r.updated_at for r in rows if r is not None and r.updated_at is not None]
    return max(stamps) if stamps else None


async def run_file_signature(deps: BuildDeps, inp: StageInput) -> FileSignatureOutput:
    """
    Build or refresh signatures, intents and outline sections for every file in a set.

    Raises:
        ConfigurationError: missing collaborators or ids
        UpstreamDataError: the set has no files
    """
    deps.require(STAGE, "store", "llm")
    require_ids(STAGE, owner_user_id=inp.owner_user_id, material_set_id=inp.material_set_id, saga_id=inp.saga_id)
    out = FileSignatureOutput()

    async with deps.store.transaction() as repos:
        files = await repos.materials.list_files(inp.material_set_id)
        out.files_total = len(files)
        if not files:
            raise UpstreamDataError("no files for set", stage=STAGE)
        file_ids = [f.id for f in files]
        chunks_by_file = await repos.materials.list_chunks(file_ids)
        existing = await repos.materials.get_signatures(file_ids)
        intents = await repos.materials.get_intents(file_ids)
        sections = await repos.materials.list_sections(file_ids)

    fingerprints = {f.id: file_fingerprint(f, chunks_by_file.get(f.id, [])) for f in files}

    # Cache
    cache = ArtifactCache(deps.store, deps.settings)
    key = ArtifactKey(inp.owner_user_id, inp.material_set_id, None, STAGE)
    all_sig_fresh = all(_is_fresh(existing.get(f.id), fingerprints[f.id]) for f in files)
    all_intent_fresh = all(not intent_needs_rebuild(intents.get(f.id)) for f in files)
    payload = {
        "files": files_fingerprint(files),
        "file_fingerprints": sorted(
            ({"file_id": str(fid), "fingerprint": fp} for fid, fp in fingerprints.items()),
            key=lambda r: r["file_id"],
        ),
        "env": env_snapshot(["FILE_SIGNATURE_", "FILE_INTENT_", "MATERIAL_INTENT_"], ["OPENAI_MODEL"]),
    }
    input_hash = compute_artifact_hash(STAGE, inp.material_set_id, None, payload)
    if cache.enabled and all_sig_fresh and all_intent_fresh:
        if await cache.hit(key, input_hash):
            out.signatures_skipped = out.intents_skipped = len(files)
            out.cache_hit = True
            logger.info("{}: cache hit for set {}", STAGE, inp.material_set_id)
            return out
        if cache.seed_existing:
            max_file = _max_updated(files)
            max_sig = _max_updated(existing.values())
            max_intent = _max_updated(intents.values())
            if (max_sig is None or max_file is None or max_sig >= max_file) and (
                max_intent is None or max_file is None or max_intent >= max_file
            ):
                await cache.put(key, input_hash, {"files_total": len(files), "seeded": True})
                out.signatures_skipped = out.intents_skipped = len(files)
                out.cache_hit = True
                logger.info("{}: seeded cache for set {}", STAGE, inp.material_set_id)
                return out

    section_count = sum(len(v) for v in sections.values())
    knobs, trace = _resolve_knobs(deps, files, chunks_by_file, section_count)
    out.adaptive = trace.to_dict()

    lock = asyncio.Lock()
    section_embedder = (
        EmbeddingService(deps.embedder, knobs.section_batch, knobs.section_concurrency) if deps.embedder else None
    )

    async def process(f) -> None:
        chunks = chunks_by_file.get(f.id) or []
        if not chunks:
            return
        fingerprint = fingerprints[f.id]
        if _is_fresh(existing.get(f.id), fingerprint) and intents.get(f.id) is not None:
            async with lock:
                out.signatures_skipped += 1
                out.intents_skipped += 1
            return

        excerpt, _ = stratified_excerpts(chunks, knobs.per_file, knobs.max_chars, 0, knobs.max_total)
        if not excerpt.strip():
            return
        outline_hint = build_outline_hint(f, chunks, knobs.max_sections)
        file_info = {
            "file_id": str(f.id),
            "original_name": (f.original_name or "").strip(),
            "mime_type": (f.mime_type or "").strip(),
            "size_bytes": int(f.size_bytes or 0),
            "extracted_kind": (f.extracted_kind or "").strip(),
        }
        prompt = file_signature_prompt(
            json.dumps(file_info, ensure_ascii=False),
            json.dumps(outline_hint, ensure_ascii=False),
            excerpt,
        )
        obj = await deps.llm.generate_json(prompt.system, prompt.user, prompt.schema_name, prompt.schema)

        summary = str_from_any(obj.get("summary_md")).strip()
        topics = dedupe_strings(str_list_from_any(obj.get("topics")))
        difficulty = str_from_any(obj.get("difficulty")).strip()
        language = str_from_any(obj.get("language")).strip()
        outline = dict_from_any(obj.get("outline_json"))
        quality = build_quality_signals(chunks, excerpt, knobs.min_text_chars)
        llm_quality = dict_from_any(obj.get("quality"))
        if llm_quality:
            quality["llm_quality"] = llm_quality

        embedding: list[float] = []
        doc = summary or " ".join(topics).strip()
        if doc and deps.embedder is not None:
            try:
                vectors = await deps.embedder.embed([doc])
                embedding = vectors[0] if vectors else []
            except Exception as e:  # Intentionally broad - a missing summary vector is tolerated
                logger.warning("{}: summary embedding failed for file {}: {}", STAGE, f.id, e)

        signature = {
            "material_file_id": f.id,
            "material_set_id": inp.material_set_id,
            "version": SIGNATURE_VERSION,
            "language": language,
            "quality": quality,
            "difficulty": difficulty,
            "domain_tags": dedupe_strings(str_list_from_any(obj.get("domain_tags"))),
            "topics": topics,
            "concept_keys": dedupe_strings(str_list_from_any(obj.get("concept_keys"))),
            "summary_md": summary,
            "summary_embedding": embedding,
            "outline_json": outline,
            "outline_confidence": float_from_any(obj.get("outline_confidence"), DEFAULT_OUTLINE_CONFIDENCE),
            "citations": dedupe_strings(str_list_from_any(obj.get("citations")) + extract_citations(excerpt)),
            "fingerprint": fingerprint,
        }

        intent = intent_row_from_llm(f, obj, source=STAGE)
        if intent is None:
            notes = dedupe_strings(str_list_from_any(obj.get("notes")))
            intent = fallback_intent_row(f, signature)
            intent["material_set_id"] = inp.material_set_id
            intent["metadata"] = {"notes": notes + ["fallback_intent"], "source": STAGE}
            logger.warning("{}: empty intent for file {}, using fallback", STAGE, f.id)
        else:
            intent["material_set_id"] = inp.material_set_id

        section_rows = flatten_outline_sections(outline, knobs.max_sections)
        for row in section_rows:
            row["material_file_id"] = f.id
        if section_rows and section_embedder is not None:
            texts = [row["text_excerpt"] or row["title"] for row in section_rows]
            for row, vector in zip(section_rows, await section_embedder.embed_batched(texts)):
                row["embedding"] = vector

        async with deps.store.transaction() as repos:
            await repos.materials.upsert_signature(signature)
            await repos.materials.upsert_intents([intent])
            if section_rows:
                await repos.materials.replace_sections(f.id, section_rows)

        if deps.vectors is not None and embedding:
            record = VectorRecord(
                id=str(f.id),
                values=embedding,
                metadata={
                    "material_set_id": str(inp.material_set_id),
                    "file_id": str(f.id),
                    "topics": topics,
                    "difficulty": difficulty,
                    "language": language,
                },
            )
            try:
                await deps.vectors.upsert(f"file_signatures:material_set:{inp.material_set_id}", [record])
            except Exception as e:  # Intentionally broad - the vector index is best-effort
                logger.warning("{}: vector upsert failed for file {}: {}", STAGE, f.id, e)

        async with lock:
            out.files_processed += 1
            out.signatures_upserted += 1
            out.intents_upserted += 1
            out.sections_upserted += len(section_rows)
        logger.debug("{}: file {} -> {} sections", STAGE, f.id, len(section_rows))

    await bounded_gather(knobs.concurrency, files, process)

    await cache.put(key, input_hash, {"files_total": len(files), "files_processed": out.files_processed})
    logger.info(
        "{}: set {} processed={} skipped={} sections={}",
        STAGE,
        inp.material_set_id,
        out.files_processed,
        out.signatures_skipped,
        out.sections_upserted,
    )
    return out

