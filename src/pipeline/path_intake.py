"""
Path Intake Coordinator.

Groups a set's files into one or more learning paths with the LLM and, when
allowed to wait, asks the user to confirm the grouping in the chat thread.
The conversation is resumed by re-invoking the stage: state lives in the path
metadata and in tagged chat messages, never in the process.

States per ``(path_id, job_id)``:
    locked        path metadata has ``intake_locked``; the stored intake is returned
    no thread     deterministic fallback intake, confirmed
    proposing     first pass with ``wait_for_user``; questions posted, ``waiting_user``
    waiting       questions posted, no user reply yet
    regenerating  user replied; follow-up pass, confirmed by user, ack posted
    final         first pass without waiting; confirmed, ack posted
"""

from __future__ import annotations

import itertools
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from loguru import logger

from src.core.coerce import (
    bool_from_any,
    dedupe_strings,
    dict_from_any,
    float_from_any,
    list_from_any,
    str_list_from_any,
)
from src.semantic.embedding_service import EmbeddingService

from .intake_messages import (
    KIND_ACK,
    KIND_QUESTIONS,
    KIND_REVIEW,
    append_intake_message,
    assistant_context_since,
    build_workflow_v1,
    format_ack_md,
    format_intake_questions_md,
    format_intake_summary_md,
    latest_questions_message,
    user_answer_after,
    user_context_before,
)
from .intake_normalize import (
    add_structure_question,
    build_fallback_intake,
    build_intake_material_filter,
    has_weak_notes,
    jaccard,
    min_path_confidence,
    normalize_intake_paths,
    path_file_ids,
    path_tokens,
    split_looks_soft,
)
from .prompts import pair_score_prompt, path_intake_prompt
from .stage import BuildDeps, StageInput, require_ids
from .text_signals import is_unextractable, shorten

STAGE = "path_intake"
MESSAGE_WINDOW = 300


@dataclass
class PathIntakeOutput:
    path_id: str = ""
    thread_id: str = ""
    status: str = "succeeded"
    intake: dict[str, Any] = field(default_factory=dict)
    meta: dict[str, Any] = field(default_factory=dict)
    now: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def build_intake_excerpts(files, chunks_by_file, per_file: int, max_chars: int, max_total: int) -> str:
    """A few evenly spaced snippets per file under a ``FILE:`` header, within ``max_total`` chars."""
    if per_file <= 0:
        return ""
    max_chars = max_chars if max_chars > 0 else 520
    max_total = max_total if max_total > 0 else 12000
    out = ""
    for f in files:
        usable = [
            c for c in chunks_by_file.get(f.id) or [] if not is_unextractable(c) and (c.text or "").strip()
        ]
        if not usable:
            continue
        usable.sort(key=lambda c: c.index)
        n = len(usable)
        k = min(per_file, n)
        step = n / k
        header = f"FILE: {(f.original_name or '').strip()} [file_id={f.id}]\n"
        if len(out) + len(header) > max_total:
            break
        out += header
        for i in range(k):
            c = usable[min(max(int(i * step), 0), n - 1)]
            text = shorten(c.text, max_chars)
            if not text:
                continue
            line = f"- [chunk_id={c.id}] {text}\n"
            if len(out) + len(line) > max_total:
                break
            out += line
        out += "\n"
        if len(out) >= max_total:
            break
    return out.strip()


async def _generate_intake(
    deps: BuildDeps,
    files,
    chunks_by_file,
    summary,
    *,
    prefs: Any = None,
    user_context: str = "",
    user_answers: str = "",
    assistant_context: str = "",
    existing_intake: dict[str, Any] | None = None,
    is_followup: bool = False,
) -> tuple[dict[str, Any], str]:
    cfg = deps.settings.get_path_intake_config()
    existing_paths = None
    if existing_intake and list_from_any(existing_intake.get("paths")):
        existing_paths = {
            "primary_path_id": str(existing_intake.get("primary_path_id") or "").strip(),
            "paths": existing_intake["paths"],
        }
    prompt = path_intake_prompt(
        files=[
            {
                "file_id": str(f.id),
                "original_name": f.original_name or "",
                "mime_type": f.mime_type or "",
                "size_bytes": int(f.size_bytes or 0),
                "extracted_kind": f.extracted_kind or "",
            }
            for f in files
        ],
        summary_md=(getattr(summary, "summary_md", "") or "").strip(),
        subject=(getattr(summary, "subject", "") or "").strip(),
        level=(getattr(summary, "level", "") or "").strip(),
        tags=dedupe_strings(str_list_from_any(getattr(summary, "tags", None))),
        concept_keys=dedupe_strings(str_list_from_any(getattr(summary, "concept_keys", None))),
        prefs=prefs,
        user_context=user_context,
        user_answers=user_answers,
        assistant_context=assistant_context,
        existing_paths=existing_paths,
        excerpts=build_intake_excerpts(
            files, chunks_by_file, cfg["excerpts_per_file"], cfg["excerpt_max_chars"], cfg["excerpt_max_total_chars"]
        ),
        is_followup=is_followup,
    )
    intake = await deps.llm.generate_json(prompt.system, prompt.user, prompt.schema_name, prompt.schema)
    intake = dict(intake or {})
    normalize_intake_paths(intake, files)
    return intake, format_intake_summary_md(intake)


async def soft_split_check(deps: BuildDeps, intake: dict[str, Any], files, signatures) -> dict[str, Any]:
    """
    Flag multi-path proposals whose paths look like one subject.

    Compares every path pair by token Jaccard, cosine of mean signature
    embeddings and, when enabled, an LLM pair score. A soft split appends the
    ``structure_clarify`` question and sets ``needs_clarification``.
    """
    paths = [p for p in list_from_any(intake.get("paths")) if isinstance(p, dict)]
    if len(paths) < 2:
        return {}
    cfg = deps.settings.get_path_intake_config()
    intents_by_id = {
        str(dict_from_any(it).get("file_id") or ""): dict_from_any(it) for it in list_from_any(intake.get("file_intents"))
    }
    tokens = [path_tokens(p, intents_by_id) for p in paths]
    embedding_by_file = {
        str(fid): list(sig.summary_embedding or []) for fid, sig in signatures.items() if sig is not None
    }
    means = [
        EmbeddingService.mean_vector([embedding_by_file.get(fid, []) for fid in path_file_ids(p)]) for p in paths
    ]

    max_jaccard = max_cosine = max_pair = 0.0
    pairs = list(itertools.combinations(range(len(paths)), 2))
    for i, j in pairs:
        max_jaccard = max(max_jaccard, jaccard(tokens[i], tokens[j]))
        if means[i] and means[j]:
            max_cosine = max(max_cosine, EmbeddingService.cosine_similarity(means[i], means[j]))

    if cfg["pair_score"] and deps.llm is not None and len(files) <= cfg["pair_score_max_files"]:
        for i, j in pairs[: max(0, cfg["pair_score_max_pairs"])]:
            brief = [
                {"title": p.get("title", ""), "goal": p.get("goal", ""), "tokens": sorted(tokens[k])[:40]}
                for k, p in ((i, paths[i]), (j, paths[j]))
            ]
            prompt = pair_score_prompt(json.dumps(brief[0], ensure_ascii=False), json.dumps(brief[1], ensure_ascii=False))
            try:
                obj = await deps.llm.generate_json(prompt.system, prompt.user, prompt.schema_name, prompt.schema)
                max_pair = max(max_pair, float_from_any(obj.get("score"), 0.0))
            except Exception as e:  # Intentionally broad - pair scores only sharpen the check
                logger.warning("{}: pair score failed: {}", STAGE, e)

    min_conf = min_path_confidence(paths)
    weak = has_weak_notes(paths)
    metrics = {
        "max_jaccard": round(max_jaccard, 4),
        "max_cosine": round(max_cosine, 4),
        "max_pair_score": round(max_pair, 4),
        "min_confidence": min_conf,
        "weak_notes": weak,
    }
    metrics["soft_split"] = split_looks_soft(max_jaccard, min_conf, max_cosine, max_pair, weak)
    if metrics["soft_split"]:
        add_structure_question(intake)
        logger.info("{}: proposed split looks soft {}", STAGE, metrics)
    return metrics


async def write_path_intake_meta(deps: BuildDeps, path_id: UUID, intake: dict[str, Any], **extra: Any) -> None:
    updates = {
        "intake": intake,
        "intake_updated_at": datetime.now(timezone.utc).isoformat(),
        "intake_paths_confirmed": bool_from_any(intake.get("paths_confirmed")),
        **extra,
    }
    async with deps.store.transaction() as repos:
        await repos.paths.update_meta(path_id, updates)


async def run_path_intake(deps: BuildDeps, inp: StageInput) -> PathIntakeOutput:
    """
    Propose, confirm or return the path grouping for a material set.

    Raises:
        ConfigurationError: missing collaborators or ids
    """
    deps.require(STAGE, "store", "llm")
    require_ids(STAGE, owner_user_id=inp.owner_user_id, material_set_id=inp.material_set_id, path_id=inp.path_id)
    out = PathIntakeOutput(
        path_id=str(inp.path_id),
        thread_id=str(inp.thread_id or ""),
        now=datetime.now(timezone.utc).isoformat(),
    )

    async with deps.store.transaction() as repos:
        path = await repos.paths.get(inp.path_id)
        path_meta = dict(path.meta or {}) if path is not None else {}
        if bool_from_any(path_meta.get("intake_locked")):
            out.intake = dict_from_any(path_meta.get("intake"))
            out.meta = {"reason": "intake_locked"}
            return out
        files = sorted(await repos.materials.list_files(inp.material_set_id), key=lambda f: f.original_name or "")
        file_ids = [f.id for f in files]
        chunks_by_file = await repos.materials.list_chunks(file_ids) if file_ids else {}
        signatures = await repos.materials.get_signatures(file_ids) if file_ids else {}
        summary = await repos.materials.get_set_summary(inp.material_set_id)
        messages = await repos.chat.list_messages(inp.thread_id, MESSAGE_WINDOW) if inp.thread_id else []
        prefs = await repos.paths.get_user_prefs(inp.owner_user_id)

    async def finish(intake: dict[str, Any], intake_md: str | None, *, by_user: bool = False, ack: bool = True):
        intake["paths_confirmed"] = True
        extra: dict[str, Any] = {"intake_material_filter": build_intake_material_filter(files, intake)}
        if intake_md is not None:
            extra["intake_md"] = intake_md
        if inp.job_id:
            extra["intake_job_id"] = str(inp.job_id)
        if by_user:
            extra["intake_confirmed_by_user"] = True
        await write_path_intake_meta(deps, inp.path_id, intake, **extra)
        if ack and inp.thread_id and inp.job_id:
            await _post(deps, inp, KIND_ACK, format_ack_md(intake_md or ""))
        out.intake = intake
        return out

    if not inp.thread_id:
        return await finish(build_fallback_intake(files, summary), None, ack=False)

    question = latest_questions_message(messages)
    if question is not None:
        answer = user_answer_after(messages, question.seq)
        user_ctx = user_context_before(messages, question.seq)
        if not answer:
            if not inp.wait_for_user:
                return await finish(build_fallback_intake(files, summary, user_ctx), None, ack=False)
            out.status = "waiting_user"
            out.meta = {
                "reason": "awaiting_user_answer",
                "question_seq": question.seq,
                "question_id": str(question.id),
            }
            return out
        try:
            intake, intake_md = await _generate_intake(
                deps,
                files,
                chunks_by_file,
                summary,
                prefs=prefs,
                user_context=user_ctx,
                user_answers=answer,
                assistant_context=assistant_context_since(messages, question.seq),
                existing_intake=dict_from_any(path_meta.get("intake")),
                is_followup=True,
            )
        except Exception as e:  # Intentionally broad - fallback intake keeps the build moving
            logger.warning("{}: follow-up generation failed, using fallback: {}", STAGE, e)
            intake = build_fallback_intake(files, summary, user_ctx, answer)
            intake_md = format_intake_summary_md(intake)
        return await finish(intake, intake_md, by_user=True)

    user_ctx = user_context_before(messages, 1 << 62)
    try:
        intake, intake_md = await _generate_intake(
            deps, files, chunks_by_file, summary, prefs=prefs, user_context=user_ctx
        )
        metrics = await soft_split_check(deps, intake, files, signatures)
        if metrics:
            out.meta["structure_check"] = metrics
    except Exception as e:  # Intentionally broad - fallback intake keeps the build moving
        logger.warning("{}: generation failed, using fallback: {}", STAGE, e)
        intake = build_fallback_intake(files, summary, user_ctx)
        intake_md = format_intake_summary_md(intake)

    if inp.wait_for_user and inp.job_id:
        intake["paths_confirmed"] = False
        await write_path_intake_meta(
            deps,
            inp.path_id,
            intake,
            intake_md=intake_md,
            intake_material_filter=build_intake_material_filter(files, intake),
            intake_job_id=str(inp.job_id),
        )
        message = await _post(
            deps,
            inp,
            KIND_QUESTIONS,
            format_intake_questions_md(intake, intake_md),
            build_workflow_v1("confirm_paths", blocking=True),
        )
        if message is not None:
            out.status = "waiting_user"
            out.meta.update(
                reason="awaiting_path_confirmation",
                question_id=str(message.id),
                question_seq=message.seq,
            )
            out.intake = intake
            return out

    if bool_from_any(intake.get("needs_clarification")) and inp.job_id:
        await _post(
            deps,
            inp,
            KIND_REVIEW,
            format_intake_questions_md(intake, intake_md),
            build_workflow_v1("review_paths", blocking=False),
        )
    return await finish(intake, intake_md)


async def _post(deps: BuildDeps, inp: StageInput, kind: str, content: str, workflow=None):
    try:
        message, _ = await append_intake_message(
            deps.store,
            deps.notifier,
            kind=kind,
            owner_user_id=inp.owner_user_id,
            thread_id=inp.thread_id,
            job_id=inp.job_id,
            material_set_id=inp.material_set_id,
            path_id=inp.path_id,
            content=content,
            workflow=workflow,
        )
        return message
    except Exception as e:  # Intentionally broad - a missing chat message must not fail the intake
        logger.warning("{}: failed to post {} message: {}", STAGE, kind, e)
        return None
