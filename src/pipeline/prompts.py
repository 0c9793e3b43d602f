"""
LLM Prompts and strict JSON schemas for the build stages.

Each builder returns a ``Prompt`` carrying the system text, the rendered user
text and the schema the client enforces. Schemas follow strict structured-output
rules: every object lists all of its keys as required and disallows extra keys,
so optional values are expressed as empty strings or empty arrays.

Prompts:
- file_signature_build - per-file summary, topics, outline and intent
- material_intent_extract - per-file from/to/core-thread intent
- material_chunk_signal - per-chunk role, scores and trajectory
- material_set_signal - collective intent and spine for a set
- cross_set_signal - set-to-set links and emergent concepts
- path_intake - grouping of files into learning paths
- pair_score - can two proposed paths be taught together
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Prompt:
    name: str
    system: str
    user: str
    schema_name: str
    schema: dict[str, Any]


def _require(name: str, value: str) -> str:
    if not (value or "").strip():
        raise ValueError(f"prompt input {name} is empty")
    return value


# =============================================================================
# Schema Helpers
# =============================================================================

def _string() -> dict[str, Any]:
    return {"type": "string"}


def _number() -> dict[str, Any]:
    return {"type": "number"}


def _boolean() -> dict[str, Any]:
    return {"type": "boolean"}


def _string_array() -> dict[str, Any]:
    return {"type": "array", "items": {"type": "string"}}


def _enum(*values: str) -> dict[str, Any]:
    return {"type": "string", "enum": list(values)}


def _nullable(type_name: str) -> dict[str, Any]:
    return {"type": [type_name, "null"]}


def _object(properties: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": properties,
        "required": list(properties),
        "additionalProperties": False,
    }


def _array_of(item: dict[str, Any]) -> dict[str, Any]:
    return {"type": "array", "items": item}


INTENT_PROPERTIES = {
    "from_state": _string(),
    "to_state": _string(),
    "core_thread": _string(),
    "destination_concepts": _string_array(),
    "prerequisite_concepts": _string_array(),
    "assumed_knowledge": _string_array(),
    "notes": _string_array(),
}

CHUNK_ROLES = (
    "thesis", "definition", "explanation", "derivation", "example", "proof",
    "application", "context", "aside", "transition", "summary", "preview",
)


# =============================================================================
# File Signature
# =============================================================================

FILE_SIGNATURE_SYSTEM = """You are building a durable per-file signature for uploaded learning materials.
Use the excerpts as ground truth. Use outline hints when present.
Do not invent topics not supported by the excerpts.
Return JSON only."""

FILE_SIGNATURE_USER = """FILE_INFO_JSON:
{file_info_json}

OUTLINE_HINT_JSON (may be empty):
{outline_hint_json}

EXCERPTS (each line may include chunk_id):
{excerpts}

Output rules:
- summary_md: 6-12 sentence markdown summary.
- topics: 6-20 short topic phrases.
- concept_keys: 10-40 stable snake_case keys.
- difficulty: intro|intermediate|advanced|mixed|unknown.
- domain_tags: 2-8 short tags.
- citations: only if explicit (URLs, standards, RFCs).
- outline_json: include 4-12 top-level sections; keep titles concise.
- outline_confidence: 0..1.
- language: ISO 639-1 if possible (e.g. "en").
- quality: text_quality (high|medium|low), coverage (0..1), notes.
- from_state / to_state: what the learner knows before and after this file.
- core_thread: the essential through-line of the file.
- destination_concepts / prerequisite_concepts / assumed_knowledge: concept keys when possible.
- notes: 0-6 concise observations."""


def file_signature_schema() -> dict[str, Any]:
    section = _object({
        "title": _string(),
        "path": _string(),
        "start_page": _nullable("integer"),
        "end_page": _nullable("integer"),
        "start_sec": _nullable("number"),
        "end_sec": _nullable("number"),
    })
    outline = _object({"title": _string(), "sections": _array_of(section)})
    quality = _object({"text_quality": _string(), "coverage": _number(), "notes": _string()})
    return _object({
        "summary_md": _string(),
        "topics": _string_array(),
        "concept_keys": _string_array(),
        "difficulty": _enum("intro", "intermediate", "advanced", "mixed", "unknown"),
        "domain_tags": _string_array(),
        "citations": _string_array(),
        "outline_json": outline,
        "outline_confidence": _number(),
        "language": _string(),
        "quality": quality,
        **INTENT_PROPERTIES,
    })


def file_signature_prompt(file_info_json: str, outline_hint_json: str, excerpts: str) -> Prompt:
    return Prompt(
        name="file_signature_build",
        system=FILE_SIGNATURE_SYSTEM,
        user=FILE_SIGNATURE_USER.format(
            file_info_json=file_info_json,
            outline_hint_json=outline_hint_json,
            excerpts=_require("excerpts", excerpts),
        ),
        schema_name="file_signature",
        schema=file_signature_schema(),
    )


# =============================================================================
# Material Intent
# =============================================================================

MATERIAL_INTENT_SYSTEM = """You analyze a single learning material to extract its intent and assumed knowledge.
Use the excerpts as ground truth. Do not invent concepts not supported by the excerpts.
Return JSON only."""

MATERIAL_INTENT_USER = """MATERIAL_CONTEXT_JSON (file id, name, summary, topics, concept keys):
{material_context_json}

EXCERPTS (each line may include chunk_id):
{excerpts}

Output rules:
- from_state: what the learner is assumed to know before this material.
- to_state: what the learner should know after completing this material.
- core_thread: the essential through-line; if only 20% kept, what must remain.
- destination_concepts: concepts the material is pointing toward (even if not fully covered).
- prerequisite_concepts: concepts needed before the material makes sense.
- assumed_knowledge: implicit knowledge the author assumes.
- notes: 0-6 concise observations."""


def material_intent_prompt(material_context_json: str, excerpts: str) -> Prompt:
    return Prompt(
        name="material_intent_extract",
        system=MATERIAL_INTENT_SYSTEM,
        user=MATERIAL_INTENT_USER.format(
            material_context_json=material_context_json,
            excerpts=_require("excerpts", excerpts),
        ),
        schema_name="material_intent",
        schema=_object(dict(INTENT_PROPERTIES)),
    )


# =============================================================================
# Chunk Signal
# =============================================================================

CHUNK_SIGNAL_SYSTEM = """You score chunk-level signals relative to a material's intent.
Use the material intent and chunk excerpts as ground truth.
Return JSON only."""

CHUNK_SIGNAL_USER = """MATERIAL_INTENT_JSON:
{material_intent_json}

CHUNK_BATCH_JSON (chunk_id, section_path, page, excerpt):
{chunk_batch_json}

Output rules:
- role: one of thesis|definition|explanation|derivation|example|proof|application|context|aside|transition|summary|preview.
- signal_strength: 0..1 relative to the material intent (core = high).
- floor_signal: minimum relevance in any context (0..1).
- intent_alignment_score: 0..1 how directly this chunk advances the material's core_thread and destination concepts.
- novelty_score: 0..1 (new info vs repetition).
- density_score: 0..1 (information per unit length).
- complexity_score: 0..1 (cognitive load).
- load_bearing_score: 0..1 (if removed, how much understanding breaks).
- trajectory.establishes/reinforces/builds_on/points_toward: concept keys when possible; empty if unsure.
- notes: short, optional."""


def chunk_signal_schema() -> dict[str, Any]:
    trajectory = _object({
        "establishes": _string_array(),
        "reinforces": _string_array(),
        "builds_on": _string_array(),
        "points_toward": _string_array(),
    })
    item = _object({
        "chunk_id": _string(),
        "role": _enum(*CHUNK_ROLES),
        "signal_strength": _number(),
        "floor_signal": _number(),
        "intent_alignment_score": _number(),
        "novelty_score": _number(),
        "density_score": _number(),
        "complexity_score": _number(),
        "load_bearing_score": _number(),
        "trajectory": trajectory,
        "notes": _string_array(),
    })
    return _object({"items": _array_of(item)})


def chunk_signal_prompt(material_intent_json: str, chunk_batch_json: str) -> Prompt:
    return Prompt(
        name="material_chunk_signal",
        system=CHUNK_SIGNAL_SYSTEM,
        user=CHUNK_SIGNAL_USER.format(
            material_intent_json=material_intent_json,
            chunk_batch_json=_require("chunk_batch_json", chunk_batch_json),
        ),
        schema_name="material_chunk_signal",
        schema=chunk_signal_schema(),
    )


# =============================================================================
# Set Signal
# =============================================================================

SET_SIGNAL_SYSTEM = """You analyze a material set as a whole to derive collective intent and structure.
Use provided intents and coverage summaries; do not invent ungrounded concepts.
Return JSON only."""

SET_SIGNAL_USER = """MATERIAL_SET_CONTEXT_JSON:
{material_context_json}

MATERIAL_INTENTS_JSON:
{material_intents_json}

SET_COVERAGE_JSON:
{set_coverage_json}

EDGE_HINTS_JSON (algorithmic suggestions; may be empty):
{edge_hints_json}

Output rules:
- from_state / to_state / core_thread: collective intent for the full set.
- spine_file_ids: critical path materials.
- satellite_file_ids: enrichment materials.
- gaps_concept_keys: important concepts not covered by any material.
- redundancy_notes / conflict_notes: concise notes.
- edge_hints: only if strongly supported by the evidence."""


def set_signal_schema() -> dict[str, Any]:
    hint = _object({
        "from_file_id": _string(),
        "to_file_id": _string(),
        "edge_type": _enum("prerequisite", "reinforces", "extends", "alternative"),
        "strength": _number(),
        "reason": _string(),
    })
    return _object({
        "from_state": _string(),
        "to_state": _string(),
        "core_thread": _string(),
        "spine_file_ids": _string_array(),
        "satellite_file_ids": _string_array(),
        "gaps_concept_keys": _string_array(),
        "redundancy_notes": _string_array(),
        "conflict_notes": _string_array(),
        "edge_hints": _array_of(hint),
    })


def set_signal_prompt(
    material_context_json: str,
    material_intents_json: str,
    set_coverage_json: str,
    edge_hints_json: str,
) -> Prompt:
    return Prompt(
        name="material_set_signal",
        system=SET_SIGNAL_SYSTEM,
        user=SET_SIGNAL_USER.format(
            material_context_json=material_context_json,
            material_intents_json=_require("material_intents_json", material_intents_json),
            set_coverage_json=set_coverage_json,
            edge_hints_json=edge_hints_json,
        ),
        schema_name="material_set_signal",
        schema=set_signal_schema(),
    )


# =============================================================================
# Cross-Set Signal
# =============================================================================

CROSS_SET_SYSTEM = """You analyze a user's multiple material sets to identify cross-set links and emergent concepts.
Use provided set signals; do not invent ungrounded links.
Return JSON only."""

CROSS_SET_USER = """USER_SETS_JSON:
{user_sets_json}

Output rules:
- set_edges: prerequisite/extends/parallel/cross_domain relations with strength 0..1.
- emergent_concepts: concepts that only arise via combinations of sets.
- domain_bridges: short plain-language bridges across domains."""


def cross_set_schema() -> dict[str, Any]:
    edge = _object({
        "from_set_id": _string(),
        "to_set_id": _string(),
        "relation": _enum("prerequisite", "extends", "parallel", "cross_domain"),
        "strength": _number(),
        "bridging_concepts": _string_array(),
    })
    concept = _object({
        "key": _string(),
        "name": _string(),
        "summary": _string(),
        "source_set_ids": _string_array(),
        "prereq_concept_keys": _string_array(),
    })
    return _object({
        "set_edges": _array_of(edge),
        "emergent_concepts": _array_of(concept),
        "domain_bridges": _string_array(),
    })


def cross_set_prompt(user_sets_json: str) -> Prompt:
    return Prompt(
        name="cross_set_signal",
        system=CROSS_SET_SYSTEM,
        user=CROSS_SET_USER.format(user_sets_json=_require("user_sets_json", user_sets_json)),
        schema_name="cross_set_signal",
        schema=cross_set_schema(),
    )


# =============================================================================
# Path Intake
# =============================================================================

PATH_INTAKE_SYSTEM = """You are an expert learning designer and curriculum planner.
Given a set of uploaded study materials and any user-provided context, infer what each file is trying to teach and the combined learning goal.

CRITICAL - Path grouping:
Group the files into one or more coherent learning paths.
Each path should represent a single coherent learning objective or domain.
Every file MUST appear in exactly one path (core or support).
No file may appear in more than one path. No path may be empty.
If a file doesn't fit with others, give it its own path instead of excluding it.

Use material_alignment.mode:
- 'single_goal' when there is exactly one path.
- 'multi_goal' when there are multiple paths.

If EXISTING_PATHS_JSON is provided and the user does not ask to change the grouping,
keep the existing paths and file assignments exactly.

Do NOT drop files into exclude/noise unless they are truly unreadable/blank.
Even then, assign them to a path (e.g., an 'Unclear/low-signal' path).

Only ask clarifying questions when needed to build a high-quality learning path; keep questions minimal, actionable, and non-redundant.
If USER_ANSWERS are short or numeric (e.g., '2'), use ASSISTANT_MESSAGES_SINCE_LAST_QUESTION to interpret what they refer to.
Prefer asking about goal, deadline, current level, and prioritization when unclear.
Only reference file_id values that appear in FILES_JSON.
Never mention policy or hidden reasoning. Output must match the JSON schema exactly."""

FOLLOWUP_NOTE = (
    "NOTE: This is a follow-up pass after the user answered questions; "
    "do not ask more questions unless absolutely necessary."
)


def path_intake_schema() -> dict[str, Any]:
    file_intent = _object({
        "file_id": _string(),
        "original_name": _string(),
        "aim": _string(),
        "topics": _string_array(),
        "confidence": _number(),
        "uncertainty_note": _string(),
        "alignment": _enum("core", "support", "noise", "unclear"),
        "include_in_primary_path": _boolean(),
        "alignment_reason": _string(),
    })
    alignment = _object({
        "mode": _enum("single_goal", "multi_goal", "unclear"),
        "primary_goal": _string(),
        "include_file_ids": _string_array(),
        "exclude_file_ids": _string_array(),
        "noise_file_ids": _string_array(),
        "notes": _string(),
        "recommended_next_step": _string(),
        "recommended_next_step_reason": _string(),
        "recommended_next_step_confidence": _number(),
    })
    path = _object({
        "path_id": _string(),
        "title": _string(),
        "goal": _string(),
        "core_file_ids": _string_array(),
        "support_file_ids": _string_array(),
        "confidence": _number(),
        "notes": _string(),
    })
    learning_intent = _object({
        "goal_kind": _enum("exam", "project", "course", "research", "work", "hobby", "other", "unknown"),
        "deadline": _string(),
        "prior_knowledge": _string(),
        "priority_topics": _string_array(),
        "deprioritize": _string_array(),
        "constraints": _string_array(),
        "success_criteria": _string(),
        "plan_notes": _string(),
        "confidence": _number(),
        "uncertainty_notes": _string_array(),
    })
    question = _object({"id": _string(), "question": _string(), "reason": _string()})
    return _object({
        "file_intents": _array_of(file_intent),
        "material_alignment": alignment,
        "paths": _array_of(path),
        "primary_path_id": _string(),
        "combined_goal": _string(),
        "learning_intent": learning_intent,
        "audience_level_guess": _string(),
        "confidence": _number(),
        "uncertainty_reasons": _string_array(),
        "needs_clarification": _boolean(),
        "clarifying_questions": _array_of(question),
        "assumptions": _string_array(),
        "notes": _string(),
    })


def path_intake_prompt(
    *,
    files: list[dict[str, Any]],
    summary_md: str = "",
    subject: str = "",
    level: str = "",
    tags: list[str] | None = None,
    concept_keys: list[str] | None = None,
    prefs: Any = None,
    user_context: str = "",
    user_answers: str = "",
    assistant_context: str = "",
    existing_paths: dict[str, Any] | None = None,
    excerpts: str = "",
    is_followup: bool = False,
) -> Prompt:
    """
    Render the path intake request.

    Args:
        files: File descriptors (file_id, original_name, mime_type, size_bytes, extracted_kind)
        prefs: Stored personalization prefs; rendered as ``{}`` when unset
        existing_paths: ``{primary_path_id, paths}`` from the previous proposal, if any
        is_followup: True on the pass after the user answered
    """
    parts = ["USER_CONTEXT:", user_context.strip() or "(none)"]
    if user_answers.strip():
        parts += ["", "USER_ANSWERS:", user_answers.strip()]
    if assistant_context.strip():
        parts += ["", "ASSISTANT_MESSAGES_SINCE_LAST_QUESTION:", assistant_context.strip()]

    parts += ["", "MATERIAL_SET_SUMMARY_MD:", summary_md.strip() or "(not available)"]
    parts += ["", "SUMMARY_METADATA:"]
    parts.append(f"- subject: {subject.strip() or '(unknown)'}")
    parts.append(f"- level: {level.strip() or '(unknown)'}")
    if tags:
        parts.append(f"- tags: {', '.join(tags)}")
    if concept_keys:
        parts.append(f"- concept_keys: {', '.join(concept_keys)}")

    parts += ["", "USER_PREFS_JSON:", json.dumps(prefs if prefs is not None else {}, ensure_ascii=False, default=str)]
    parts += ["", "FILES_JSON:", json.dumps({"files": files}, ensure_ascii=False)]

    if existing_paths and existing_paths.get("paths"):
        parts += ["", "EXISTING_PATHS_JSON:", json.dumps(existing_paths, ensure_ascii=False)]
    if excerpts.strip():
        parts += ["", "MATERIAL_EXCERPTS (ground truth snippets; may be incomplete):", excerpts.strip()]
    if is_followup:
        parts += ["", FOLLOWUP_NOTE]

    return Prompt(
        name="path_intake",
        system=PATH_INTAKE_SYSTEM,
        user="\n".join(parts) + "\n",
        schema_name="path_intake",
        schema=path_intake_schema(),
    )


# =============================================================================
# Pair Score
# =============================================================================

PAIR_SCORE_SYSTEM = """You judge whether two proposed learning paths could be taught as one coherent path.
Use only the titles, goals, topics and file names provided.
Return JSON only."""

PAIR_SCORE_USER = """PATH_A_JSON:
{path_a_json}

PATH_B_JSON:
{path_b_json}

Output rules:
- score: 0..1, how naturally both paths fit into a single learning objective (1 = clearly one path).
- reason: one short sentence."""


def pair_score_prompt(path_a_json: str, path_b_json: str) -> Prompt:
    return Prompt(
        name="pair_score",
        system=PAIR_SCORE_SYSTEM,
        user=PAIR_SCORE_USER.format(path_a_json=path_a_json, path_b_json=path_b_json),
        schema_name="pair_score",
        schema=_object({"score": _number(), "reason": _string()}),
    )
