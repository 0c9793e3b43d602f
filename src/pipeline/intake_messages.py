"""
Chat surface of path intake.

Markdown renderers for the proposal, ``workflow_v1`` action payloads, readers
over the thread history and the idempotent assistant-message append.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from loguru import logger

from src.core.coerce import dedupe_strings, dict_from_any, list_from_any, str_from_any, str_list_from_any

from .intake_normalize import file_names_by_id, names_for_ids

KIND_QUESTIONS = "path_intake_questions"
KIND_REVIEW = "path_intake_review"
KIND_ACK = "path_intake_ack"

ASSISTANT_CONTEXT_MESSAGES = 6
ASSISTANT_CONTEXT_CHARS = 1200
BULLET = " • "

ACK_TEXT = "Thanks, I'll generate your learning path now."


def _text(value: Any) -> str:
    return str_from_any(value).strip()


def _join_names(names: Sequence[str], limit: int) -> str:
    if not names:
        return ""
    if len(names) <= limit:
        return BULLET.join(names)
    return BULLET.join(names[:limit]) + f" (+{len(names) - limit} more)"


# ========================================
# MARKDOWN
# ========================================


def format_intake_summary_md(intake: Mapping[str, Any] | None) -> str:
    """Short bold-label summary of the intake for chat and path metadata."""
    if not intake:
        return ""
    lines: list[str] = []
    goal = _text(intake.get("combined_goal"))
    if goal:
        lines.append(f"**Goal**: {goal}")

    intent = dict_from_any(intake.get("learning_intent"))
    if intent:
        kind = _text(intent.get("goal_kind"))
        if kind and kind != "unknown":
            lines.append(f"**Use case**: {kind}")
        deadline = _text(intent.get("deadline"))
        if deadline:
            lines.append(f"**Deadline**: {deadline}")
        priorities = dedupe_strings(str_list_from_any(intent.get("priority_topics")))
        if priorities:
            lines.append(f"**Focus**: {BULLET.join(priorities[:6])}")
        constraints = dedupe_strings(str_list_from_any(intent.get("constraints")))
        if constraints:
            lines.append(f"**Constraints**: {BULLET.join(constraints[:3])}")

    level = _text(intake.get("audience_level_guess"))
    if level and level != "(unknown)":
        lines.append(f"**Level**: {level}")
    assumptions = str_list_from_any(intake.get("assumptions"))
    if assumptions:
        lines.append(f"**Assumptions**: {BULLET.join(assumptions[:4])}")

    names = file_names_by_id(intake)
    alignment = dict_from_any(intake.get("material_alignment"))
    used = _join_names(names_for_ids(str_list_from_any(alignment.get("include_file_ids")), names), 4)
    if used:
        lines.append(f"**Materials used**: {used}")

    paths = [dict_from_any(p) for p in list_from_any(intake.get("paths"))]
    if len(paths) > 1:
        titles = [t for t in (_text(p.get("title")) or _text(p.get("goal")) for p in paths) if t]
        joined = _join_names(titles, 3)
        if joined:
            lines.append(f"**Paths proposed**: {joined}")

    ignored_ids = str_list_from_any(alignment.get("exclude_file_ids")) + str_list_from_any(alignment.get("noise_file_ids"))
    ignored = _join_names(names_for_ids(ignored_ids, names), 3)
    if ignored:
        lines.append(f"**Set aside for now**: {ignored}")
    return "\n".join(lines).strip()


def format_proposed_paths_md(intake: Mapping[str, Any] | None) -> str:
    if not intake:
        return ""
    paths = list_from_any(intake.get("paths"))
    if not paths:
        return ""
    names = file_names_by_id(intake)
    lines = ["**Proposed paths**"]
    for i, raw in enumerate(paths, start=1):
        if not isinstance(raw, Mapping):
            continue
        title = _text(raw.get("title")) or f"Path {i}"
        goal = _text(raw.get("goal"))
        lines.append(f"{i}) **{title}**" + (f" - {goal}" if goal else ""))
        core = BULLET.join(names_for_ids(str_list_from_any(raw.get("core_file_ids")), names, 4))
        support = BULLET.join(names_for_ids(str_list_from_any(raw.get("support_file_ids")), names, 3))
        if core:
            lines.append(f"   Core: {core}")
        if support:
            lines.append(f"   Support: {support}")
        if core or support:
            lines.append("")
    return "\n".join(lines).strip()


def format_intake_questions_md(intake: Mapping[str, Any] | None, intake_md: str) -> str:
    if not intake:
        return "I need a bit more context to generate the best learning path. What's your goal with these materials?"
    parts = [
        "I reviewed your upload and grouped the materials into paths.",
        "Path generation is paused until you confirm or adjust the structure.",
    ]
    if intake_md.strip():
        parts.append("**My current read**\n" + intake_md.strip())
    proposed = format_proposed_paths_md(intake)
    if proposed:
        parts.append(proposed)

    questions = [
        _text(dict_from_any(q).get("question"))
        for q in list_from_any(intake.get("clarifying_questions"))
    ]
    questions = [q for q in questions if q]
    if not questions:
        parts.append("**A quick question**\nWhat's your goal with these materials, and is there a deadline?")
    else:
        numbered = "\n".join(f"{i}) {q}" for i, q in enumerate(questions, start=1))
        parts.append("**A few quick questions**\n" + numbered)

    parts.append(
        "Reply in one message. If the grouping looks right, reply `confirm`. "
        "If you want changes, tell me how you want the files regrouped.\n"
        "If you want to talk it through first, just ask. I can help you decide."
    )
    return "\n\n".join(parts).strip()


def format_ack_md(intake_md: str) -> str:
    if not intake_md.strip():
        return ACK_TEXT
    return f"{ACK_TEXT}\n\n**Locked in**\n{intake_md.strip()}"


def build_workflow_v1(step: str, blocking: bool) -> dict[str, Any]:
    """Action payload rendered as buttons by chat clients."""
    return {
        "version": 1,
        "kind": "path_intake",
        "step": step,
        "blocking": blocking,
        "actions": [
            {"id": "confirm", "label": "Looks good", "token": "confirm", "variant": "primary"},
            {"id": "adjust", "label": "Adjust grouping", "token": "adjust", "variant": "secondary"},
        ],
    }


# ========================================
# THREAD READERS
# ========================================


def message_kind(message: Any) -> str:
    return _text(dict_from_any(getattr(message, "meta", None)).get("kind")).lower()


def latest_questions_message(messages: Sequence[Any]) -> Any | None:
    best = None
    for m in messages:
        if m is not None and message_kind(m) == KIND_QUESTIONS and (best is None or m.seq > best.seq):
            best = m
    return best


def _role_texts(messages: Sequence[Any], role: str, keep) -> list[str]:
    out = []
    for m in messages:
        if m is None or (m.role or "").strip().lower() != role or not keep(m.seq):
            continue
        text = (m.content or "").strip()
        if text:
            out.append(text)
    return out


def user_answer_after(messages: Sequence[Any], after_seq: int) -> str:
    return "\n\n".join(_role_texts(messages, "user", lambda seq: seq > after_seq)).strip()


def user_context_before(messages: Sequence[Any], before_seq: int) -> str:
    return "\n\n".join(_role_texts(messages, "user", lambda seq: seq < before_seq)).strip()


def assistant_context_since(messages: Sequence[Any], start_seq: int) -> str:
    """The last few assistant messages from ``start_seq`` on, each truncated."""
    texts = _role_texts(messages, "assistant", lambda seq: seq >= start_seq)
    texts = [t if len(t) <= ASSISTANT_CONTEXT_CHARS else t[:ASSISTANT_CONTEXT_CHARS] + "..." for t in texts]
    return "\n\n".join(texts[-ASSISTANT_CONTEXT_MESSAGES:]).strip()


# ========================================
# APPEND
# ========================================


async def append_intake_message(
    store,
    notifier,
    *,
    kind: str,
    owner_user_id: UUID,
    thread_id: UUID,
    job_id: UUID,
    material_set_id: UUID,
    path_id: UUID,
    content: str,
    workflow: dict[str, Any] | None = None,
) -> tuple[Any | None, bool]:
    """
    Append one assistant message of ``kind`` per ``(thread, job)``.

    Runs under a row lock on the thread and bumps ``next_seq``. Returns
    ``(message, created)``; an existing message for the job is returned with
    ``created=False``. A missing or foreign thread yields ``(None, False)``.
    """
    content = content.strip()
    if not content:
        return None, False
    created = False
    async with store.transaction() as repos:
        thread = await repos.chat.lock_thread(thread_id)
        if thread is None or thread.user_id != owner_user_id:
            logger.warning("path_intake: thread {} not found for user {}", thread_id, owner_user_id)
            return None, False
        message = await repos.chat.find_message(thread_id, owner_user_id, kind, job_id)
        if message is None:
            now = datetime.now(timezone.utc)
            meta: dict[str, Any] = {
                "kind": kind,
                "job_id": str(job_id),
                "path_id": str(path_id),
                "material_set_id": str(material_set_id),
            }
            if workflow is not None:
                meta["workflow_v1"] = workflow
            next_seq = int(thread.next_seq or 0) + 1
            message = await repos.chat.create_message(
                {
                    "id": uuid.uuid4(),
                    "thread_id": thread_id,
                    "user_id": owner_user_id,
                    "seq": next_seq,
                    "role": "assistant",
                    "status": "sent",
                    "content": content,
                    "model": "",
                    "metadata": meta,
                    "created_at": now,
                    "updated_at": now,
                }
            )
            await repos.chat.touch_thread(thread_id, next_seq, now)
            created = True
    if created and notifier is not None:
        notifier.message_created(owner_user_id, thread_id, message)
    return message, created
