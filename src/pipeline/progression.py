"""
Progression Compactor.

Streams a user's raw event log past a durable ``(created_at, id)`` cursor and
writes one compact progression row per event. Each page's rows and the cursor
advance commit together, so an interrupted run resumes without duplicates.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from src.core.coerce import (
    bool_from_any,
    dedupe_strings,
    dict_from_any,
    float_from_any,
    int_from_any,
    str_from_any,
    str_list_from_any,
)

from .stage import NIL_UUID, BuildDeps, StageInput, require_ids

STAGE = "progression_compact"
CONSUMER = "progression_compact"
ACTIVITY_COMPLETED = "activity_completed"


@dataclass
class ProgressionOutput:
    processed: int = 0
    pages: int = 0
    budget_exhausted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def extract_concept_ids(event) -> list[str]:
    ids = []
    if event.concept_id is not None and event.concept_id != NIL_UUID:
        ids.append(str(event.concept_id))
    ids.extend(str_list_from_any(dict_from_any(event.data).get("concept_ids")))
    return dedupe_strings(s.strip() for s in ids if s.strip())


def progression_row(event) -> dict[str, Any]:
    data = dict_from_any(event.data)
    event_type = (event.type or "").strip()
    return {
        "id": uuid.uuid4(),
        "user_id": event.user_id,
        "occurred_at": event.occurred_at or datetime.now(timezone.utc),
        "path_id": event.path_id,
        "activity_id": event.activity_id,
        "concept_ids": extract_concept_ids(event),
        "activity_kind": str_from_any(data.get("activity_kind")).strip(),
        "variant": str_from_any(data.get("variant")).strip() or (event.activity_variant or "").strip(),
        "completed": event_type == ACTIVITY_COMPLETED or bool_from_any(data.get("completed")),
        "score": float_from_any(data.get("score"), 0.0),
        "dwell_ms": int_from_any(data.get("dwell_ms"), 0),
        "attempts": int_from_any(data.get("attempts"), 0),
        "metadata": {"event_type": event_type, "event_id": str(event.id)},
    }


async def run_progression_compact(deps: BuildDeps, inp: StageInput) -> ProgressionOutput:
    """
    Compact new events for ``inp.owner_user_id`` within the configured budget.

    Stops when the log is drained, after ``max_seconds`` of wall-clock time or
    once ``max_events`` events were processed.
    """
    deps.require(STAGE, "store")
    require_ids(STAGE, owner_user_id=inp.owner_user_id)
    cfg = deps.settings.get_progression_config()
    page_size = cfg["page_size"] if cfg["page_size"] > 0 else 500
    out = ProgressionOutput()

    async with deps.store.transaction() as repos:
        cursor = await repos.events.get_cursor(inp.owner_user_id, CONSUMER)
    after_at = cursor.last_created_at if cursor is not None else None
    after_id = cursor.last_event_id if cursor is not None else None

    started = time.monotonic()
    while True:
        async with deps.store.transaction() as repos:
            events = await repos.events.list_events_after(inp.owner_user_id, after_at, after_id, page_size)
            if not events:
                break
            rows = [progression_row(ev) for ev in events if ev is not None and ev.id is not None]
            await repos.events.insert_progression(rows)
            last = events[-1]
            await repos.events.upsert_cursor(inp.owner_user_id, CONSUMER, last.created_at, last.id)
        after_at, after_id = last.created_at, last.id
        out.processed += len(rows)
        out.pages += 1
        if time.monotonic() - started > cfg["max_seconds"] or out.processed >= cfg["max_events"]:
            out.budget_exhausted = True
            break

    logger.info("{}: user {} processed={} pages={}", STAGE, inp.owner_user_id, out.processed, out.pages)
    return out
