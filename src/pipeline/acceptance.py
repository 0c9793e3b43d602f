"""
Acceptance Evaluator - aggregate sanity checks on final artifact counts.

Checks are only emitted when they apply (e.g. the large-set concept floor only
for large sets); the overall result passes when every emitted check passes.
Size thresholds (large_page_threshold, large_file_threshold, small_page_threshold) only
select which checks apply. The min_* floors tighten as they rise and the max_* ceilings
tighten as they fall; tightening any of them never turns a failing check into a passing one.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from loguru import logger

from src.core.coerce import dict_from_any, str_list_from_any
from src.core.exceptions import UpstreamDataError

from .adaptive_params import signals_from_materials

PROMPT_SIZE_NEEDLES = (
    "context_length_exceeded",
    "context length",
    "maximum context",
    "max context",
    "max_tokens",
    "prompt too long",
    "token limit",
    "exceeds the context window",
)
MAX_HINTS = 3
MAX_HINT_CHARS = 180


@dataclass
class AcceptanceMetrics:
    page_count: int = 0
    file_count: int = 0
    section_count: int = 0
    chunk_count: int = 0
    concept_count: int = 0
    edge_count: int = 0
    node_count: int = 0
    unit_count: int = 0
    lesson_count: int = 0
    uncovered_concepts: int = 0
    prompt_size_errors: int = 0
    prompt_error_hints: list[str] = field(default_factory=list)

    @property
    def coverage_ratio(self) -> float:
        if self.concept_count <= 0:
            return 0.0
        return max(0.0, min(1.0, 1.0 - self.uncovered_concepts / self.concept_count))


@dataclass
class AcceptanceThresholds:
    large_page_threshold: int = 200
    large_file_threshold: int = 6
    min_concepts_large: int = 40
    min_concepts_per_page: float = 0.08
    min_nodes_per_concept: float = 0.2
    max_uncovered_ratio: float = 0.25
    small_page_threshold: int = 40
    min_units_small: int = 1
    min_lessons_small: int = 1
    min_nodes_small: int = 1
    max_prompt_size_failures: int = 0


@dataclass
class AcceptanceCheck:
    id: str
    passed: bool
    details: str = ""
    metrics: dict[str, Any] = field(default_factory=dict)

    @property
    def warning(self) -> str | None:
        return None if self.passed else f"{self.id}: {self.details}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "passed": self.passed,
            "details": self.details,
            "warning": self.warning,
            "metrics": self.metrics,
        }


@dataclass
class AcceptanceResult:
    passed: bool
    checks: list[AcceptanceCheck]
    warnings: list[str]
    metrics: AcceptanceMetrics

    def check(self, check_id: str) -> AcceptanceCheck | None:
        return next((c for c in self.checks if c.id == check_id), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "checks": [c.to_dict() for c in self.checks],
            "warnings": list(self.warnings),
        }


def evaluate_acceptance(
    metrics: AcceptanceMetrics,
    thresholds: AcceptanceThresholds | None = None,
) -> AcceptanceResult:
    t = thresholds or AcceptanceThresholds()
    checks: list[AcceptanceCheck] = []

    if metrics.page_count >= t.large_page_threshold or metrics.file_count >= t.large_file_threshold:
        required = max(t.min_concepts_large, math.ceil(metrics.page_count * t.min_concepts_per_page))
        checks.append(
            AcceptanceCheck(
                id="large_set_concepts",
                passed=metrics.concept_count >= required,
                details=f"concepts={metrics.concept_count} required={required}",
                metrics={"concept_count": metrics.concept_count, "required": required},
            )
        )

    if metrics.concept_count > 0:
        required_nodes = math.ceil(metrics.concept_count * t.min_nodes_per_concept)
        checks.append(
            AcceptanceCheck(
                id="nodes_scale_with_concepts",
                passed=metrics.node_count >= required_nodes,
                details=f"nodes={metrics.node_count} required={required_nodes}",
                metrics={"node_count": metrics.node_count, "required": required_nodes},
            )
        )

        uncovered_ratio = metrics.uncovered_concepts / metrics.concept_count
        checks.append(
            AcceptanceCheck(
                id="coverage_ratio_stable",
                passed=uncovered_ratio <= t.max_uncovered_ratio,
                details=f"uncovered_ratio={uncovered_ratio:.2f} max={t.max_uncovered_ratio:.2f}",
                metrics={"uncovered_ratio": uncovered_ratio, "max": t.max_uncovered_ratio},
            )
        )

    if 0 < metrics.page_count <= t.small_page_threshold:
        units = metrics.unit_count or metrics.node_count
        lessons = metrics.lesson_count or metrics.node_count
        checks.append(
            AcceptanceCheck(
                id="small_set_node_counts",
                passed=(
                    units >= t.min_units_small
                    and lessons >= t.min_lessons_small
                    and metrics.node_count >= t.min_nodes_small
                ),
                details=f"units={units} lessons={lessons} nodes={metrics.node_count}",
                metrics={"units": units, "lessons": lessons, "nodes": metrics.node_count},
            )
        )

    checks.append(
        AcceptanceCheck(
            id="prompt_size_failures",
            passed=metrics.prompt_size_errors <= t.max_prompt_size_failures,
            details=f"prompt_size_errors={metrics.prompt_size_errors} max={t.max_prompt_size_failures}",
            metrics={"prompt_size_errors": metrics.prompt_size_errors, "max": t.max_prompt_size_failures},
        )
    )

    warnings = [c.warning for c in checks if c.warning]
    return AcceptanceResult(passed=not warnings, checks=checks, warnings=warnings, metrics=metrics)


def compare_concept_counts(large: AcceptanceMetrics, small: AcceptanceMetrics) -> AcceptanceCheck:
    """A larger upload should yield strictly more concepts than a smaller one."""
    return AcceptanceCheck(
        id="large_vs_small_concepts",
        passed=large.concept_count > small.concept_count,
        details=f"large={large.concept_count} small={small.concept_count}",
        metrics={"large": large.concept_count, "small": small.concept_count},
    )


def is_prompt_size_error(message: str) -> bool:
    s = (message or "").strip().lower()
    return bool(s) and any(needle in s for needle in PROMPT_SIZE_NEEDLES)


def collect_prompt_size_failures(messages: Iterable[str]) -> tuple[int, list[str]]:
    """Count context-length failures among job error messages, keeping a few hints."""
    hits = 0
    hints: list[str] = []
    for message in messages:
        if not is_prompt_size_error(message):
            continue
        hits += 1
        trimmed = message.strip()
        if trimmed and len(hints) < MAX_HINTS:
            hints.append(trimmed[:MAX_HINT_CHARS])
    return hits, hints


def count_uncovered_concepts(path_metadata: Any) -> int:
    """Number of concept keys listed under ``audit.coverage.uncovered_concept_keys``."""
    audit = dict_from_any(dict_from_any(path_metadata).get("audit"))
    coverage = dict_from_any(audit.get("coverage"))
    return len(str_list_from_any(coverage.get("uncovered_concept_keys")))


def prompt_failure_texts(entries: Iterable[tuple[str, str]]) -> list[str]:
    """One text per (message, data) entry: the data stands in when the message is not a prompt-size error."""
    return [message if is_prompt_size_error(message) or not data else data for message, data in entries]


async def compute_acceptance_metrics(store: Any, path_id: UUID) -> AcceptanceMetrics:
    """
    Load acceptance metrics for a built path.

    Counts come from the path's material set (files, chunks, pages, sections),
    its path-scoped concepts and edges, and its unit and lesson nodes. Uncovered
    concepts are read from the path's audit metadata. Prompt-size failures are
    counted on the latest build job for the path.

    Raises:
        UpstreamDataError: the path does not exist
    """
    async with store.transaction() as repos:
        path = await repos.paths.get(path_id)
        if path is None:
            raise UpstreamDataError(f"path {path_id} not found")

        files: list[Any] = []
        chunks_by_file: dict[Any, list[Any]] = {}
        section_count = 0
        if path.material_set_id is not None:
            files = await repos.materials.list_files(path.material_set_id)
            file_ids = [f.id for f in files]
            if file_ids:
                chunks_by_file = await repos.materials.list_chunks(file_ids)
                sections = await repos.materials.list_sections(file_ids)
                section_count = sum(len(rows) for rows in sections.values())

        concept_count = len(await repos.materials.list_concepts(path_id))
        edge_count = await repos.materials.count_concept_edges(path_id)
        unit_count, lesson_count = await repos.paths.count_nodes(path_id)

        entries: list[tuple[str, str]] = []
        job = await repos.jobs.latest_job(path.user_id, "path", path_id)
        if job is not None:
            entries = await repos.jobs.error_entries(job)

    node_count = unit_count + lesson_count
    signals = signals_from_materials(
        files,
        chunks_by_file,
        section_count=section_count,
        concept_count=concept_count,
        edge_count=edge_count,
        node_count=node_count,
    )
    prompt_errors, hints = collect_prompt_size_failures(prompt_failure_texts(entries))
    metrics = AcceptanceMetrics(
        page_count=signals.page_count,
        file_count=signals.file_count,
        section_count=signals.section_count,
        chunk_count=signals.chunk_count,
        concept_count=concept_count,
        edge_count=edge_count,
        node_count=node_count,
        unit_count=unit_count,
        lesson_count=lesson_count,
        uncovered_concepts=count_uncovered_concepts(path.meta),
        prompt_size_errors=prompt_errors,
        prompt_error_hints=hints,
    )
    logger.debug("acceptance metrics for path {}: {}", path_id, metrics)
    return metrics
