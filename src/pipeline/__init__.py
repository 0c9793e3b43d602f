"""
Build stages for the material knowledge graph.

Each stage is ``async run_<stage>(deps, inp) -> output``:
- file_signature: per-file summaries, outlines and embeddings
- material_signal: intents, chunk signals, set coverage, edges and cross-set signals
- path_intake: learning-path proposal and the clarification round-trip
- progression: event log compaction
"""

from src.pipeline.acceptance import (
    AcceptanceMetrics,
    AcceptanceResult,
    AcceptanceThresholds,
    compare_concept_counts,
    evaluate_acceptance,
)
from src.pipeline.artifact_cache import ArtifactCache, ArtifactKey
from src.pipeline.cross_set import build_cross_set_signals, load_cross_set_relevance_by_key
from src.pipeline.file_signature import FileSignatureOutput, run_file_signature
from src.pipeline.material_signal import (
    MaterialSignalOutput,
    load_material_set_signal_context,
    run_material_signal,
)
from src.pipeline.path_intake import PathIntakeOutput, run_path_intake
from src.pipeline.progression import ProgressionOutput, run_progression_compact
from src.pipeline.stage import LLM, BuildDeps, StageInput

__all__ = [
    # Contract
    "BuildDeps",
    "StageInput",
    "LLM",
    # Stages
    "run_file_signature",
    "FileSignatureOutput",
    "run_material_signal",
    "MaterialSignalOutput",
    "run_path_intake",
    "PathIntakeOutput",
    "run_progression_compact",
    "ProgressionOutput",
    # Signal readers
    "build_cross_set_signals",
    "load_cross_set_relevance_by_key",
    "load_material_set_signal_context",
    # Cache
    "ArtifactCache",
    "ArtifactKey",
    # Acceptance
    "AcceptanceMetrics",
    "AcceptanceThresholds",
    "AcceptanceResult",
    "evaluate_acceptance",
    "compare_concept_counts",
]
