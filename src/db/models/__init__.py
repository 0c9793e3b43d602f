# SQLAlchemy models
from .artifacts import LearningArtifact
from .base import Base
from .cross_set import (
    EmergentConcept,
    GlobalConceptCoverage,
    MaterialSetEdge,
)
from .events import (
    UserEvent,
    UserEventCursor,
    UserProgressionEvent,
)
from .jobs import JobRun, JobRunEvent
from .materials import (
    Concept,
    ConceptEdge,
    MaterialChunk,
    MaterialFile,
    MaterialFileSection,
    MaterialFileSignature,
    MaterialIntent,
    MaterialSet,
    MaterialSetSummary,
)
from .paths import (
    ChatMessage,
    ChatThread,
    Path,
    PathNode,
    UserPersonalizationPrefs,
)
from .signals import (
    MaterialChunkLink,
    MaterialChunkSignal,
    MaterialEdge,
    MaterialSetConceptCoverage,
    MaterialSetIntent,
)

__all__ = [
    # Base
    "Base",
    # Ingested material
    "MaterialSet",
    "MaterialFile",
    "MaterialChunk",
    "MaterialSetSummary",
    "Concept",
    "ConceptEdge",
    # Per-file derivations
    "MaterialFileSignature",
    "MaterialFileSection",
    "MaterialIntent",
    # Set-level signals
    "MaterialChunkSignal",
    "MaterialSetConceptCoverage",
    "MaterialEdge",
    "MaterialChunkLink",
    "MaterialSetIntent",
    # Cross-set
    "MaterialSetEdge",
    "GlobalConceptCoverage",
    "EmergentConcept",
    # Paths & chat
    "Path",
    "PathNode",
    "ChatThread",
    "ChatMessage",
    "UserPersonalizationPrefs",
    # Events
    "UserEvent",
    "UserEventCursor",
    "UserProgressionEvent",
    # Jobs
    "JobRun",
    "JobRunEvent",
    # Cache
    "LearningArtifact",
]
