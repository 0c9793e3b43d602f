"""
Error kinds raised by the build stages.

Stages raise these at their boundary; the external saga runner decides whether a
failure is retried. PartialDerivationWarning is logged by the stage and never
escapes it.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for stage failures."""

    kind = "pipeline_error"

    def __init__(self, message: str, *, stage: str | None = None):
        super().__init__(message)
        self.stage = stage

    def to_dict(self) -> dict[str, str | None]:
        return {"kind": self.kind, "stage": self.stage, "message": str(self)}


class ConfigurationError(PipelineError):
    """A stage was invoked without required collaborators or identifiers."""

    kind = "configuration_error"


class UpstreamDataError(PipelineError):
    """Parent rows the stage depends on are missing (no files, no chunks)."""

    kind = "upstream_data_error"


class TransientExternalError(PipelineError):
    """An LLM, embedding, vector-store or database call failed."""

    kind = "transient_external_error"


class IntegrityViolation(PipelineError):
    """A derived result is inconsistent with its request (e.g. embedding count mismatch)."""

    kind = "integrity_violation"


class PartialDerivationWarning(PipelineError):
    """A non-essential substep failed; the stage continues with remaining counts."""

    kind = "partial_derivation"
