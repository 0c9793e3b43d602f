"""
Core Module - shared errors, coercion helpers and concurrency primitives.

Every build stage imports from here rather than reimplementing these.
"""

from src.core.concurrency import bounded_gather
from src.core.exceptions import (
    ConfigurationError,
    IntegrityViolation,
    PartialDerivationWarning,
    PipelineError,
    TransientExternalError,
    UpstreamDataError,
)

__all__ = [
    "bounded_gather",
    # Errors
    "PipelineError",
    "ConfigurationError",
    "UpstreamDataError",
    "TransientExternalError",
    "IntegrityViolation",
    "PartialDerivationWarning",
]
