"""
Semantic helpers for embedding-based similarity.

Provides batched embedding over a remote embedder and the numpy vector math
used by the soft-split check.
"""

from src.semantic.embedding_service import Embedder, EmbeddingService

__all__ = [
    "Embedder",
    "EmbeddingService",
]
