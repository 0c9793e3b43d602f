"""
Embedding Service - batched dense embeddings over a remote embedder.

Summaries and outline sections are embedded through any client exposing
``async embed(texts) -> vectors``. Large inputs are split into batches that run
under a bounded concurrency; every batch must return exactly one vector per
input text.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

import numpy as np
from loguru import logger

from src.core.concurrency import bounded_gather
from src.core.exceptions import IntegrityViolation


class Embedder(Protocol):
    async def embed(self, texts: list[str]) -> list[list[float]]: ...


class EmbeddingService:
    """
    Batch texts through an embedder and compare vectors.

    Example:
        >>> service = EmbeddingService(client, batch_size=64, concurrency=2)
        >>> vectors = await service.embed_batched(["What is TCP?", "What is UDP?"])
    """

    def __init__(self, embedder: Embedder, batch_size: int = 64, concurrency: int = 2):
        self.embedder = embedder
        self.batch_size = max(1, batch_size)
        self.concurrency = max(1, concurrency)

    async def embed_one(self, text: str) -> list[float]:
        vectors = await self.embedder.embed([text])
        if len(vectors) != 1:
            raise IntegrityViolation(f"embedding count mismatch: got {len(vectors)} want 1")
        return vectors[0]

    async def embed_batched(self, texts: Sequence[str]) -> list[list[float]]:
        """
        Embed ``texts`` in batches, preserving input order.

        Raises:
            IntegrityViolation: when any batch returns the wrong number of vectors
        """
        if not texts:
            return []
        batches = [list(texts[i : i + self.batch_size]) for i in range(0, len(texts), self.batch_size)]

        async def run(batch: list[str]) -> list[list[float]]:
            vectors = await self.embedder.embed(batch)
            if len(vectors) != len(batch):
                raise IntegrityViolation(
                    f"embedding count mismatch: got {len(vectors)} want {len(batch)}"
                )
            return vectors

        results = await bounded_gather(self.concurrency, batches, run)
        out = [vec for batch in results for vec in batch]
        logger.debug("Embedded {} texts in {} batches", len(out), len(batches))
        return out

    @staticmethod
    def cosine_similarity(emb1: Sequence[float] | np.ndarray, emb2: Sequence[float] | np.ndarray) -> float:
        """
        Calculate cosine similarity between two embeddings.

        Returns:
            Similarity between -1 and 1; 0.0 when either vector is empty or zero.
        """
        a = np.asarray(emb1, dtype=np.float64)
        b = np.asarray(emb2, dtype=np.float64)
        if a.size == 0 or b.size == 0 or a.shape != b.shape:
            return 0.0
        norm1 = np.linalg.norm(a)
        norm2 = np.linalg.norm(b)
        if norm1 == 0 or norm2 == 0:
            return 0.0
        return float(np.dot(a, b) / (norm1 * norm2))

    @staticmethod
    def mean_vector(vectors: Sequence[Sequence[float]]) -> list[float]:
        """Element-wise mean of equal-length vectors (empty ones are ignored)."""
        usable = [v for v in vectors if v]
        if not usable:
            return []
        dim = len(usable[0])
        usable = [v for v in usable if len(v) == dim]
        return np.mean(np.asarray(usable, dtype=np.float64), axis=0).tolist()
