"""Chunk signals and the set-level aggregates derived from them."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any
from uuid import UUID

from sqlalchemy import select, update

from src.db.models import (
    MaterialChunkLink,
    MaterialChunkSignal,
    MaterialEdge,
    MaterialSetConceptCoverage,
    MaterialSetIntent,
)

from .base import SessionRepository

SIGNAL_UPSERT_BATCH = 200
LINK_UPSERT_BATCH = 300


class SignalRepository(SessionRepository):
    """Reads and upserts for chunk signals, coverage, edges, links and set intents."""

    async def list_chunk_signals(self, set_id: UUID) -> list[MaterialChunkSignal]:
        result = await self.session.execute(
            select(MaterialChunkSignal)
            .where(MaterialChunkSignal.material_set_id == set_id)
            .order_by(MaterialChunkSignal.material_file_id, MaterialChunkSignal.material_chunk_id)
        )
        return list(result.scalars().all())

    async def existing_signal_chunk_ids(self, chunk_ids: Sequence[UUID]) -> set[UUID]:
        if not chunk_ids:
            return set()
        result = await self.session.execute(
            select(MaterialChunkSignal.material_chunk_id).where(
                MaterialChunkSignal.material_chunk_id.in_(list(chunk_ids))
            )
        )
        return set(result.scalars().all())

    async def upsert_chunk_signals(self, rows: Sequence[dict[str, Any]]) -> int:
        return await self.upsert_rows(
            MaterialChunkSignal, rows, ["material_chunk_id"], batch_size=SIGNAL_UPSERT_BATCH
        )

    async def update_signal_scores(self, rows: Sequence[dict[str, Any]]) -> int:
        """
        Update score columns of existing signals by id.

        Each row is ``{"id": ..., <attribute>: value, ...}``; only the given
        attributes change.
        """
        if not rows:
            return 0
        for start in range(0, len(rows), SIGNAL_UPSERT_BATCH):
            await self.session.execute(update(MaterialChunkSignal), list(rows[start : start + SIGNAL_UPSERT_BATCH]))
        return len(rows)

    async def list_coverage(self, set_ids: Sequence[UUID]) -> list[MaterialSetConceptCoverage]:
        if not set_ids:
            return []
        result = await self.session.execute(
            select(MaterialSetConceptCoverage)
            .where(MaterialSetConceptCoverage.material_set_id.in_(list(set_ids)))
            .order_by(MaterialSetConceptCoverage.material_set_id, MaterialSetConceptCoverage.concept_key)
        )
        return list(result.scalars().all())

    async def upsert_coverage(self, rows: Sequence[dict[str, Any]]) -> int:
        return await self.upsert_rows(MaterialSetConceptCoverage, rows, ["material_set_id", "concept_key"])

    async def list_edges(self, set_id: UUID) -> list[MaterialEdge]:
        result = await self.session.execute(
            select(MaterialEdge).where(MaterialEdge.material_set_id == set_id)
        )
        return list(result.scalars().all())

    async def upsert_edges(self, rows: Sequence[dict[str, Any]]) -> int:
        return await self.upsert_rows(
            MaterialEdge,
            rows,
            ["material_set_id", "from_material_file_id", "to_material_file_id", "edge_type"],
        )

    async def upsert_chunk_links(self, rows: Sequence[dict[str, Any]]) -> int:
        return await self.upsert_rows(
            MaterialChunkLink,
            rows,
            ["material_set_id", "from_material_chunk_id", "to_material_chunk_id"],
            batch_size=LINK_UPSERT_BATCH,
        )

    async def get_set_intent(self, set_id: UUID) -> MaterialSetIntent | None:
        result = await self.session.execute(
            select(MaterialSetIntent).where(MaterialSetIntent.material_set_id == set_id)
        )
        return result.scalars().first()

    async def list_set_intents(self, set_ids: Sequence[UUID]) -> list[MaterialSetIntent]:
        if not set_ids:
            return []
        result = await self.session.execute(
            select(MaterialSetIntent).where(MaterialSetIntent.material_set_id.in_(list(set_ids)))
        )
        return list(result.scalars().all())

    async def upsert_set_intent(self, row: dict[str, Any]) -> None:
        await self.upsert_rows(MaterialSetIntent, [row], ["material_set_id"])
