"""User-level cross-set aggregates."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any
from uuid import UUID

from sqlalchemy import select

from src.db.models import EmergentConcept, GlobalConceptCoverage, MaterialSetEdge

from .base import SessionRepository


class CrossSetRepository(SessionRepository):
    async def list_global_coverage(
        self, user_id: UUID, concept_ids: Sequence[UUID] | None = None
    ) -> list[GlobalConceptCoverage]:
        stmt = select(GlobalConceptCoverage).where(GlobalConceptCoverage.user_id == user_id)
        if concept_ids is not None:
            if not concept_ids:
                return []
            stmt = stmt.where(GlobalConceptCoverage.global_concept_id.in_(list(concept_ids)))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def upsert_global_coverage(self, rows: Sequence[dict[str, Any]]) -> int:
        return await self.upsert_rows(GlobalConceptCoverage, rows, ["user_id", "global_concept_id"])

    async def upsert_set_edges(self, rows: Sequence[dict[str, Any]]) -> int:
        return await self.upsert_rows(
            MaterialSetEdge,
            rows,
            ["user_id", "from_material_set_id", "to_material_set_id", "relation"],
        )

    async def upsert_emergent_concepts(self, rows: Sequence[dict[str, Any]]) -> int:
        return await self.upsert_rows(EmergentConcept, rows, ["user_id", "key"])

    async def list_set_edges(self, user_id: UUID) -> list[MaterialSetEdge]:
        result = await self.session.execute(
            select(MaterialSetEdge).where(MaterialSetEdge.user_id == user_id)
        )
        return list(result.scalars().all())

    async def list_emergent_concepts(self, user_id: UUID) -> list[EmergentConcept]:
        result = await self.session.execute(
            select(EmergentConcept).where(EmergentConcept.user_id == user_id)
        )
        return list(result.scalars().all())
