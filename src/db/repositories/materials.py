"""Reads of ingested material and writes of per-file derivations."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, insert, select, update

from src.db.models import (
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

from .base import SessionRepository


class MaterialRepository(SessionRepository):
    """Material sets, files, chunks, signatures, sections, intents and concepts."""

    # ----------------------------------------
    # Ingested material
    # ----------------------------------------

    async def get_set(self, set_id: UUID) -> MaterialSet | None:
        return await self.session.get(MaterialSet, set_id)

    async def list_source_sets(self, user_id: UUID) -> list[MaterialSet]:
        """Sets owned by the user that were not derived from another set."""
        result = await self.session.execute(
            select(MaterialSet)
            .where(MaterialSet.user_id == user_id, MaterialSet.source_material_set_id.is_(None))
            .order_by(MaterialSet.created_at, MaterialSet.id)
        )
        return list(result.scalars().all())

    async def get_set_summary(self, set_id: UUID) -> MaterialSetSummary | None:
        result = await self.session.execute(
            select(MaterialSetSummary).where(MaterialSetSummary.material_set_id == set_id)
        )
        return result.scalars().first()

    async def list_files(self, set_id: UUID) -> list[MaterialFile]:
        result = await self.session.execute(
            select(MaterialFile)
            .where(MaterialFile.material_set_id == set_id)
            .order_by(MaterialFile.created_at, MaterialFile.id)
        )
        return list(result.scalars().all())

    async def list_chunks(self, file_ids: Sequence[UUID]) -> dict[UUID, list[MaterialChunk]]:
        """Chunks grouped by file, each list ordered by chunk index."""
        out: dict[UUID, list[MaterialChunk]] = defaultdict(list)
        if not file_ids:
            return out
        result = await self.session.execute(
            select(MaterialChunk)
            .where(MaterialChunk.material_file_id.in_(list(file_ids)))
            .order_by(MaterialChunk.material_file_id, MaterialChunk.index)
        )
        for chunk in result.scalars().all():
            out[chunk.material_file_id].append(chunk)
        return out

    async def update_chunk_metadata(self, chunk_id: UUID, updates: dict[str, Any]) -> bool:
        """Merge ``updates`` into the chunk's metadata; returns False when nothing changed."""
        result = await self.session.execute(
            select(MaterialChunk).where(MaterialChunk.id == chunk_id).with_for_update()
        )
        chunk = result.scalars().first()
        if chunk is None:
            return False
        current = dict(chunk.meta or {})
        merged = {**current, **updates}
        if merged == current:
            return False
        await self.session.execute(
            update(MaterialChunk).where(MaterialChunk.id == chunk_id).values({MaterialChunk.meta: merged})
        )
        return True

    # ----------------------------------------
    # Signatures, sections, intents
    # ----------------------------------------

    async def get_signatures(self, file_ids: Sequence[UUID]) -> dict[UUID, MaterialFileSignature]:
        if not file_ids:
            return {}
        result = await self.session.execute(
            select(MaterialFileSignature).where(MaterialFileSignature.material_file_id.in_(list(file_ids)))
        )
        return {row.material_file_id: row for row in result.scalars().all()}

    async def get_intents(self, file_ids: Sequence[UUID]) -> dict[UUID, MaterialIntent]:
        if not file_ids:
            return {}
        result = await self.session.execute(
            select(MaterialIntent).where(MaterialIntent.material_file_id.in_(list(file_ids)))
        )
        return {row.material_file_id: row for row in result.scalars().all()}

    async def list_sections(self, file_ids: Sequence[UUID]) -> dict[UUID, list[MaterialFileSection]]:
        out: dict[UUID, list[MaterialFileSection]] = defaultdict(list)
        if not file_ids:
            return out
        result = await self.session.execute(
            select(MaterialFileSection)
            .where(MaterialFileSection.material_file_id.in_(list(file_ids)))
            .order_by(MaterialFileSection.material_file_id, MaterialFileSection.section_index)
        )
        for section in result.scalars().all():
            out[section.material_file_id].append(section)
        return out

    async def upsert_signature(self, row: dict[str, Any]) -> None:
        await self.upsert_rows(MaterialFileSignature, [row], ["material_file_id"])

    async def upsert_intents(self, rows: Sequence[dict[str, Any]]) -> int:
        return await self.upsert_rows(MaterialIntent, rows, ["material_file_id"])

    async def replace_sections(self, file_id: UUID, rows: Sequence[dict[str, Any]]) -> int:
        """Delete every section of the file, then insert ``rows``."""
        await self.session.execute(
            delete(MaterialFileSection).where(MaterialFileSection.material_file_id == file_id)
        )
        if not rows:
            return 0
        await self.session.execute(insert(MaterialFileSection.__table__), list(rows))
        return len(rows)

    # ----------------------------------------
    # Concepts
    # ----------------------------------------

    async def list_concepts(self, path_id: UUID) -> list[Concept]:
        result = await self.session.execute(
            select(Concept).where(Concept.scope == "path", Concept.scope_id == path_id)
        )
        return list(result.scalars().all())

    async def count_concept_edges(self, path_id: UUID) -> int:
        """Edges whose source concept belongs to the path."""
        result = await self.session.execute(
            select(func.count())
            .select_from(ConceptEdge)
            .join(Concept, Concept.id == ConceptEdge.from_concept_id)
            .where(Concept.scope == "path", Concept.scope_id == path_id)
        )
        return int(result.scalar_one())

    async def update_concept_weights(self, path_id: UUID, weights: dict[str, float]) -> int:
        """Store ``signal_weight`` in the metadata of each matching path concept."""
        if not weights:
            return 0
        updated = 0
        for concept in await self.list_concepts(path_id):
            weight = weights.get((concept.key or "").strip().lower())
            if weight is None:
                continue
            meta = dict(concept.meta or {})
            if meta.get("signal_weight") == weight:
                continue
            meta["signal_weight"] = weight
            await self.session.execute(update(Concept).where(Concept.id == concept.id).values({Concept.meta: meta}))
            updated += 1
        return updated
