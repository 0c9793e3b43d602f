"""Learning artifact cache rows."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import select

from src.db.models import LearningArtifact

from .base import SessionRepository


class ArtifactRepository(SessionRepository):
    async def get(
        self,
        owner_user_id: UUID,
        material_set_id: UUID,
        path_id: UUID,
        artifact_type: str,
        input_hash: str,
    ) -> LearningArtifact | None:
        result = await self.session.execute(
            select(LearningArtifact).where(
                LearningArtifact.owner_user_id == owner_user_id,
                LearningArtifact.material_set_id == material_set_id,
                LearningArtifact.path_id == path_id,
                LearningArtifact.artifact_type == artifact_type,
                LearningArtifact.input_hash == input_hash,
            )
        )
        return result.scalars().first()

    async def upsert(self, row: dict[str, Any]) -> None:
        await self.upsert_rows(
            LearningArtifact,
            [row],
            ["owner_user_id", "material_set_id", "path_id", "artifact_type", "input_hash"],
        )
