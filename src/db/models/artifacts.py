"""Stage cache rows keyed by the hash of each stage's effective input."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import Integer, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID as PG_UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class LearningArtifact(Base):
    """A recorded stage result; a matching ``input_hash`` lets the stage skip."""

    __tablename__ = "learning_artifacts"
    __table_args__ = (
        UniqueConstraint("owner_user_id", "material_set_id", "path_id", "artifact_type", "input_hash"),
    )

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    owner_user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    material_set_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    # Stages without a path use the nil UUID so the unique key stays total.
    path_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    artifact_type: Mapped[str] = mapped_column(Text, nullable=False)
    input_hash: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1)
    meta: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())
