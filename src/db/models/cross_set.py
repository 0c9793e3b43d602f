"""User-level tables spanning all of a user's source material sets."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import ARRAY, Float, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID as PG_UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class MaterialSetEdge(Base):
    """Directed set-to-set relation for one user."""

    __tablename__ = "material_set_edges"
    __table_args__ = (
        UniqueConstraint("user_id", "from_material_set_id", "to_material_set_id", "relation"),
    )

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    from_material_set_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    to_material_set_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    relation: Mapped[str] = mapped_column(Text, nullable=False)
    strength: Mapped[float] = mapped_column(Float, default=0.0)
    bridging_concept_ids: Mapped[list[str]] = mapped_column(ARRAY(Text), default=list)
    meta: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())


class GlobalConceptCoverage(Base):
    """Coverage of one canonical concept across a user's sets."""

    __tablename__ = "global_concept_coverage"
    __table_args__ = (UniqueConstraint("user_id", "global_concept_id"),)

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    global_concept_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    material_set_ids: Mapped[list[str]] = mapped_column(ARRAY(Text), default=list)
    coverage_depth: Mapped[float] = mapped_column(Float, default=0.0)
    exposure_score: Mapped[float] = mapped_column(Float, default=0.0)
    cross_set_relevance: Mapped[float] = mapped_column(Float, default=0.0)
    meta: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())


class EmergentConcept(Base):
    """LLM-proposed concept that only arises from combining sets."""

    __tablename__ = "emergent_concepts"
    __table_args__ = (UniqueConstraint("user_id", "key"),)

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    key: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, default="")
    summary: Mapped[str] = mapped_column(Text, default="")
    source_material_set_ids: Mapped[list[str]] = mapped_column(ARRAY(Text), default=list)
    prereq_concept_ids: Mapped[list[str]] = mapped_column(ARRAY(Text), default=list)
    meta: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())
