"""
Set-level signal tables: chunk signals and their aggregates.

Chunk signals are owned by their chunk; coverage, edge, link and set-intent rows
are owned by the material set. All scores live in [0, 1].
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import ARRAY, Float, ForeignKey, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID as PG_UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class MaterialChunkSignal(Base):
    """Instructional role and scores for one chunk."""

    __tablename__ = "material_chunk_signals"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    material_chunk_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_chunks.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    material_file_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    material_set_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    role: Mapped[str] = mapped_column(Text, default="")
    signal_strength: Mapped[float] = mapped_column(Float, default=0.0)
    floor_signal: Mapped[float] = mapped_column(Float, default=0.0)
    intent_alignment_score: Mapped[float] = mapped_column(Float, default=0.0)
    set_position_score: Mapped[float] = mapped_column(Float, default=0.0)
    novelty_score: Mapped[float] = mapped_column(Float, default=0.0)
    density_score: Mapped[float] = mapped_column(Float, default=0.0)
    complexity_score: Mapped[float] = mapped_column(Float, default=0.0)
    load_bearing_score: Mapped[float] = mapped_column(Float, default=0.0)
    compound_weight: Mapped[float] = mapped_column(Float, default=0.0)
    # {"establishes": [...], "reinforces": [...], "builds_on": [...], "points_toward": [...]}
    trajectory: Mapped[dict] = mapped_column(JSONB, default=dict)
    meta: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())


class MaterialSetConceptCoverage(Base):
    """How a concept is taught within one set."""

    __tablename__ = "material_set_concept_coverage"
    __table_args__ = (UniqueConstraint("material_set_id", "concept_key"),)

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    material_set_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    path_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True))
    concept_key: Mapped[str] = mapped_column(Text, nullable=False)
    canonical_concept_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True))
    coverage_type: Mapped[str] = mapped_column(Text, default="mentions")
    depth: Mapped[str] = mapped_column(Text, default="surface")
    score: Mapped[float] = mapped_column(Float, default=0.0)
    source_material_file_ids: Mapped[list[str]] = mapped_column(ARRAY(Text), default=list)
    meta: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())


class MaterialEdge(Base):
    """Directed file-to-file relation within a set."""

    __tablename__ = "material_edges"
    __table_args__ = (
        UniqueConstraint("material_set_id", "from_material_file_id", "to_material_file_id", "edge_type"),
    )

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    material_set_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    from_material_file_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    to_material_file_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    edge_type: Mapped[str] = mapped_column(Text, nullable=False)
    strength: Mapped[float] = mapped_column(Float, default=0.0)
    bridging_concepts: Mapped[list[str]] = mapped_column(ARRAY(Text), default=list)
    meta: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())


class MaterialChunkLink(Base):
    """Chunk-to-chunk link through a shared concept."""

    __tablename__ = "material_chunk_links"
    __table_args__ = (
        UniqueConstraint("material_set_id", "from_material_chunk_id", "to_material_chunk_id"),
    )

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    material_set_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    from_material_chunk_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    to_material_chunk_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    relation: Mapped[str] = mapped_column(Text, default="reinforces")
    strength: Mapped[float] = mapped_column(Float, default=0.0)
    meta: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())


class MaterialSetIntent(Base):
    """Collective intent and spine for a whole set."""

    __tablename__ = "material_set_intents"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    material_set_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), unique=True, nullable=False)
    from_state: Mapped[str] = mapped_column(Text, default="")
    to_state: Mapped[str] = mapped_column(Text, default="")
    core_thread: Mapped[str] = mapped_column(Text, default="")
    spine_material_file_ids: Mapped[list[str]] = mapped_column(ARRAY(Text), default=list)
    satellite_material_file_ids: Mapped[list[str]] = mapped_column(ARRAY(Text), default=list)
    gaps_concept_keys: Mapped[list[str]] = mapped_column(ARRAY(Text), default=list)
    redundancy_notes: Mapped[list[str]] = mapped_column(ARRAY(Text), default=list)
    conflict_notes: Mapped[list[str]] = mapped_column(ARRAY(Text), default=list)
    meta: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())
