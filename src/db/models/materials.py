"""
Material tables: uploaded sets, their files and chunks, and per-file derivations.

MaterialSet, MaterialFile, MaterialChunk and MaterialSetSummary are written by the
ingestion service; the build pipeline only reads them (plus chunk metadata merges).
Signatures, sections and intents are owned by their file.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    ARRAY,
    BigInteger,
    Float,
    ForeignKey,
    Integer,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base

# ========================================
# INGESTED MATERIAL (read-only here)
# ========================================


class MaterialSet(Base):
    """A user-owned bundle of uploaded files."""

    __tablename__ = "material_sets"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    # Derived sets point at the upload they were split from; source sets have no parent.
    source_material_set_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("material_sets.id", ondelete="SET NULL")
    )
    title: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(Text, default="pending")
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())

    files: Mapped[list[MaterialFile]] = relationship(back_populates="material_set")


class MaterialFile(Base):
    """A source document inside a material set."""

    __tablename__ = "material_files"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    material_set_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_sets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    original_name: Mapped[str] = mapped_column(Text, default="")
    mime_type: Mapped[str] = mapped_column(Text, default="")
    size_bytes: Mapped[int] = mapped_column(BigInteger, default=0)
    storage_key: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(Text, default="")
    extracted_kind: Mapped[str] = mapped_column(Text, default="")
    extracted_at: Mapped[datetime | None] = mapped_column()
    ai_type: Mapped[str] = mapped_column(Text, default="")
    ai_topics: Mapped[list[str]] = mapped_column(ARRAY(Text), default=list)
    extraction_diagnostics: Mapped[dict] = mapped_column(JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())

    material_set: Mapped[MaterialSet] = relationship(back_populates="files")


class MaterialChunk(Base):
    """A contiguous extracted span, ordered by ``index`` within its file."""

    __tablename__ = "material_chunks"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    material_file_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_files.id", ondelete="CASCADE"), nullable=False, index=True
    )
    index: Mapped[int] = mapped_column(Integer, default=0)
    text: Mapped[str] = mapped_column(Text, default="")
    page: Mapped[int | None] = mapped_column(Integer)
    start_sec: Mapped[float | None] = mapped_column(Float)
    end_sec: Mapped[float | None] = mapped_column(Float)
    meta: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())


class MaterialSetSummary(Base):
    """Set-level library summary produced at ingestion."""

    __tablename__ = "material_set_summaries"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    material_set_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_sets.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    subject: Mapped[str] = mapped_column(Text, default="")
    level: Mapped[str] = mapped_column(Text, default="")
    summary_md: Mapped[str] = mapped_column(Text, default="")
    tags: Mapped[list[str]] = mapped_column(ARRAY(Text), default=list)
    concept_keys: Mapped[list[str]] = mapped_column(ARRAY(Text), default=list)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())


# ========================================
# PER-FILE DERIVATIONS
# ========================================


class MaterialFileSignature(Base):
    """One structured signature per file (summary, topics, outline, embedding)."""

    __tablename__ = "material_file_signatures"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    material_file_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_files.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    material_set_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, default=2)
    language: Mapped[str] = mapped_column(Text, default="")
    quality: Mapped[dict] = mapped_column(JSONB, default=dict)
    difficulty: Mapped[str] = mapped_column(Text, default="")
    domain_tags: Mapped[list[str]] = mapped_column(ARRAY(Text), default=list)
    topics: Mapped[list[str]] = mapped_column(ARRAY(Text), default=list)
    concept_keys: Mapped[list[str]] = mapped_column(ARRAY(Text), default=list)
    summary_md: Mapped[str] = mapped_column(Text, default="")
    summary_embedding: Mapped[list[float]] = mapped_column(ARRAY(Float), default=list)
    outline_json: Mapped[dict] = mapped_column(JSONB, default=dict)
    outline_confidence: Mapped[float] = mapped_column(Float, default=0.0)
    citations: Mapped[list[str]] = mapped_column(ARRAY(Text), default=list)
    fingerprint: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())


class MaterialFileSection(Base):
    """Flattened outline entry; recreated as a whole per file."""

    __tablename__ = "material_file_sections"
    __table_args__ = (UniqueConstraint("material_file_id", "section_index"),)

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    material_file_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_files.id", ondelete="CASCADE"), nullable=False, index=True
    )
    section_index: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(Text, default="")
    path: Mapped[str] = mapped_column(Text, default="")
    start_page: Mapped[int | None] = mapped_column(Integer)
    end_page: Mapped[int | None] = mapped_column(Integer)
    start_sec: Mapped[float | None] = mapped_column(Float)
    end_sec: Mapped[float | None] = mapped_column(Float)
    text_excerpt: Mapped[str] = mapped_column(Text, default="")
    embedding: Mapped[list[float]] = mapped_column(ARRAY(Float), default=list)
    meta: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())


class MaterialIntent(Base):
    """Per-file from-state / to-state / core thread."""

    __tablename__ = "material_intents"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    material_file_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_files.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    material_set_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    from_state: Mapped[str] = mapped_column(Text, default="")
    to_state: Mapped[str] = mapped_column(Text, default="")
    core_thread: Mapped[str] = mapped_column(Text, default="")
    destination_concepts: Mapped[list[str]] = mapped_column(ARRAY(Text), default=list)
    prerequisite_concepts: Mapped[list[str]] = mapped_column(ARRAY(Text), default=list)
    assumed_knowledge: Mapped[list[str]] = mapped_column(ARRAY(Text), default=list)
    meta: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())


class Concept(Base):
    """Path-scoped concept; ``canonical_concept_id`` links to the user-global concept."""

    __tablename__ = "concepts"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    scope: Mapped[str] = mapped_column(Text, default="path")
    scope_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), index=True)
    key: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, default="")
    canonical_concept_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True))
    meta: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())


class ConceptEdge(Base):
    """Directed relation between two concepts (prerequisite, related, ...)."""

    __tablename__ = "concept_edges"
    __table_args__ = (UniqueConstraint("from_concept_id", "to_concept_id", "edge_type"),)

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    from_concept_id: Mapped[UUID] = mapped_column(
        ForeignKey("concepts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    to_concept_id: Mapped[UUID] = mapped_column(
        ForeignKey("concepts.id", ondelete="CASCADE"), nullable=False
    )
    edge_type: Mapped[str] = mapped_column(Text, default="prereq")
    strength: Mapped[float] = mapped_column(Float, default=1.0)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
