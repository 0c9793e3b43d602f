"""User activity log, consumer cursors and compacted progression facts."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import ARRAY, BigInteger, Boolean, Float, Integer, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID as PG_UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class UserEvent(Base):
    """Append-only activity log, monotonic per user by (created_at, id)."""

    __tablename__ = "user_events"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    type: Mapped[str] = mapped_column(Text, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(default=func.now())
    path_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True))
    activity_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True))
    activity_variant: Mapped[str] = mapped_column(Text, default="")
    concept_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True))
    data: Mapped[dict] = mapped_column(JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now(), index=True)


class UserEventCursor(Base):
    """Durable (created_at, id) watermark per (user, consumer)."""

    __tablename__ = "user_event_cursors"
    __table_args__ = (UniqueConstraint("user_id", "consumer"),)

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    consumer: Mapped[str] = mapped_column(Text, nullable=False)
    last_created_at: Mapped[datetime | None] = mapped_column()
    last_event_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True))
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())


class UserProgressionEvent(Base):
    """One compacted fact per consumed user event."""

    __tablename__ = "user_progression_events"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)
    path_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True))
    activity_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True))
    concept_ids: Mapped[list[str]] = mapped_column(ARRAY(Text), default=list)
    activity_kind: Mapped[str] = mapped_column(Text, default="")
    variant: Mapped[str] = mapped_column(Text, default="")
    completed: Mapped[bool] = mapped_column(Boolean, default=False)
    score: Mapped[float] = mapped_column(Float, default=0.0)
    dwell_ms: Mapped[int] = mapped_column(BigInteger, default=0)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    meta: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
