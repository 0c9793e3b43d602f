"""User event log, cursors and progression rows."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import and_, insert, or_, select

from src.db.models import UserEvent, UserEventCursor, UserProgressionEvent

from .base import SessionRepository


class EventRepository(SessionRepository):
    async def get_cursor(self, user_id: UUID, consumer: str) -> UserEventCursor | None:
        result = await self.session.execute(
            select(UserEventCursor).where(
                UserEventCursor.user_id == user_id, UserEventCursor.consumer == consumer
            )
        )
        return result.scalars().first()

    async def list_events_after(
        self,
        user_id: UUID,
        after_created_at: datetime | None,
        after_id: UUID | None,
        limit: int,
    ) -> list[UserEvent]:
        """Events strictly after the (created_at, id) watermark, ascending."""
        stmt = select(UserEvent).where(UserEvent.user_id == user_id)
        if after_created_at is not None and after_id is None:
            stmt = stmt.where(UserEvent.created_at > after_created_at)
        elif after_created_at is not None:
            stmt = stmt.where(
                or_(
                    UserEvent.created_at > after_created_at,
                    and_(UserEvent.created_at == after_created_at, UserEvent.id > after_id),
                )
            )
        stmt = stmt.order_by(UserEvent.created_at, UserEvent.id).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def insert_progression(self, rows: Sequence[dict[str, Any]]) -> int:
        if not rows:
            return 0
        await self.session.execute(insert(UserProgressionEvent.__table__), list(rows))
        return len(rows)

    async def upsert_cursor(self, user_id: UUID, consumer: str, created_at: datetime, event_id: UUID) -> None:
        await self.upsert_rows(
            UserEventCursor,
            [
                {
                    "user_id": user_id,
                    "consumer": consumer,
                    "last_created_at": created_at,
                    "last_event_id": event_id,
                }
            ],
            ["user_id", "consumer"],
        )
