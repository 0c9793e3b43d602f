"""Path metadata and chat thread access for path intake."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, insert, select, update

from src.db.models import ChatMessage, ChatThread, Path, PathNode, UserPersonalizationPrefs

from .base import SessionRepository


class PathRepository(SessionRepository):
    async def get(self, path_id: UUID) -> Path | None:
        return await self.session.get(Path, path_id)

    async def update_meta(self, path_id: UUID, updates: dict[str, Any]) -> None:
        """Merge ``updates`` into the path's metadata under a row lock."""
        result = await self.session.execute(select(Path).where(Path.id == path_id).with_for_update())
        path = result.scalars().first()
        if path is None:
            return
        meta = {**(path.meta or {}), **updates}
        await self.session.execute(update(Path).where(Path.id == path_id).values({Path.meta: meta}))

    async def get_user_prefs(self, user_id: UUID) -> Any | None:
        """The user's stored personalization prefs, or None when unset."""
        result = await self.session.execute(
            select(UserPersonalizationPrefs.prefs_json).where(UserPersonalizationPrefs.user_id == user_id)
        )
        return result.scalars().first()

    async def count_nodes(self, path_id: UUID) -> tuple[int, int]:
        """(units, lessons): top-level nodes and nodes with a parent."""
        result = await self.session.execute(
            select(
                func.count().filter(PathNode.parent_node_id.is_(None)),
                func.count().filter(PathNode.parent_node_id.is_not(None)),
            ).where(PathNode.path_id == path_id)
        )
        units, lessons = result.one()
        return int(units or 0), int(lessons or 0)


class ChatRepository(SessionRepository):
    async def lock_thread(self, thread_id: UUID) -> ChatThread | None:
        result = await self.session.execute(
            select(ChatThread).where(ChatThread.id == thread_id).with_for_update()
        )
        return result.scalars().first()

    async def list_messages(self, thread_id: UUID, limit: int = 300) -> list[ChatMessage]:
        """The latest ``limit`` messages in ascending ``seq`` order."""
        result = await self.session.execute(
            select(ChatMessage)
            .where(ChatMessage.thread_id == thread_id)
            .order_by(ChatMessage.seq.desc())
            .limit(limit)
        )
        return sorted(result.scalars().all(), key=lambda m: m.seq)

    async def find_message(self, thread_id: UUID, user_id: UUID, kind: str, job_id: UUID) -> ChatMessage | None:
        result = await self.session.execute(
            select(ChatMessage).where(
                ChatMessage.thread_id == thread_id,
                ChatMessage.user_id == user_id,
                ChatMessage.meta["kind"].astext == kind,
                ChatMessage.meta["job_id"].astext == str(job_id),
            )
        )
        return result.scalars().first()

    async def create_message(self, row: dict[str, Any]) -> ChatMessage:
        await self.session.execute(insert(ChatMessage.__table__).values(**row))
        return await self.session.get(ChatMessage, row["id"])

    async def touch_thread(self, thread_id: UUID, next_seq: int, at: datetime) -> None:
        await self.session.execute(
            update(ChatThread)
            .where(ChatThread.id == thread_id)
            .values(next_seq=next_seq, last_message_at=at, updated_at=at)
        )
