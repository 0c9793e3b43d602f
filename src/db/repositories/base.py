"""Shared helpers for session-bound repositories."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession


class SessionRepository:
    """Base for repositories that run inside a caller-owned AsyncSession."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert_rows(
        self,
        model: Any,
        rows: Sequence[dict[str, Any]],
        conflict_columns: Sequence[str],
        update_columns: Sequence[str] | None = None,
        batch_size: int = 500,
    ) -> int:
        """
        INSERT ... ON CONFLICT (conflict_columns) DO UPDATE for ``rows``.

        Rows are keyed by column name (``metadata``, not ``meta``) and must share
        one key set. Columns not listed in ``update_columns`` keep their stored
        values on conflict; by default every non-key column is merged.
        """
        if not rows:
            return 0
        table = model.__table__
        keys = list(rows[0].keys())
        if update_columns is None:
            update_columns = [k for k in keys if k not in conflict_columns and k not in ("id", "created_at")]
        written = 0
        for start in range(0, len(rows), max(1, batch_size)):
            batch = list(rows[start : start + batch_size])
            stmt = insert(table).values(batch)
            set_ = {c: stmt.excluded[c] for c in update_columns}
            if "updated_at" in table.c:
                set_["updated_at"] = func.now()
            if set_:
                stmt = stmt.on_conflict_do_update(index_elements=list(conflict_columns), set_=set_)
            else:
                stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_columns))
            await self.session.execute(stmt)
            written += len(batch)
        return written
