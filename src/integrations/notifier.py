"""Chat notification fan-out after committed message inserts."""

from __future__ import annotations

from typing import Any, Protocol
from uuid import UUID

from loguru import logger


class ChatNotifier(Protocol):
    def message_created(
        self,
        user_id: UUID,
        thread_id: UUID,
        message: Any,
        delta: dict[str, Any] | None = None,
    ) -> None: ...


class LoggingNotifier:
    """Default notifier: records the event in the log only."""

    def message_created(
        self,
        user_id: UUID,
        thread_id: UUID,
        message: Any,
        delta: dict[str, Any] | None = None,
    ) -> None:
        kind = (getattr(message, "meta", None) or {}).get("kind", "")
        logger.info(
            "Chat message created: user={} thread={} seq={} kind={}",
            user_id,
            thread_id,
            getattr(message, "seq", None),
            kind,
        )
