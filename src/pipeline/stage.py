"""
Stage entry-point contract shared by every build stage.

A stage is ``async run_<stage>(deps, inp) -> output``. ``deps`` carries the
collaborators, ``inp`` the identifiers; outputs are dataclasses with
``to_dict()`` for the saga runner.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import UUID

from config import Settings, get_settings
from src.core.exceptions import ConfigurationError
from src.db.repositories import BuildStore
from src.integrations.notifier import ChatNotifier
from src.integrations.vector_store import VectorStore
from src.semantic.embedding_service import Embedder

NIL_UUID = UUID(int=0)


class LLM(Protocol):
    async def generate_json(
        self,
        system: str,
        user: str,
        schema_name: str,
        schema: dict[str, Any],
    ) -> dict[str, Any]: ...


@dataclass
class StageInput:
    owner_user_id: UUID | None
    material_set_id: UUID | None
    saga_id: UUID | None = None
    path_id: UUID | None = None
    thread_id: UUID | None = None
    job_id: UUID | None = None
    wait_for_user: bool = False


@dataclass
class BuildDeps:
    """Collaborators handed to a stage; each stage checks the ones it needs."""

    store: BuildStore | None
    llm: LLM | None = None
    embedder: Embedder | None = None
    vectors: VectorStore | None = None
    notifier: ChatNotifier | None = None
    settings: Settings = field(default_factory=get_settings)

    def require(self, stage: str, *names: str) -> None:
        missing = [n for n in names if getattr(self, n, None) is None]
        if missing:
            raise ConfigurationError(f"missing deps: {', '.join(missing)}", stage=stage)


def require_ids(stage: str, **ids: UUID | None) -> None:
    """Raise ConfigurationError for any missing or nil identifier."""
    missing = [name for name, value in ids.items() if value is None or value == NIL_UUID]
    if missing:
        raise ConfigurationError(f"missing ids: {', '.join(missing)}", stage=stage)
