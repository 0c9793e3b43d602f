"""
Session-bound repositories used by the build stages.

Stages never touch AsyncSession directly: they open a unit of work with
``BuildStore.transaction()`` and call repository methods on the yielded
``Repositories``. Everything inside one ``async with`` commits or rolls back
together.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from .artifacts import ArtifactRepository
from .cross_set import CrossSetRepository
from .events import EventRepository
from .jobs import JobRepository
from .materials import MaterialRepository
from .paths import ChatRepository, PathRepository
from .signals import SignalRepository


@dataclass
class Repositories:
    materials: MaterialRepository
    signals: SignalRepository
    cross_set: CrossSetRepository
    paths: PathRepository
    chat: ChatRepository
    events: EventRepository
    artifacts: ArtifactRepository
    jobs: JobRepository

    @classmethod
    def for_session(cls, session: AsyncSession) -> Repositories:
        return cls(
            materials=MaterialRepository(session),
            signals=SignalRepository(session),
            cross_set=CrossSetRepository(session),
            paths=PathRepository(session),
            chat=ChatRepository(session),
            events=EventRepository(session),
            artifacts=ArtifactRepository(session),
            jobs=JobRepository(session),
        )


class BuildStore:
    """Opens one AsyncSession per unit of work."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Repositories]:
        async with self.session_factory() as session:
            async with session.begin():
                yield Repositories.for_session(session)


__all__ = [
    "BuildStore",
    "Repositories",
    "ArtifactRepository",
    "ChatRepository",
    "CrossSetRepository",
    "EventRepository",
    "JobRepository",
    "MaterialRepository",
    "PathRepository",
    "SignalRepository",
]
