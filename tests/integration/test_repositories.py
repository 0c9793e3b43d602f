"""
Integration tests for the SQLAlchemy repositories against PostgreSQL.

Set TEST_DATABASE_URL to run them; each test builds the schema in a throwaway
Postgres schema and drops it afterwards. Requires gen_random_uuid() (PG 13+).
"""
import asyncio
import os
import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import insert, select, text
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from config import Settings
from src.db.database import _get_async_url
from src.db.models import (
    Base,
    ChatThread,
    Concept,
    ConceptEdge,
    JobRun,
    JobRunEvent,
    MaterialSetEdge,
    Path,
    PathNode,
    UserEvent,
    UserProgressionEvent,
)
from src.db.repositories import BuildStore
from src.pipeline.acceptance import compute_acceptance_metrics
from src.pipeline.intake_messages import append_intake_message
from src.pipeline.progression import run_progression_compact
from src.pipeline.stage import BuildDeps, StageInput

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "")
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def db_store():
    """BuildStore bound to a fresh schema; skipped without a reachable database."""
    if not TEST_DATABASE_URL:
        pytest.skip("TEST_DATABASE_URL not set")
    schema = f"kgbuild_test_{uuid.uuid4().hex[:12]}"
    engine = create_async_engine(
        _get_async_url(TEST_DATABASE_URL),
        connect_args={"server_settings": {"search_path": schema}},
    )
    try:
        async with engine.begin() as conn:
            await conn.execute(text(f'CREATE SCHEMA "{schema}"'))
            await conn.run_sync(Base.metadata.create_all)
    except Exception as e:  # Intentionally broad - any connection or DDL failure skips the module
        await engine.dispose()
        pytest.skip(f"Database not available: {e}")

    yield BuildStore(async_sessionmaker(engine, expire_on_commit=False))

    async with engine.begin() as conn:
        await conn.execute(text(f'DROP SCHEMA "{schema}" CASCADE'))
    await engine.dispose()


def edge_row(user_id, a, b, strength: float, note: str) -> dict:
    return {
        "user_id": user_id,
        "from_material_set_id": a,
        "to_material_set_id": b,
        "relation": "extends",
        "strength": strength,
        "bridging_concept_ids": ["tcp"],
        "metadata": {"note": note},
    }


class TestUpsertRows:
    @pytest.mark.asyncio
    async def test_upsert_is_idempotent_and_updates_in_place(self, db_store):
        user_id, a, b = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()

        async with db_store.transaction() as repos:
            await repos.cross_set.upsert_set_edges([edge_row(user_id, a, b, 0.4, "first")])
        async with db_store.transaction() as repos:
            (first,) = await repos.cross_set.list_set_edges(user_id)
            await repos.cross_set.upsert_set_edges([edge_row(user_id, a, b, 0.9, "second")])
        async with db_store.transaction() as repos:
            edges = await repos.cross_set.list_set_edges(user_id)

        assert len(edges) == 1
        assert edges[0].id == first.id
        assert edges[0].strength == pytest.approx(0.9)
        assert edges[0].meta == {"note": "second"}

    @pytest.mark.asyncio
    async def test_update_columns_limit_what_changes(self, db_store):
        user_id, a, b = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
        conflict = ["user_id", "from_material_set_id", "to_material_set_id", "relation"]

        async with db_store.transaction() as repos:
            await repos.cross_set.upsert_set_edges([edge_row(user_id, a, b, 0.4, "kept")])
        async with db_store.transaction() as repos:
            await repos.cross_set.upsert_rows(
                MaterialSetEdge, [edge_row(user_id, a, b, 0.7, "ignored")], conflict, update_columns=["strength"]
            )
        async with db_store.transaction() as repos:
            (edge,) = await repos.cross_set.list_set_edges(user_id)

        assert edge.strength == pytest.approx(0.7)
        assert edge.meta == {"note": "kept"}

    @pytest.mark.asyncio
    async def test_batches_share_one_statement_shape(self, db_store):
        user_id = uuid.uuid4()
        rows = [edge_row(user_id, uuid.uuid4(), uuid.uuid4(), 0.5, str(i)) for i in range(7)]

        async with db_store.transaction() as repos:
            written = await repos.cross_set.upsert_rows(
                MaterialSetEdge,
                rows,
                ["user_id", "from_material_set_id", "to_material_set_id", "relation"],
                batch_size=3,
            )
        async with db_store.transaction() as repos:
            edges = await repos.cross_set.list_set_edges(user_id)

        assert written == 7
        assert len(edges) == 7


class TestEventWatermark:
    @staticmethod
    async def seed_events(store, user_id) -> list[tuple]:
        """Three events share T0 so ordering within a timestamp falls back to id."""
        stamps = [T0, T0, T0, T0 + timedelta(seconds=1), T0 + timedelta(seconds=2)]
        rows = [
            {
                "id": uuid.uuid4(),
                "user_id": user_id,
                "type": "activity_completed",
                "occurred_at": at,
                "created_at": at,
                "data": {"score": 0.5},
            }
            for at in stamps
        ]
        async with store.transaction() as repos:
            await repos.events.session.execute(insert(UserEvent.__table__), rows)
        return sorted((r["created_at"], r["id"]) for r in rows)

    @pytest.mark.asyncio
    async def test_paging_by_watermark_visits_each_event_once(self, db_store):
        user_id = uuid.uuid4()
        expected = await self.seed_events(db_store, user_id)

        seen = []
        after_at, after_id = None, None
        while True:
            async with db_store.transaction() as repos:
                page = await repos.events.list_events_after(user_id, after_at, after_id, 2)
            if not page:
                break
            seen += [(e.created_at, e.id) for e in page]
            after_at, after_id = page[-1].created_at, page[-1].id

        assert seen == expected

    @pytest.mark.asyncio
    async def test_cursor_upsert_keeps_one_row(self, db_store):
        user_id = uuid.uuid4()
        first, second = uuid.uuid4(), uuid.uuid4()

        async with db_store.transaction() as repos:
            await repos.events.upsert_cursor(user_id, "progression", T0, first)
        async with db_store.transaction() as repos:
            await repos.events.upsert_cursor(user_id, "progression", T0 + timedelta(seconds=5), second)
        async with db_store.transaction() as repos:
            cursor = await repos.events.get_cursor(user_id, "progression")

        assert cursor.last_event_id == second
        assert cursor.last_created_at == T0 + timedelta(seconds=5)

    @pytest.mark.asyncio
    async def test_compaction_replay_adds_nothing(self, db_store):
        user_id = uuid.uuid4()
        await self.seed_events(db_store, user_id)
        deps = BuildDeps(store=db_store, settings=Settings(_env_file=None, progression_page_size=2))

        first = await run_progression_compact(deps, StageInput(user_id, None))
        again = await run_progression_compact(deps, StageInput(user_id, None))

        async with db_store.transaction() as repos:
            result = await repos.events.session.execute(
                select(UserProgressionEvent).where(UserProgressionEvent.user_id == user_id)
            )
            rows = result.scalars().all()

        assert first.processed == 5
        assert first.pages == 3
        assert again.processed == 0
        assert len(rows) == 5


class TestIntakeMessageLock:
    @staticmethod
    async def seed_thread(store, user_id):
        thread_id = uuid.uuid4()
        async with store.transaction() as repos:
            await repos.chat.session.execute(
                insert(ChatThread.__table__).values(id=thread_id, user_id=user_id, next_seq=0)
            )
        return thread_id

    @staticmethod
    def append(store, user_id, thread_id, job_id, content="Proposed paths"):
        return append_intake_message(
            store,
            None,
            kind="path_intake_review",
            owner_user_id=user_id,
            thread_id=thread_id,
            job_id=job_id,
            material_set_id=uuid.uuid4(),
            path_id=uuid.uuid4(),
            content=content,
        )

    @pytest.mark.asyncio
    async def test_same_job_appends_once(self, db_store):
        user_id = uuid.uuid4()
        thread_id = await self.seed_thread(db_store, user_id)
        job_id = uuid.uuid4()

        first, created = await self.append(db_store, user_id, thread_id, job_id)
        again, created_again = await self.append(db_store, user_id, thread_id, job_id)

        assert created and not created_again
        assert again.id == first.id
        async with db_store.transaction() as repos:
            thread = await repos.chat.lock_thread(thread_id)
        assert thread.next_seq == 1

    @pytest.mark.asyncio
    async def test_concurrent_appends_get_distinct_sequences(self, db_store):
        user_id = uuid.uuid4()
        thread_id = await self.seed_thread(db_store, user_id)

        results = await asyncio.gather(
            *(self.append(db_store, user_id, thread_id, uuid.uuid4(), f"reply {i}") for i in range(4))
        )

        assert sorted(message.seq for message, _ in results) == [1, 2, 3, 4]
        async with db_store.transaction() as repos:
            messages = await repos.chat.list_messages(thread_id)
        assert [m.seq for m in messages] == [1, 2, 3, 4]


class TestAcceptanceMetricsQueries:
    @pytest.mark.asyncio
    async def test_counts_nodes_edges_and_latest_job(self, db_store):
        user_id, path_id = uuid.uuid4(), uuid.uuid4()
        unit_id = uuid.uuid4()
        tcp, udp, other = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
        old_job, new_job = uuid.uuid4(), uuid.uuid4()
        meta = {"audit": {"coverage": {"uncovered_concept_keys": ["udp"]}}}

        async with db_store.transaction() as repos:
            session = repos.paths.session
            await session.execute(insert(Path.__table__).values(id=path_id, user_id=user_id, metadata=meta))
            await session.execute(
                insert(PathNode.__table__),
                [
                    {"id": unit_id, "path_id": path_id, "parent_node_id": None},
                    {"id": uuid.uuid4(), "path_id": path_id, "parent_node_id": unit_id},
                    {"id": uuid.uuid4(), "path_id": path_id, "parent_node_id": unit_id},
                ],
            )
            await session.execute(
                insert(Concept.__table__),
                [
                    {"id": tcp, "scope": "path", "scope_id": path_id, "key": "tcp"},
                    {"id": udp, "scope": "path", "scope_id": path_id, "key": "udp"},
                    {"id": other, "scope": "path", "scope_id": uuid.uuid4(), "key": "ip"},
                ],
            )
            await session.execute(
                insert(ConceptEdge.__table__),
                [
                    {"from_concept_id": tcp, "to_concept_id": udp, "edge_type": "prereq"},
                    {"from_concept_id": other, "to_concept_id": tcp, "edge_type": "prereq"},
                ],
            )
            await session.execute(
                insert(JobRun.__table__),
                [
                    {
                        "id": old_job,
                        "owner_user_id": user_id,
                        "job_type": "learning_build",
                        "entity_type": "path",
                        "entity_id": path_id,
                        "error": "context_length_exceeded",
                        "created_at": T0,
                    },
                    {
                        "id": new_job,
                        "owner_user_id": user_id,
                        "job_type": "learning_build",
                        "entity_type": "path",
                        "entity_id": path_id,
                        "error": "",
                        "created_at": T0 + timedelta(hours=1),
                    },
                ],
            )
            await session.execute(
                insert(JobRunEvent.__table__).values(
                    job_id=new_job, message="step failed", data={"detail": "prompt too long"}
                )
            )

        metrics = await compute_acceptance_metrics(db_store, path_id)

        assert (metrics.unit_count, metrics.lesson_count, metrics.node_count) == (1, 2, 3)
        assert metrics.concept_count == 2
        assert metrics.edge_count == 1
        assert metrics.uncovered_concepts == 1
        assert metrics.prompt_size_errors == 1
        assert metrics.prompt_error_hints == ['{"detail": "prompt too long"}']
