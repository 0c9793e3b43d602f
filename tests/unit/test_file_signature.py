"""
Unit tests for the file signature stage against in-memory fakes.
"""
import uuid
from datetime import timedelta
from types import SimpleNamespace

import pytest

from src.core.exceptions import ConfigurationError, UpstreamDataError
from src.pipeline.file_signature import SIGNATURE_VERSION, run_file_signature
from src.pipeline.stage import BuildDeps, StageInput
from src.pipeline.text_signals import file_fingerprint
from tests.fakes import BASE_TIME, FakeEmbedder, ScriptedLLM, make_chunk, make_file


def signature_reply(sections: int = 3, with_intent: bool = True) -> dict:
    reply = {
        "summary_md": "Covers TCP and UDP transport basics.",
        "topics": ["tcp", "udp"],
        "concept_keys": ["tcp", "udp", "ports"],
        "difficulty": "intro",
        "domain_tags": ["networking"],
        "citations": [],
        "outline_json": {
            "title": "Transport",
            "sections": [{"title": f"Section {i}", "path": str(i), "start_page": i} for i in range(1, sections + 1)],
        },
        "outline_confidence": 0.8,
        "language": "en",
        "quality": {"text_quality": "high", "coverage": 0.7, "notes": ""},
    }
    if with_intent:
        reply.update(
            from_state="knows what a network is",
            to_state="can compare transport protocols",
            core_thread="reliable vs unreliable delivery",
            destination_concepts=["tcp"],
            prerequisite_concepts=["ip"],
            assumed_knowledge=[],
            notes=[],
        )
    return reply


@pytest.fixture
def saga_id():
    return uuid.uuid4()


@pytest.fixture
def loaded(store, set_id):
    """One file with three paged chunks."""
    f = make_file(set_id, "transport.pdf")
    store.repos.materials.files.append(f)
    store.repos.materials.chunks[f.id] = [
        make_chunk(f, 0, "TRANSPORT LAYER\nTCP gives reliable delivery.", page=1),
        make_chunk(f, 1, "UDP is connectionless. See RFC 768.", page=2),
        make_chunk(f, 2, "Ports multiplex applications.", page=3),
    ]
    return f


class TestRunFileSignature:
    @pytest.mark.asyncio
    async def test_requires_llm(self, store, user_id, set_id, saga_id, settings):
        deps = BuildDeps(store=store, settings=settings)

        with pytest.raises(ConfigurationError):
            await run_file_signature(deps, StageInput(user_id, set_id, saga_id))

    @pytest.mark.asyncio
    async def test_requires_saga(self, store, user_id, set_id, settings):
        deps = BuildDeps(store=store, llm=ScriptedLLM(), settings=settings)

        with pytest.raises(ConfigurationError):
            await run_file_signature(deps, StageInput(user_id, set_id, None))

    @pytest.mark.asyncio
    async def test_empty_set_fails(self, store, user_id, set_id, saga_id, settings):
        deps = BuildDeps(store=store, llm=ScriptedLLM(), settings=settings)

        with pytest.raises(UpstreamDataError, match="no files for set"):
            await run_file_signature(deps, StageInput(user_id, set_id, saga_id))

    @pytest.mark.asyncio
    async def test_builds_signature_intent_and_sections(self, store, loaded, user_id, set_id, saga_id, settings):
        llm = ScriptedLLM(signature_reply(sections=3))
        embedder = FakeEmbedder()
        deps = BuildDeps(store=store, llm=llm, embedder=embedder, settings=settings)

        out = await run_file_signature(deps, StageInput(user_id, set_id, saga_id))

        mats = store.repos.materials
        sig = mats.signatures[loaded.id]
        assert out.files_processed == 1
        assert out.sections_upserted == 3
        assert sig.version == SIGNATURE_VERSION
        assert sig.fingerprint == file_fingerprint(loaded, mats.chunks[loaded.id])
        assert sig.summary_embedding
        assert "RFC 768" in sig.citations
        assert [s["section_index"] for s in mats.sections[loaded.id]] == [1, 2, 3]
        assert all(s["embedding"] for s in mats.sections[loaded.id])
        assert mats.intents[loaded.id].core_thread == "reliable vs unreliable delivery"
        assert llm.calls == ["file_signature"]

    @pytest.mark.asyncio
    async def test_sections_capped_at_resolved_max(self, store, loaded, user_id, set_id, saga_id, settings):
        deps = BuildDeps(store=store, llm=ScriptedLLM(signature_reply(sections=90)), settings=settings)

        out = await run_file_signature(deps, StageInput(user_id, set_id, saga_id))

        cap = out.adaptive["params"]["FILE_SIGNATURE_MAX_SECTIONS"]["actual"]
        sections = store.repos.materials.sections[loaded.id]
        assert len(sections) == cap
        assert [s["section_index"] for s in sections] == list(range(1, cap + 1))

    @pytest.mark.asyncio
    async def test_empty_intent_falls_back(self, store, loaded, user_id, set_id, saga_id, settings):
        deps = BuildDeps(store=store, llm=ScriptedLLM(signature_reply(with_intent=False)), settings=settings)

        await run_file_signature(deps, StageInput(user_id, set_id, saga_id))

        intent = store.repos.materials.intents[loaded.id]
        assert "fallback_intent" in intent.meta["notes"]
        assert intent.core_thread == "Covers TCP and UDP transport basics."

    @pytest.mark.asyncio
    async def test_rerun_hits_cache(self, store, loaded, user_id, set_id, saga_id, settings):
        """A second run on unchanged inputs returns from the cache without LLM calls."""
        llm = ScriptedLLM(signature_reply())
        deps = BuildDeps(store=store, llm=llm, settings=settings)
        inp = StageInput(user_id, set_id, saga_id)

        await run_file_signature(deps, inp)
        writes = len(store.repos.materials.signature_writes)
        out = await run_file_signature(deps, inp)

        assert out.cache_hit is True
        assert out.signatures_skipped == 1
        assert llm.calls == ["file_signature"]
        assert len(store.repos.materials.signature_writes) == writes

    @pytest.mark.asyncio
    async def test_seeds_cache_from_fresh_rows(self, store, loaded, user_id, set_id, saga_id, settings):
        """Fresh signatures and intents with no cache row seed the cache instead of rebuilding."""
        mats = store.repos.materials
        mats.signatures[loaded.id] = SimpleNamespace(
            fingerprint=file_fingerprint(loaded, mats.chunks[loaded.id]),
            version=SIGNATURE_VERSION,
            updated_at=BASE_TIME,
        )
        mats.intents[loaded.id] = SimpleNamespace(
            core_thread="transport", meta={"notes": []}, updated_at=BASE_TIME
        )
        deps = BuildDeps(store=store, llm=ScriptedLLM(), settings=settings)

        out = await run_file_signature(deps, StageInput(user_id, set_id, saga_id))

        assert out.cache_hit is True
        (row,) = store.repos.artifacts.rows.values()
        assert row["metadata"]["seeded"] is True

    @pytest.mark.asyncio
    async def test_stale_file_skips_seed_but_keeps_fresh_rows(self, store, loaded, user_id, set_id, saga_id, settings):
        """A file newer than its rows is not seeded, but matching fingerprints still skip the LLM."""
        mats = store.repos.materials
        loaded.updated_at = BASE_TIME + timedelta(hours=1)
        mats.signatures[loaded.id] = SimpleNamespace(
            fingerprint=file_fingerprint(loaded, mats.chunks[loaded.id]),
            version=SIGNATURE_VERSION,
            updated_at=BASE_TIME,
        )
        mats.intents[loaded.id] = SimpleNamespace(
            core_thread="transport", meta={"notes": []}, updated_at=BASE_TIME
        )
        llm = ScriptedLLM()
        deps = BuildDeps(store=store, llm=llm, settings=settings)

        out = await run_file_signature(deps, StageInput(user_id, set_id, saga_id))

        assert out.cache_hit is False
        assert out.signatures_skipped == 1
        assert llm.calls == []
