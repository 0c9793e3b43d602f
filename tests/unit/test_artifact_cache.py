"""
Unit tests for artifact hashing and the cache wrapper.
"""
import uuid
from datetime import datetime, timezone

import pytest

from src.pipeline.artifact_cache import (
    ArtifactCache,
    ArtifactKey,
    compute_artifact_hash,
    env_snapshot,
    files_fingerprint,
)
from src.pipeline.stage import NIL_UUID
from tests.fakes import make_file


class TestHashing:
    def test_hash_is_stable_under_key_order(self, set_id):
        a = compute_artifact_hash("stage", set_id, None, {"b": 1, "a": [1, 2]})
        b = compute_artifact_hash("stage", set_id, None, {"a": [1, 2], "b": 1})

        assert a == b
        assert len(a) == 64

    def test_hash_depends_on_stage_and_path(self, set_id):
        base = compute_artifact_hash("stage", set_id, None, {})

        assert compute_artifact_hash("other", set_id, None, {}) != base
        assert compute_artifact_hash("stage", set_id, uuid.uuid4(), {}) != base

    def test_env_snapshot_skips_secrets(self, monkeypatch):
        monkeypatch.setenv("FILE_SIGNATURE_MAX_SECTIONS", "30")
        monkeypatch.setenv("FILE_SIGNATURE_API_KEY", "hidden")
        monkeypatch.setenv("OPENAI_MODEL", "gpt-test")

        snap = env_snapshot(["FILE_SIGNATURE_"], ["OPENAI_MODEL"])

        assert snap["FILE_SIGNATURE_MAX_SECTIONS"] == "30"
        assert snap["OPENAI_MODEL"] == "gpt-test"
        assert "FILE_SIGNATURE_API_KEY" not in snap

    def test_files_fingerprint_sorted_by_id(self, set_id):
        files = [make_file(set_id, n) for n in ("a.pdf", "b.pdf", "c.pdf")]

        rows = files_fingerprint(list(reversed(files)))

        assert [r["id"] for r in rows] == sorted(str(f.id) for f in files)
        assert rows[0]["updated_at"] == files[0].updated_at.isoformat()


class TestArtifactCache:
    @pytest.fixture
    def key(self, user_id, set_id):
        return ArtifactKey(user_id, set_id, None, "file_signature_build")

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, store, settings, key):
        cache = ArtifactCache(store, settings)

        assert await cache.hit(key, "abc") is False
        assert await cache.put(key, "abc", {"files_total": 2}) is True
        assert await cache.hit(key, "abc") is True
        assert await cache.hit(key, "def") is False

    @pytest.mark.asyncio
    async def test_nil_path_key(self, store, settings, key):
        await ArtifactCache(store, settings).put(key, "abc", {})

        (row,) = store.repos.artifacts.rows.values()
        assert row["path_id"] == NIL_UUID
        assert row["version"] == 1

    @pytest.mark.asyncio
    async def test_disabled_cache_never_hits(self, store, settings, key):
        settings.learning_artifact_cache_enabled = False
        cache = ArtifactCache(store, settings)

        assert await cache.put(key, "abc", {}) is False
        assert await cache.hit(key, "abc") is False
        assert store.repos.artifacts.rows == {}

    @pytest.mark.asyncio
    async def test_failed_lookup_is_a_miss(self, store, settings, key):
        cache = ArtifactCache(store, settings)
        await cache.put(key, "abc", {})
        store.repos.artifacts.fail_reads = True

        assert await cache.hit(key, "abc") is False


def test_files_fingerprint_handles_missing_timestamps(set_id):
    f = make_file(set_id, "a.pdf", updated_at=None, extracted_at=datetime(2026, 1, 1, tzinfo=timezone.utc))

    (row,) = files_fingerprint([f])

    assert row["updated_at"] == ""
    assert row["extracted_at"].startswith("2026-01-01")
