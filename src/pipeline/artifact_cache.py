"""
Fingerprint & artifact cache.

A stage hashes its effective input (sorted file descriptors, file fingerprints
and the environment under its prefixes) and looks the hash up in
``learning_artifacts``. A hit means the stage can return "skipped" without any
external I/O. Cache reads and writes never fail a stage.
"""

from __future__ import annotations

import hashlib
import os
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from loguru import logger

from config import Settings
from src.core.coerce import canonical_json
from src.db.repositories import BuildStore

from .stage import NIL_UUID

ARTIFACT_HASH_VERSION = 1
_SECRET_MARKERS = ("KEY", "SECRET", "TOKEN", "PASSWORD")


def compute_artifact_hash(stage: str, material_set_id: UUID, path_id: UUID | None, payload: Any) -> str:
    envelope = {
        "stage": stage,
        "version": ARTIFACT_HASH_VERSION,
        "material_set_id": str(material_set_id),
        "path_id": str(path_id) if path_id else "",
        "payload": payload,
    }
    return hashlib.sha256(canonical_json(envelope).encode("utf-8")).hexdigest()


def env_snapshot(prefixes: Iterable[str], allow_keys: Iterable[str] = ()) -> dict[str, str]:
    """Environment variables under ``prefixes`` (plus ``allow_keys``), secrets excluded."""
    prefixes = tuple(p.upper() for p in prefixes)
    allow = {k.upper() for k in allow_keys}
    out: dict[str, str] = {}
    for key, value in os.environ.items():
        upper = key.upper()
        if any(marker in upper for marker in _SECRET_MARKERS):
            continue
        if upper in allow or (prefixes and upper.startswith(prefixes)):
            out[upper] = value
    return dict(sorted(out.items()))


def files_fingerprint(files: Sequence[Any]) -> list[dict[str, Any]]:
    """Stable descriptors of the files a stage reads, sorted by id."""
    rows = []
    for f in files:
        if f is None or f.id is None:
            continue
        rows.append(
            {
                "id": str(f.id),
                "updated_at": f.updated_at.isoformat() if f.updated_at else "",
                "extracted_at": f.extracted_at.isoformat() if getattr(f, "extracted_at", None) else "",
                "size_bytes": int(f.size_bytes or 0),
                "mime_type": (f.mime_type or "").strip(),
                "storage_key": (getattr(f, "storage_key", "") or "").strip(),
                "extracted_kind": (f.extracted_kind or "").strip(),
                "status": (getattr(f, "status", "") or "").strip(),
            }
        )
    rows.sort(key=lambda r: r["id"])
    return rows


@dataclass(frozen=True)
class ArtifactKey:
    owner_user_id: UUID
    material_set_id: UUID
    path_id: UUID | None
    artifact_type: str

    @property
    def path_key(self) -> UUID:
        return self.path_id or NIL_UUID


class ArtifactCache:
    """Env-gated lookups and writes of stage cache rows."""

    def __init__(self, store: BuildStore, settings: Settings):
        self.store = store
        self.enabled = settings.learning_artifact_cache_enabled
        self.seed_existing = settings.learning_artifact_cache_seed_existing

    async def hit(self, key: ArtifactKey, input_hash: str) -> bool:
        if not self.enabled or not input_hash:
            return False
        try:
            async with self.store.transaction() as repos:
                row = await repos.artifacts.get(
                    key.owner_user_id, key.material_set_id, key.path_key, key.artifact_type, input_hash
                )
        except Exception as e:  # Intentionally broad - a failed lookup is a miss
            logger.warning("Artifact cache lookup failed for {}: {}", key.artifact_type, e)
            return False
        return row is not None

    async def put(self, key: ArtifactKey, input_hash: str, metadata: dict[str, Any]) -> bool:
        if not self.enabled or not input_hash:
            return False
        row = {
            "owner_user_id": key.owner_user_id,
            "material_set_id": key.material_set_id,
            "path_id": key.path_key,
            "artifact_type": key.artifact_type,
            "input_hash": input_hash,
            "version": ARTIFACT_HASH_VERSION,
            "metadata": metadata,
        }
        try:
            async with self.store.transaction() as repos:
                await repos.artifacts.upsert(row)
        except Exception as e:  # Intentionally broad - cache writes never abort a stage
            logger.warning("Artifact cache write failed for {}: {}", key.artifact_type, e)
            return False
        return True
