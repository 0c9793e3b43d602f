"""Pinecone-compatible vector index client (best-effort upserts)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx
from loguru import logger

from config import Settings, get_settings
from src.core.exceptions import TransientExternalError


@dataclass
class VectorRecord:
    """One vector with its id and filterable metadata."""

    id: str
    values: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "values": self.values, "metadata": self.metadata}


class VectorStore:
    """HTTP client for ``POST /vectors/upsert``."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Api-Key": api_key} if api_key else {},
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> VectorStore | None:
        """Return a client, or None when no index is configured."""
        settings = settings or get_settings()
        if not settings.has_vector_store_configured():
            return None
        return cls(settings.vector_store_url, settings.vector_store_api_key)

    async def close(self) -> None:
        await self.client.aclose()

    async def upsert(self, namespace: str, vectors: list[VectorRecord]) -> None:
        if not vectors:
            return
        try:
            response = await self.client.post(
                f"{self.base_url}/vectors/upsert",
                json={"namespace": namespace, "vectors": [v.to_dict() for v in vectors]},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransientExternalError(f"vector upsert to {namespace} failed: {e}") from e
        logger.debug("Upserted {} vectors into {}", len(vectors), namespace)
