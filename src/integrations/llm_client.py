"""
OpenAI-compatible HTTP client for structured JSON generation and embeddings.

Both calls retry timeouts, transport errors and 5xx responses with exponential
backoff; 4xx responses fail immediately. Exhausted retries surface as
TransientExternalError so the calling stage can fall back or fail.
"""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any

import httpx
from loguru import logger

from config import Settings, get_settings
from src.core.exceptions import IntegrityViolation, TransientExternalError

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def parse_json_object(content: str) -> dict[str, Any]:
    """Decode a model reply into a JSON object, tolerating ``` fences."""
    text = (content or "").strip()
    if text.startswith("```"):
        text = _FENCE_RE.sub("", text).strip()
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError as e:
        raise TransientExternalError(f"LLM returned invalid JSON: {e}") from e
    if not isinstance(decoded, dict):
        raise TransientExternalError("LLM returned a non-object JSON value")
    return decoded


class OpenAIClient:
    """Thin async client for /chat/completions and /embeddings."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        embed_model: str = "text-embedding-3-small",
        timeout_ms: int = 120000,
        retry_attempts: int = 3,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.embed_model = embed_model
        self.retry_attempts = max(1, retry_attempts)
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_ms / 1000.0),
            headers={"Authorization": f"Bearer {api_key}"},
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> OpenAIClient:
        settings = settings or get_settings()
        return cls(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            model=settings.openai_model,
            embed_model=settings.openai_embed_model,
            timeout_ms=settings.llm_timeout_ms,
            retry_attempts=settings.llm_retry_attempts,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self.retry_attempts):
            try:
                response = await self.client.post(f"{self.base_url}{path}", json=payload)
                response.raise_for_status()
                return response.json()
            except httpx.HTTPStatusError as e:
                last_error = e
                if e.response.status_code < 500:
                    logger.error("LLM client error {} on {}", e.response.status_code, path)
                    raise TransientExternalError(
                        f"{path} rejected with status {e.response.status_code}"
                    ) from e
                logger.warning(
                    "LLM server error {} on attempt {}/{}",
                    e.response.status_code,
                    attempt + 1,
                    self.retry_attempts,
                )
            except (httpx.TimeoutException, httpx.RequestError) as e:
                last_error = e
                logger.warning("LLM request error on attempt {}/{}: {}", attempt + 1, self.retry_attempts, e)
            if attempt < self.retry_attempts - 1:
                await asyncio.sleep(2**attempt)
        raise TransientExternalError(f"{path} failed after {self.retry_attempts} attempts: {last_error}")

    async def generate_json(
        self,
        system: str,
        user: str,
        schema_name: str,
        schema: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Ask the model for a JSON object conforming to ``schema``.

        Raises:
            TransientExternalError: on transport failure or an undecodable reply
        """
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system.strip()},
                {"role": "user", "content": user.strip()},
            ],
            "response_format": {
                "type": "json_schema",
                "json_schema": {"name": schema_name, "schema": schema, "strict": True},
            },
        }
        data = await self._post("/chat/completions", payload)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise TransientExternalError(f"{schema_name}: malformed completion payload") from e
        obj = parse_json_object(content)
        logger.debug("LLM {} returned {} keys", schema_name, len(obj))
        return obj

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """
        Embed ``texts`` preserving order.

        Raises:
            IntegrityViolation: when the response count differs from the input count
        """
        if not texts:
            return []
        data = await self._post("/embeddings", {"model": self.embed_model, "input": texts})
        items = sorted(data.get("data") or [], key=lambda d: d.get("index", 0))
        vectors = [[float(v) for v in item.get("embedding") or []] for item in items]
        if len(vectors) != len(texts):
            raise IntegrityViolation(f"embedding count mismatch: got {len(vectors)} want {len(texts)}")
        return vectors
