"""
Unit tests for the OpenAI-compatible client using httpx mock transports.
"""
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from src.core.exceptions import IntegrityViolation, TransientExternalError
from src.integrations.llm_client import OpenAIClient, parse_json_object


def completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def make_client(handler, retries: int = 3) -> tuple[OpenAIClient, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request, len(seen))

    client = OpenAIClient(
        api_key="test",
        base_url="https://llm.test/v1/",
        retry_attempts=retries,
        client=httpx.AsyncClient(transport=httpx.MockTransport(record)),
    )
    return client, seen


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    sleep = AsyncMock()
    monkeypatch.setattr("src.integrations.llm_client.asyncio.sleep", sleep)
    return sleep


class TestParseJsonObject:
    def test_plain_object(self):
        assert parse_json_object('{"a": 1}') == {"a": 1}

    def test_strips_fences(self):
        assert parse_json_object('```json\n{"a": 1}\n```') == {"a": 1}

    @pytest.mark.parametrize("content", ["not json", "[1, 2]", ""])
    def test_rejects_non_objects(self, content):
        with pytest.raises(TransientExternalError):
            parse_json_object(content)


class TestGenerateJson:
    @pytest.mark.asyncio
    async def test_sends_schema_and_parses_reply(self):
        client, seen = make_client(lambda req, n: httpx.Response(200, json=completion('{"topics": ["tcp"]}')))

        obj = await client.generate_json(" sys ", " user ", "file_signature", {"type": "object"})

        assert obj == {"topics": ["tcp"]}
        (request,) = seen
        assert str(request.url) == "https://llm.test/v1/chat/completions"
        body = json.loads(request.content)
        assert body["response_format"]["json_schema"]["name"] == "file_signature"
        assert body["messages"][0] == {"role": "system", "content": "sys"}

    @pytest.mark.asyncio
    async def test_retries_server_errors(self, no_backoff):
        def handler(req, n):
            if n == 1:
                return httpx.Response(503)
            return httpx.Response(200, json=completion('{"ok": true}'))

        client, seen = make_client(handler)

        assert await client.generate_json("s", "u", "x", {}) == {"ok": True}
        assert len(seen) == 2
        no_backoff.assert_awaited_once_with(1)

    @pytest.mark.asyncio
    async def test_exhausted_retries(self, no_backoff):
        client, seen = make_client(lambda req, n: httpx.Response(500), retries=3)

        with pytest.raises(TransientExternalError, match="after 3 attempts"):
            await client.generate_json("s", "u", "x", {})

        assert len(seen) == 3
        assert [c.args[0] for c in no_backoff.await_args_list] == [1, 2]

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self):
        client, seen = make_client(lambda req, n: httpx.Response(400, json={"error": "bad schema"}))

        with pytest.raises(TransientExternalError, match="status 400"):
            await client.generate_json("s", "u", "x", {})

        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self):
        def handler(req, n):
            if n == 1:
                raise httpx.ConnectError("refused", request=req)
            return httpx.Response(200, json=completion("{}"))

        client, seen = make_client(handler)

        assert await client.generate_json("s", "u", "x", {}) == {}
        assert len(seen) == 2

    @pytest.mark.asyncio
    async def test_malformed_payload(self):
        client, _ = make_client(lambda req, n: httpx.Response(200, json={"choices": []}))

        with pytest.raises(TransientExternalError, match="malformed"):
            await client.generate_json("s", "u", "x", {})


class TestEmbed:
    @pytest.mark.asyncio
    async def test_orders_by_index(self):
        payload = {"data": [{"index": 1, "embedding": [0.0, 1.0]}, {"index": 0, "embedding": [1, 0]}]}
        client, seen = make_client(lambda req, n: httpx.Response(200, json=payload))

        vectors = await client.embed(["first", "second"])

        assert vectors == [[1.0, 0.0], [0.0, 1.0]]
        assert json.loads(seen[0].content)["input"] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_count_mismatch(self):
        payload = {"data": [{"index": 0, "embedding": [1.0]}]}
        client, _ = make_client(lambda req, n: httpx.Response(200, json=payload))

        with pytest.raises(IntegrityViolation):
            await client.embed(["a", "b"])

    @pytest.mark.asyncio
    async def test_empty_input_makes_no_request(self):
        client, seen = make_client(lambda req, n: httpx.Response(500))

        assert await client.embed([]) == []
        assert seen == []
