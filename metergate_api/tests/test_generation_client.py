"""Tests for the generation worker HTTP client."""

from __future__ import annotations

import json

import httpx
import pytest

from metergate_api.services.generation_client import GenerationClient
from metergate_core.errors import WorkerFailure


def _client(handler, **kwargs) -> GenerationClient:
    return GenerationClient("http://worker.test/", transport=httpx.MockTransport(handler), **kwargs)


class TestGenerate:
    @pytest.mark.asyncio
    async def test_returns_result_object(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"result": {"text": "ok"}})

        client = _client(handler, shared_secret="s3cret")
        result = await client.generate("summary", {"topic": "x"})
        await client.close()

        assert result == {"text": "ok"}
        assert seen[0].url.path == "/generate"
        assert json.loads(seen[0].content) == {"feature": "summary", "request": {"topic": "x"}}
        assert seen[0].headers["Authorization"] == "Bearer s3cret"

    @pytest.mark.asyncio
    async def test_error_body_code(self) -> None:
        client = _client(lambda r: httpx.Response(503, json={"error_code": "model_overloaded", "message": "busy"}))
        with pytest.raises(WorkerFailure) as info:
            await client.generate("summary", {})
        assert info.value.code == "model_overloaded"
        assert info.value.message == "busy"

    @pytest.mark.asyncio
    async def test_error_status_without_body(self) -> None:
        client = _client(lambda r: httpx.Response(502, text="bad gateway"))
        with pytest.raises(WorkerFailure) as info:
            await client.generate("summary", {})
        assert info.value.code == "worker_http_502"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, text="not json"),
            httpx.Response(200, json={"output": "x"}),
            httpx.Response(200, json={"result": ["x"]}),
        ],
    )
    async def test_malformed_success_body(self, response: httpx.Response) -> None:
        client = _client(lambda r: response)
        with pytest.raises(WorkerFailure) as info:
            await client.generate("summary", {})
        assert info.value.code == "invalid_worker_result"

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(WorkerFailure) as info:
            await _client(handler).generate("summary", {})
        assert info.value.code == "worker_timeout"

    @pytest.mark.asyncio
    async def test_unreachable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(WorkerFailure) as info:
            await _client(handler).generate("summary", {})
        assert info.value.code == "worker_unreachable"


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_healthy(self) -> None:
        assert await _client(lambda r: httpx.Response(200)).health_check() is True

    @pytest.mark.asyncio
    async def test_unreachable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        assert await _client(handler).health_check() is False
