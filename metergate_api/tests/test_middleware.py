"""Tests for the authentication and request-logging middleware."""

from __future__ import annotations

import json
import logging
import sys

import pytest
from httpx import AsyncClient

from metergate_api.middleware.json_formatter import JSONFormatter


def _access_records(caplog: pytest.LogCaptureFixture) -> list[logging.LogRecord]:
    return [r for r in caplog.records if r.name == "metergate_api.access"]


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_missing_header(self, anon_client: AsyncClient) -> None:
        resp = await anon_client.get("/api/v1/credits/balance")
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Missing Authorization header"

    @pytest.mark.asyncio
    async def test_non_bearer_scheme(self, anon_client: AsyncClient) -> None:
        resp = await anon_client.get("/api/v1/credits/balance", headers={"Authorization": "Basic dXNlcjpwdw=="})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_token(self, anon_client: AsyncClient) -> None:
        resp = await anon_client.get("/api/v1/credits/balance", headers={"Authorization": "Bearer mgdev.garbage"})
        assert resp.status_code == 401
        assert resp.json()["detail"].startswith("Invalid token")


class TestRequestLogging:
    @pytest.mark.asyncio
    async def test_correlation_id_echoed(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/health", headers={"X-Correlation-ID": "corr-42"})
        assert resp.headers["X-Correlation-ID"] == "corr-42"

    @pytest.mark.asyncio
    async def test_correlation_id_generated(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/health")
        assert resp.headers["X-Correlation-ID"]

    @pytest.mark.asyncio
    async def test_access_log_masks_credentials(self, client: AsyncClient, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="metergate_api.access"):
            await client.post(
                "/api/v1/execute",
                json={"feature": "summary", "requestPayload": {"topic": "x"}},
                headers={"Idempotency-Key": "k-7"},
            )

        records = _access_records(caplog)
        assert records
        payload = records[-1].request
        assert payload["headers"]["authorization"] == "***"
        assert payload["user_id"] == "user-1"
        assert payload["idempotency_key"] == "k-7"
        assert payload["status_code"] == 200

    @pytest.mark.asyncio
    async def test_client_errors_logged_as_warning(
        self, anon_client: AsyncClient, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.INFO, logger="metergate_api.access"):
            await anon_client.get("/api/v1/credits/balance")

        record = _access_records(caplog)[-1]
        assert record.levelno == logging.WARNING
        assert record.request["user_id"] == "anonymous"


class TestJSONFormatter:
    def test_single_line_with_request(self) -> None:
        record = logging.LogRecord("metergate_api.access", logging.INFO, __file__, 1, "request completed", None, None)
        record.request = {"path": "/api/v1/health", "status_code": 200}

        line = JSONFormatter().format(record)

        assert "\n" not in line
        data = json.loads(line)
        assert data["level"] == "INFO"
        assert data["logger"] == "metergate_api.access"
        assert data["request"]["status_code"] == 200
        assert "exc_info" not in data

    def test_exception_included(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())

        data = json.loads(JSONFormatter().format(record))

        assert "RuntimeError: boom" in data["exc_info"]
