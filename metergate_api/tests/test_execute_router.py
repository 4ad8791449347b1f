"""Tests for POST /api/v1/execute."""

from __future__ import annotations

from typing import Any

import pytest
from httpx import AsyncClient

from metergate_core.errors import WorkerFailure
from metergate_core.features.catalog import PlanTier
from metergate_core.ledger.credit_ledger import CreditLedger
from metergate_core.ledger.job_registry import JobRegistry

_URL = "/api/v1/execute"


async def _grant(session_factory, amount: int, user: str = "user-1") -> None:
    async with session_factory.begin() as session:
        await CreditLedger(session, user).add_lot(amount)


async def _balance(session_factory, user: str = "user-1") -> int:
    async with session_factory() as session:
        return await CreditLedger(session, user).balance()


def _body(feature: str = "summary", **payload: Any) -> dict[str, Any]:
    return {"feature": feature, "requestPayload": payload or {"topic": "pricing"}}


class TestExecuteFree:
    @pytest.mark.asyncio
    async def test_success_returns_result(self, client: AsyncClient, worker) -> None:
        resp = await client.post(_URL, json=_body(), headers={"Idempotency-Key": "k-1"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["replayed"] is False
        assert data["result"]["text"] == "generated #1"
        assert data["jobId"]
        assert worker.calls == [("summary", {"topic": "pricing"})]

    @pytest.mark.asyncio
    async def test_same_key_replays(self, client: AsyncClient, worker) -> None:
        first = await client.post(_URL, json=_body(), headers={"Idempotency-Key": "k-1"})
        second = await client.post(_URL, json=_body(), headers={"Idempotency-Key": "k-1"})

        assert second.status_code == 200
        assert second.json()["replayed"] is True
        assert second.json()["result"] == first.json()["result"]
        assert len(worker.calls) == 1

    @pytest.mark.asyncio
    async def test_exhausted_quota_requires_confirmation(self, client: AsyncClient, worker) -> None:
        for i in range(3):
            resp = await client.post(_URL, json=_body(), headers={"Idempotency-Key": f"k-{i}"})
            assert resp.status_code == 200

        resp = await client.post(_URL, json=_body(), headers={"Idempotency-Key": "k-3"})

        assert resp.status_code == 402
        assert resp.json()["error"] == "need_confirmation"
        assert resp.json()["requiredCredit"] == 1
        assert len(worker.calls) == 3


class TestExecuteCredit:
    @pytest.mark.asyncio
    async def test_insufficient_credit(self, client: AsyncClient, session_factory, worker) -> None:
        await _grant(session_factory, 5)

        resp = await client.post(
            _URL,
            json=_body("essay"),
            headers={"Idempotency-Key": "k-1", "Confirm-Charge": "1"},
        )

        assert resp.status_code == 402
        data = resp.json()
        assert data["error"] == "need_credit"
        assert data["requiredCredit"] == 7
        assert data["balance"] == 5
        assert worker.calls == []

    @pytest.mark.asyncio
    async def test_confirmed_charge_consumes_credit(self, client: AsyncClient, session_factory) -> None:
        await _grant(session_factory, 5)

        resp = await client.post(
            _URL,
            json=_body("deep_dive"),
            headers={"Idempotency-Key": "k-1", "Confirm-Charge": "1"},
        )
        assert resp.status_code == 200
        assert await _balance(session_factory) == 2

        replay = await client.post(
            _URL,
            json=_body("deep_dive"),
            headers={"Idempotency-Key": "k-1", "Confirm-Charge": "1"},
        )
        assert replay.json()["replayed"] is True
        assert await _balance(session_factory) == 2

    @pytest.mark.asyncio
    async def test_unlimited_plan_skips_credit(
        self, client: AsyncClient, make_token, session_factory, worker
    ) -> None:
        headers = {"Authorization": f"Bearer {make_token(plan=PlanTier.ELITE)}", "Idempotency-Key": "k-1"}
        resp = await client.post(_URL, json=_body("essay"), headers=headers)

        assert resp.status_code == 200
        assert len(worker.calls) == 1
        assert await _balance(session_factory) == 0


class TestExecuteFailures:
    @pytest.mark.asyncio
    async def test_worker_failure_is_500_and_retryable(self, client: AsyncClient, worker) -> None:
        worker.outcomes.append(WorkerFailure("model_overloaded", "try later"))

        failed = await client.post(_URL, json=_body(), headers={"Idempotency-Key": "k-1"})
        assert failed.status_code == 500
        assert failed.json()["error"] == "generation_failed"
        assert failed.json()["errorCode"] == "model_overloaded"

        retried = await client.post(_URL, json=_body(), headers={"Idempotency-Key": "k-1"})
        assert retried.status_code == 200
        assert retried.json()["replayed"] is False

    @pytest.mark.asyncio
    async def test_running_job_is_409(self, client: AsyncClient, session_factory, worker) -> None:
        async with session_factory.begin() as session:
            await JobRegistry(session, "user-1").get_or_create("summary", "k-1", {"topic": "pricing"})

        resp = await client.post(_URL, json=_body(), headers={"Idempotency-Key": "k-1"})

        assert resp.status_code == 409
        assert resp.json()["status"] == "running"
        assert worker.calls == []


class TestExecuteValidation:
    @pytest.mark.asyncio
    async def test_missing_idempotency_key(self, client: AsyncClient, worker) -> None:
        resp = await client.post(_URL, json=_body())
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"
        assert worker.calls == []

    @pytest.mark.asyncio
    async def test_unknown_feature(self, client: AsyncClient) -> None:
        resp = await client.post(_URL, json=_body("teleport"), headers={"Idempotency-Key": "k-1"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_payload_must_be_object(self, client: AsyncClient) -> None:
        resp = await client.post(
            _URL,
            json={"feature": "summary", "requestPayload": ["not", "an", "object"]},
            headers={"Idempotency-Key": "k-1"},
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_requires_authentication(self, anon_client: AsyncClient, worker) -> None:
        resp = await anon_client.post(_URL, json=_body(), headers={"Idempotency-Key": "k-1"})
        assert resp.status_code == 401
        assert worker.calls == []

    @pytest.mark.asyncio
    async def test_expired_token_rejected(self, anon_client: AsyncClient, make_token) -> None:
        headers = {"Authorization": f"Bearer {make_token(ttl_seconds=-10)}", "Idempotency-Key": "k-1"}
        resp = await anon_client.post(_URL, json=_body(), headers=headers)
        assert resp.status_code == 403
