"""HTTP client for the generation worker service."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from metergate_core.errors import WorkerFailure

logger = logging.getLogger(__name__)

_MAX_ERROR_BODY = 500


class GenerationClient:
    """Async client that runs one generation on the remote worker.

    Implements the :class:`metergate_core.gate.worker.GenerationWorker`
    protocol.  Unlike a best-effort advisory client, every failure is
    raised as :class:`WorkerFailure` so the gate can record it on the job
    and skip the charge.

    The worker contract is ``POST /generate`` with ``{"feature",
    "request"}``.  A 2xx response carries ``{"result": {...}}``; an error
    response may carry ``{"error_code", "message"}``.

    Parameters
    ----------
    base_url:
        Root URL of the worker (e.g. ``http://localhost:8001``).
    timeout:
        Per-request timeout in seconds.
    shared_secret:
        Sent as a bearer token when non-empty.
    transport:
        Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 120.0,
        shared_secret: str = "",
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        default_headers: dict[str, str] = {"Content-Type": "application/json"}
        if shared_secret:
            default_headers["Authorization"] = f"Bearer {shared_secret}"

        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers=default_headers,
            transport=transport,
        )

    async def generate(self, feature: str, request: dict[str, Any]) -> dict[str, Any]:
        """Run *feature* on the worker and return its result object.

        Raises
        ------
        WorkerFailure
            On transport errors, timeouts, error statuses or a malformed
            response body.
        """
        try:
            response = await self._client.post("/generate", json={"feature": feature, "request": request})
        except httpx.TimeoutException as exc:
            logger.warning("Worker timed out for feature=%s: %s", feature, exc)
            raise WorkerFailure("worker_timeout", str(exc)) from exc
        except httpx.RequestError as exc:
            logger.warning("Worker request for feature=%s failed: %s", feature, exc)
            raise WorkerFailure("worker_unreachable", str(exc)) from exc

        if response.is_error:
            code, message = self._error_details(response)
            logger.warning(
                "Worker returned %d for feature=%s: %s",
                response.status_code,
                feature,
                response.text[:_MAX_ERROR_BODY],
            )
            raise WorkerFailure(code, message)

        try:
            body = response.json()
        except ValueError as exc:
            raise WorkerFailure("invalid_worker_result", "Response is not JSON") from exc

        result = body.get("result") if isinstance(body, dict) else None
        if not isinstance(result, dict):
            raise WorkerFailure("invalid_worker_result", "Response has no 'result' object")
        return result

    @staticmethod
    def _error_details(response: httpx.Response) -> tuple[str, str]:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("error_code"):
            return str(body["error_code"]), str(body.get("message", ""))
        return f"worker_http_{response.status_code}", response.reason_phrase

    async def health_check(self) -> bool:
        """Return ``True`` if the worker responds to a health ping."""
        try:
            resp = await self._client.get("/health")
        except httpx.HTTPError:
            return False
        return resp.status_code == 200

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()
