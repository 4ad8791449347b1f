"""Seam to the external generation worker."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class GenerationWorker(Protocol):
    """Performs the expensive operation behind a metered feature.

    Implementations return the JSON result object on success and raise
    :class:`metergate_core.errors.WorkerFailure` when the generation
    failed.  The gate bounds every call with its own timeout.
    """

    async def generate(self, feature: str, request: dict[str, Any]) -> dict[str, Any]: ...
