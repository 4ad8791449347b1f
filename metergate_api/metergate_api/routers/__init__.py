"""API router modules."""

from __future__ import annotations

from metergate_api.routers import billing, credits, execute, health, jobs, quota

__all__ = [
    "billing",
    "credits",
    "execute",
    "health",
    "jobs",
    "quota",
]
