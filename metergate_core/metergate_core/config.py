"""Core configuration loaded from environment variables."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Self

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Core settings loaded from environment variables with METERGATE_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="METERGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_url: str = "sqlite+aiosqlite:///.metergate/state.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Feature gate
    running_ttl_seconds: int = 900
    worker_timeout_seconds: float = 120.0

    # Credit lots
    lot_expiry_days: int | None = 180

    # Charge outbox
    charge_max_attempts: int = 5

    # Optional JSON file overriding the built-in feature catalog.
    feature_catalog_path: Path | None = None

    @field_validator("running_ttl_seconds")
    @classmethod
    def _validate_running_ttl(cls, v: int) -> int:
        if v < 1:
            raise ValueError("running_ttl_seconds must be at least 1")
        return v

    @field_validator("lot_expiry_days")
    @classmethod
    def _validate_lot_expiry(cls, v: int | None) -> int | None:
        # 0 or a negative value disables expiry.
        if v is not None and v <= 0:
            return None
        return v

    @model_validator(mode="after")
    def _validate_running_ttl_exceeds_worker_timeout(self) -> Self:
        """A running job must not become reclaimable while its worker call can still finish."""
        if self.running_ttl_seconds <= self.worker_timeout_seconds:
            raise ValueError(
                f"running_ttl_seconds ({self.running_ttl_seconds}) must exceed "
                f"worker_timeout_seconds ({self.worker_timeout_seconds})"
            )
        return self


def load_settings() -> Settings:
    """Construct settings from the environment / ``.env`` file."""
    settings = Settings()
    logger.debug("Loaded core settings (database=%s)", settings.database_url.split("://", 1)[0])
    return settings
