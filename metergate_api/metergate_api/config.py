"""API-layer configuration loaded from environment variables."""

from __future__ import annotations

from typing import Self

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class APISettings(BaseSettings):
    """FastAPI application settings.

    All values can be overridden via environment variables prefixed with
    ``API_`` (e.g. ``API_WORKER_URL=http://worker:8001``) or through a
    ``.env`` file in the working directory.
    """

    model_config = SettingsConfigDict(
        env_prefix="API_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    database_url: str = "sqlite+aiosqlite:///.metergate/state.db"

    # Generation worker URL, per-call timeout and shared secret.
    worker_url: str = "http://localhost:8001"
    worker_timeout: float = 120.0
    worker_shared_secret: SecretStr = SecretStr("")

    # Origins permitted by the CORS middleware.
    cors_origins: list[str] = ["http://localhost:3000"]
    cors_allow_credentials: bool = True

    @model_validator(mode="after")
    def _validate_cors_credentials_not_wildcard(self) -> Self:
        """Reject wildcard origins when credentials are enabled."""
        if self.cors_allow_credentials and "*" in self.cors_origins:
            raise ValueError(
                "Cannot use wildcard origins with credentials. "
                "Specify explicit origins instead of '*' when "
                "cors_allow_credentials=True."
            )
        return self

    # Single-line JSON logs.
    structured_logging: bool = False

    # Feature gate policy.
    running_ttl_seconds: int = 900
    charge_max_attempts: int = 5
    feature_catalog_path: str | None = None

    # Background maintenance: drain pending charges, expire lots.
    maintenance_enabled: bool = True
    maintenance_interval_seconds: float = 60.0

    # Validity of purchased credit; 0 disables expiry.
    lot_expiry_days: int = 180

    # Stripe credit purchases.
    billing_enabled: bool = False
    stripe_secret_key: SecretStr = SecretStr("")
    stripe_webhook_secret: SecretStr = SecretStr("")

    @model_validator(mode="after")
    def _validate_running_ttl_exceeds_worker_timeout(self) -> Self:
        """A running job must not become reclaimable while its worker call can still finish."""
        if self.running_ttl_seconds <= self.worker_timeout:
            raise ValueError(
                f"running_ttl_seconds ({self.running_ttl_seconds}) must exceed worker_timeout ({self.worker_timeout})"
            )
        return self


def load_api_settings() -> APISettings:
    """Construct settings from the environment / ``.env`` file."""
    return APISettings()
