"""Bearer token issuing and validation.

Tokens have the form ``mgdev.<payload>.<signature>`` where *payload* is
the URL-safe base64 encoding of the JSON claims and *signature* is the
hex HMAC-SHA256 of that JSON under ``JWT_SECRET``.

Validation failures raise :class:`PermissionError`; the authentication
middleware turns them into 401/403 responses.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import secrets
import time
from typing import Any

from pydantic import BaseModel, Field, SecretStr, ValidationError

from metergate_core.features.catalog import PlanTier

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "mgdev."


class TokenClaims(BaseModel):
    """Validated token payload."""

    sub: str = Field(min_length=1)
    plan: str = PlanTier.FREE.value
    iat: float
    exp: float
    iss: str = "metergate"


class TokenManager:
    """Issue and validate HMAC-signed bearer tokens.

    Parameters
    ----------
    secret:
        Signing secret.
    token_ttl_seconds:
        Lifetime of issued tokens.
    """

    def __init__(self, secret: SecretStr, token_ttl_seconds: int = 3600) -> None:
        if not secret.get_secret_value():
            raise ValueError("Token signing secret must not be empty")
        self._secret = secret
        self._ttl = token_ttl_seconds

    @classmethod
    def from_env(cls) -> TokenManager:
        """Build a manager from ``JWT_SECRET`` and ``TOKEN_TTL_SECONDS``.

        Without ``JWT_SECRET`` a random per-process secret is generated, so
        tokens do not survive a restart.
        """
        secret = os.environ.get("JWT_SECRET", "")
        if not secret:
            secret = f"dev-{secrets.token_hex(32)}"
            logger.warning(
                "JWT_SECRET not set; generated random per-process dev secret. "
                "Tokens will not survive process restarts."
            )
        ttl = int(os.environ.get("TOKEN_TTL_SECONDS", "3600"))
        return cls(SecretStr(secret), token_ttl_seconds=ttl)

    def _sign(self, payload_json: str) -> str:
        return hmac.new(
            self._secret.get_secret_value().encode("utf-8"),
            payload_json.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def generate_token(self, sub: str, plan: PlanTier = PlanTier.FREE, *, ttl_seconds: int | None = None) -> str:
        """Return a signed token for *sub* on *plan*."""
        now = time.time()
        payload: dict[str, Any] = {
            "sub": sub,
            "plan": plan.value,
            "iss": "metergate",
            "iat": now,
            "exp": now + (ttl_seconds if ttl_seconds is not None else self._ttl),
        }
        payload_json = json.dumps(payload)
        encoded = base64.urlsafe_b64encode(payload_json.encode("utf-8")).decode("ascii")
        return f"{TOKEN_PREFIX}{encoded}.{self._sign(payload_json)}"

    def validate_token(self, token: str) -> TokenClaims:
        """Verify the signature and expiry of *token* and return its claims.

        Raises
        ------
        PermissionError
            If the token is malformed, wrongly signed or expired.
        """
        if not token.startswith(TOKEN_PREFIX):
            raise PermissionError("Unsupported token format")
        try:
            encoded, signature = token[len(TOKEN_PREFIX) :].rsplit(".", 1)
            payload_json = base64.urlsafe_b64decode(encoded.encode("ascii")).decode("utf-8")
        except (ValueError, binascii.Error, UnicodeDecodeError) as exc:
            raise PermissionError("Malformed token") from exc

        if not hmac.compare_digest(self._sign(payload_json), signature):
            raise PermissionError("Bad signature")

        try:
            claims = TokenClaims.model_validate_json(payload_json)
        except ValidationError as exc:
            raise PermissionError("Invalid claims") from exc

        if claims.exp <= time.time():
            raise PermissionError("Token has expired")
        return claims
