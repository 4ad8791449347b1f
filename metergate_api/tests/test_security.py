"""Tests for bearer token issuing and validation."""

from __future__ import annotations

import base64
import json

import pytest
from pydantic import SecretStr

from metergate_api.security import TOKEN_PREFIX, TokenManager
from metergate_core.features.catalog import PlanTier


@pytest.fixture()
def manager() -> TokenManager:
    return TokenManager(SecretStr("unit-test-secret"))


class TestTokenManager:
    def test_round_trip(self, manager: TokenManager) -> None:
        claims = manager.validate_token(manager.generate_token("user-1", PlanTier.PRO))
        assert claims.sub == "user-1"
        assert PlanTier.parse(claims.plan) is PlanTier.PRO

    def test_expired(self, manager: TokenManager) -> None:
        token = manager.generate_token("user-1", ttl_seconds=-1)
        with pytest.raises(PermissionError, match="expired"):
            manager.validate_token(token)

    def test_wrong_secret(self, manager: TokenManager) -> None:
        token = TokenManager(SecretStr("other")).generate_token("user-1")
        with pytest.raises(PermissionError, match="Bad signature"):
            manager.validate_token(token)

    def test_tampered_payload(self, manager: TokenManager) -> None:
        token = manager.generate_token("user-1")
        encoded, signature = token[len(TOKEN_PREFIX) :].rsplit(".", 1)
        claims = json.loads(base64.urlsafe_b64decode(encoded))
        claims["plan"] = "elite"
        forged = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode()
        with pytest.raises(PermissionError, match="Bad signature"):
            manager.validate_token(f"{TOKEN_PREFIX}{forged}.{signature}")

    @pytest.mark.parametrize("token", ["abc", "Bearer x", f"{TOKEN_PREFIX}no-signature"])
    def test_malformed(self, manager: TokenManager, token: str) -> None:
        with pytest.raises(PermissionError):
            manager.validate_token(token)

    def test_unknown_plan_parses_as_free(self) -> None:
        assert PlanTier.parse("platinum") is PlanTier.FREE

    def test_empty_secret_rejected(self) -> None:
        with pytest.raises(ValueError):
            TokenManager(SecretStr(""))

    def test_from_env_without_secret(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("JWT_SECRET", raising=False)
        manager = TokenManager.from_env()
        assert manager.validate_token(manager.generate_token("u")).sub == "u"
