"""Tests for wire models and ClientConfig."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from expensetracker.connectors.api.types import (
    ClientConfig,
    CredentialPair,
    Envelope,
    TokenGrant,
)
from expensetracker.connectors.connectivity import ConnectivityConfig


class TestEnvelope:
    def test_extra_fields_allowed(self) -> None:
        envelope = Envelope.model_validate({"success": True, "data": [1], "pagination": {"page": 1}})
        assert envelope.data == [1]
        assert envelope.model_extra == {"pagination": {"page": 1}}

    def test_success_required(self) -> None:
        with pytest.raises(ValidationError):
            Envelope.model_validate({"data": []})


class TestCredentialModels:
    def test_aliases(self) -> None:
        pair = CredentialPair.model_validate({"accessToken": "a", "refreshToken": "r", "user": {}})
        assert pair.access_token == "a"
        assert pair.refresh_token == "r"

    def test_populate_by_name(self) -> None:
        assert TokenGrant(access_token="a").refresh_token is None

    def test_empty_access_token_rejected(self) -> None:
        with pytest.raises(ValidationError):
            TokenGrant.model_validate({"accessToken": ""})


class TestClientConfig:
    def test_defaults(self) -> None:
        config = ClientConfig()
        assert config.base_url == "http://localhost:5000/api"
        assert config.proactive_refresh_threshold_s == 120.0
        assert config.refresh_url == "http://localhost:5000/api/auth/refresh"
        assert config.connectivity.fallback_url == "http://localhost:5000/api/auth/me"

    def test_trailing_slash_stripped(self) -> None:
        config = ClientConfig(base_url="https://api.example.com/api/")
        assert config.url_for("/transactions") == "https://api.example.com/api/transactions"
        assert config.url_for("transactions") == "https://api.example.com/api/transactions"

    def test_absolute_urls_pass_through(self) -> None:
        config = ClientConfig()
        assert config.url_for("https://cdn.example.com/x") == "https://cdn.example.com/x"

    def test_explicit_fallback_kept(self) -> None:
        config = ClientConfig(connectivity=ConnectivityConfig(fallback_url="https://status.example.com"))
        assert config.connectivity.fallback_url == "https://status.example.com"

    def test_shared_connectivity_config_not_modified(self) -> None:
        shared = ConnectivityConfig(probe_url="https://probe.example.com")
        first = ClientConfig(base_url="https://one.example.com/api", connectivity=shared)
        second = ClientConfig(base_url="https://two.example.com/api", connectivity=shared)

        assert first.connectivity.fallback_url == "https://one.example.com/api/auth/me"
        assert second.connectivity.fallback_url == "https://two.example.com/api/auth/me"
        assert shared.fallback_url is None
        assert second.connectivity.probe_url == "https://probe.example.com"

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"base_url": "api.example.com"},
            {"request_timeout_s": 0},
            {"proactive_refresh_threshold_s": -1},
            {"refresh_path": "auth/refresh"},
        ],
    )
    def test_invalid_values_rejected(self, kwargs: dict[str, object]) -> None:
        with pytest.raises(ValueError):
            ClientConfig(**kwargs)  # type: ignore[arg-type]

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("EXPENSE_API_BASE_URL", "https://api.example.com/api")
        monkeypatch.setenv("EXPENSE_REQUEST_TIMEOUT_S", "12.5")
        monkeypatch.setenv("EXPENSE_REFRESH_THRESHOLD_S", "60")
        monkeypatch.setenv("EXPENSE_PROBE_URL", "https://probe.example.com")

        config = ClientConfig.from_env()

        assert config.base_url == "https://api.example.com/api"
        assert config.request_timeout_s == 12.5
        assert config.proactive_refresh_threshold_s == 60.0
        assert config.connectivity.probe_url == "https://probe.example.com"
        assert config.connectivity.fallback_url == "https://api.example.com/api/auth/me"

    def test_from_env_overrides_win(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("EXPENSE_API_BASE_URL", "https://api.example.com/api")
        config = ClientConfig.from_env(base_url="http://127.0.0.1:8080/api")
        assert config.base_url == "http://127.0.0.1:8080/api"

    def test_from_env_bad_number(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("EXPENSE_REQUEST_TIMEOUT_S", "fast")
        with pytest.raises(ValueError, match="EXPENSE_REQUEST_TIMEOUT_S"):
            ClientConfig.from_env()
