"""
Types and configuration for the expense API client.

Wire models are pydantic (extra keys from the server are tolerated); runtime
configuration and metrics are plain dataclasses. Every tunable constant of the
client layer lives in ClientConfig and its nested configs.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from expensetracker.connectors.backoff import BackoffConfig
from expensetracker.connectors.connectivity import ConnectivityConfig
from expensetracker.connectors.throttle import ThrottleConfig


# Methods whose concurrent duplicates are collapsed into one network call
IDEMPOTENT_METHODS: frozenset[str] = frozenset({"GET", "HEAD"})


class Envelope(BaseModel):
    """
    Standard API response wrapper: {success, data?, message?}.

    ``status`` is filled in by the client from the HTTP response.
    """

    model_config = ConfigDict(extra="allow")

    success: bool
    data: Any = None
    message: str | None = None
    status: int | None = None


class CredentialPair(BaseModel):
    """Access token (short-lived, carries exp) and refresh token (long-lived)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    access_token: str = Field(alias="accessToken", min_length=1)
    refresh_token: str | None = Field(default=None, alias="refreshToken")


class TokenGrant(BaseModel):
    """``data`` of a successful /auth/refresh response."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    access_token: str = Field(alias="accessToken", min_length=1)
    refresh_token: str | None = Field(default=None, alias="refreshToken")


@dataclass
class ClientConfig:
    """
    Configuration for the resilient API client.

    Attributes:
        base_url: API base URL, e.g. "https://api.example.com/api".
        request_timeout_s: Per-attempt transport timeout.
        proactive_refresh_threshold_s: Refresh before sending when the access
            token expires within this many seconds.
        refresh_path: Refresh endpoint, relative to base_url.
        login_path: Login endpoint, relative to base_url.
        me_path: Session check endpoint; also the default fallback probe.
        backoff: Retry/backoff settings.
        throttle: Default per-endpoint throttle limits.
        connectivity: Probe/hysteresis settings.
    """

    base_url: str = "http://localhost:5000/api"
    request_timeout_s: float = 30.0
    proactive_refresh_threshold_s: float = 120.0
    refresh_path: str = "/auth/refresh"
    login_path: str = "/auth/login"
    me_path: str = "/auth/me"
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    throttle: ThrottleConfig = field(default_factory=ThrottleConfig)
    connectivity: ConnectivityConfig = field(default_factory=ConnectivityConfig)

    def __post_init__(self) -> None:
        if not self.base_url.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be an http(s) URL, got {self.base_url!r}")
        self.base_url = self.base_url.rstrip("/")
        if self.request_timeout_s <= 0:
            raise ValueError(f"request_timeout_s must be > 0, got {self.request_timeout_s}")
        if self.proactive_refresh_threshold_s < 0:
            raise ValueError(
                f"proactive_refresh_threshold_s must be >= 0, got {self.proactive_refresh_threshold_s}"
            )
        for name in ("refresh_path", "login_path", "me_path"):
            if not getattr(self, name).startswith("/"):
                raise ValueError(f"{name} must start with '/', got {getattr(self, name)!r}")
        if self.connectivity.fallback_url is None:
            # Copy, so a ConnectivityConfig shared between configs keeps its own value
            self.connectivity = replace(self.connectivity, fallback_url=self.url_for(self.me_path))

    def url_for(self, path_or_url: str) -> str:
        """Resolve a path against base_url; absolute URLs pass through."""
        if path_or_url.startswith(("http://", "https://")):
            return path_or_url
        if not path_or_url.startswith("/"):
            path_or_url = f"/{path_or_url}"
        return f"{self.base_url}{path_or_url}"

    @property
    def refresh_url(self) -> str:
        return self.url_for(self.refresh_path)

    @classmethod
    def from_env(cls, **overrides: Any) -> ClientConfig:
        """
        Build config from environment variables, then apply overrides.

        Reads EXPENSE_API_BASE_URL, EXPENSE_PROBE_URL, EXPENSE_REQUEST_TIMEOUT_S
        and EXPENSE_REFRESH_THRESHOLD_S.
        """
        kwargs: dict[str, Any] = {}
        if base_url := os.environ.get("EXPENSE_API_BASE_URL"):
            kwargs["base_url"] = base_url
        if timeout := os.environ.get("EXPENSE_REQUEST_TIMEOUT_S"):
            kwargs["request_timeout_s"] = _env_float("EXPENSE_REQUEST_TIMEOUT_S", timeout)
        if threshold := os.environ.get("EXPENSE_REFRESH_THRESHOLD_S"):
            kwargs["proactive_refresh_threshold_s"] = _env_float(
                "EXPENSE_REFRESH_THRESHOLD_S", threshold
            )
        if probe_url := os.environ.get("EXPENSE_PROBE_URL"):
            kwargs["connectivity"] = ConnectivityConfig(probe_url=probe_url)
        kwargs.update(overrides)
        return cls(**kwargs)


def _env_float(name: str, raw: str) -> float:
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass
class ClientMetrics:
    """Counters for the request executor."""

    requests: int = 0  # Logical execute() calls
    dispatched: int = 0  # Actual HTTP attempts
    succeeded: int = 0
    failed: int = 0
    deduplicated: int = 0  # Callers that joined an in-flight request
    retries: int = 0
    rate_limited: int = 0  # 429 responses seen
    auth_refreshes: int = 0  # 401-triggered refreshes
    proactive_refreshes: int = 0
    network_errors: int = 0
    aborted: int = 0  # In flight when the client was closed


@dataclass
class RefreshMetrics:
    """Counters for the refresh coordinator."""

    attempts: int = 0  # Actual refresh HTTP calls
    successes: int = 0
    failures: int = 0
    joined: int = 0  # Callers that awaited an in-progress refresh
