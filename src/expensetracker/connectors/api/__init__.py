"""
Expense backend API client.

- One request pipeline: dedup, throttle, proactive refresh, retry, 401 refresh
- Single-flight token refresh shared by all requests
- ApiSession wires everything to one connectivity monitor and HTTP session
"""

from expensetracker.connectors.api.client import ApiClient
from expensetracker.connectors.api.refresh import TokenRefreshCoordinator
from expensetracker.connectors.api.session import ApiSession
from expensetracker.connectors.api.token_store import (
    ACCESS_TOKEN_KEY,
    REFRESH_TOKEN_KEY,
    InMemoryKeyValueStore,
    KeyValueStore,
    TokenStore,
    decode_token_expiry,
    seconds_until_expiry,
)
from expensetracker.connectors.api.types import (
    ClientConfig,
    ClientMetrics,
    CredentialPair,
    Envelope,
    RefreshMetrics,
    TokenGrant,
)

__all__ = [
    "ACCESS_TOKEN_KEY",
    "REFRESH_TOKEN_KEY",
    "ApiClient",
    "ApiSession",
    "ClientConfig",
    "ClientMetrics",
    "CredentialPair",
    "Envelope",
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "RefreshMetrics",
    "TokenGrant",
    "TokenRefreshCoordinator",
    "TokenStore",
    "decode_token_expiry",
    "seconds_until_expiry",
]
