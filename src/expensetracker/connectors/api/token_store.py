"""
Token persistence over an external key-value store.

The store itself belongs to the host app (AsyncStorage, keychain, a file...);
this module only relies on its async get/set/remove/clear contract.
"""

from __future__ import annotations

import base64
import binascii
import logging
import time
from typing import TYPE_CHECKING, Protocol

import orjson

if TYPE_CHECKING:
    from expensetracker.connectors.api.types import CredentialPair

logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = "authToken"
REFRESH_TOKEN_KEY = "refreshToken"


class KeyValueStore(Protocol):
    """Persisted string storage provided by the host app."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...

    async def clear(self) -> None: ...


class InMemoryKeyValueStore:
    """Process-local KeyValueStore, used by tests and the CLI."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def clear(self) -> None:
        self._data.clear()

    def snapshot(self) -> dict[str, str]:
        return dict(self._data)


class TokenStore:
    """Holds the current access and refresh tokens."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def _get(self, key: str) -> str | None:
        try:
            value = await self._store.get(key)
        except OSError as e:
            logger.error("Error reading token from storage", extra={"key_name": key, "error": str(e)})
            return None
        return value or None

    async def get_access_token(self) -> str | None:
        return await self._get(ACCESS_TOKEN_KEY)

    async def get_refresh_token(self) -> str | None:
        return await self._get(REFRESH_TOKEN_KEY)

    async def set_access_token(self, token: str) -> None:
        await self._store.set(ACCESS_TOKEN_KEY, token)

    async def set_refresh_token(self, token: str) -> None:
        await self._store.set(REFRESH_TOKEN_KEY, token)

    async def save_credentials(self, credentials: CredentialPair) -> None:
        """Persist a credential pair from login. A missing refresh token keeps the old one."""
        await self.set_access_token(credentials.access_token)
        if credentials.refresh_token:
            await self.set_refresh_token(credentials.refresh_token)

    async def clear(self) -> None:
        """Forget both tokens (logout)."""
        await self._store.remove(ACCESS_TOKEN_KEY)
        await self._store.remove(REFRESH_TOKEN_KEY)


def decode_token_expiry(token: str) -> int | None:
    """
    Read the ``exp`` claim (Unix seconds) from a three-part access token.

    The signature is not verified; this is a local expiry hint only.

    Returns:
        exp, or None if the token is not decodable or has no numeric exp.
    """
    parts = token.split(".")
    if len(parts) != 3 or not parts[1]:
        return None

    segment = parts[1]
    segment += "=" * (-len(segment) % 4)
    try:
        payload = orjson.loads(base64.urlsafe_b64decode(segment))
    except (binascii.Error, ValueError):
        return None

    if not isinstance(payload, dict):
        return None
    exp = payload.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return None
    return int(exp)


def seconds_until_expiry(token: str, now: float | None = None) -> float | None:
    """Remaining lifetime of ``token`` in seconds (negative if expired), or None if unknown."""
    exp = decode_token_expiry(token)
    if exp is None:
        return None
    if now is None:
        now = time.time()
    return exp - now
