"""
Composition root for the API layer.

Builds exactly one of each stateful component and wires them together:
token store, throttle ledger, connectivity monitor, refresh coordinator and
request executor, all sharing one aiohttp session.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import aiohttp
from pydantic import ValidationError

from expensetracker.connectors.api.client import ApiClient
from expensetracker.connectors.api.refresh import TokenRefreshCoordinator
from expensetracker.connectors.api.token_store import (
    InMemoryKeyValueStore,
    TokenStore,
    seconds_until_expiry,
)
from expensetracker.connectors.api.types import ClientConfig, CredentialPair
from expensetracker.connectors.backoff import RequestError
from expensetracker.connectors.connectivity import ConnectivityMonitor
from expensetracker.connectors.throttle import ThrottleLedger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from expensetracker.connectors.api.token_store import KeyValueStore
    from expensetracker.connectors.api.types import Envelope

logger = logging.getLogger(__name__)


class ApiSession:
    """
    The app's single entry point to the backend.

    Must be created inside a running event loop (it opens the shared HTTP
    session).

    Usage:
        async with ApiSession(ClientConfig.from_env(), store=keychain) as api:
            await api.login("me@example.com", "secret")
            envelope = await api.client.get("/transactions")
            api.monitor.subscribe(lambda status: banner.show(status.is_offline_mode))
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        store: KeyValueStore | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
        time_fn: Callable[[], int] | None = None,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._config = config or ClientConfig()
        self._store = store if store is not None else InMemoryKeyValueStore()
        self._owns_session = session is None
        self._session = session or aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self._config.request_timeout_s)
        )

        self.tokens = TokenStore(self._store)
        self.throttle = ThrottleLedger(self._config.throttle)
        self.monitor = ConnectivityMonitor(
            self._config.connectivity,
            self._session,
            time_fn=time_fn,
            sleep_fn=sleep_fn,
        )
        self.refresher = TokenRefreshCoordinator(
            self.tokens,
            self._config.refresh_url,
            session=self._session,
            observer=self.monitor,
            request_timeout_s=self._config.request_timeout_s,
        )
        self.client = ApiClient(
            self._config,
            token_store=self.tokens,
            refresher=self.refresher,
            throttle=self.throttle,
            observer=self.monitor,
            session=self._session,
            sleep_fn=sleep_fn,
        )
        self.monitor.add_reconnect_handler(self._on_reconnect)

    @property
    def config(self) -> ClientConfig:
        return self._config

    async def start(self, *, initial_probe: bool = True) -> None:
        """Start connectivity monitoring."""
        await self.monitor.start(initial_probe=initial_probe)

    async def close(self) -> None:
        """Stop monitoring, abort in-flight calls and close the shared HTTP session."""
        await self.monitor.stop()
        await self.client.close()
        if self._owns_session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> ApiSession:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def login(self, email: str, password: str) -> Envelope:
        """
        Authenticate and persist the returned credential pair.

        Raises:
            RequestError: Bad credentials, or a success response without tokens.
        """
        envelope = await self.client.post(
            self._config.login_path, {"email": email, "password": password}
        )
        if not envelope.success:
            logger.warning("Login rejected", extra={"status": envelope.status})
            return envelope

        try:
            credentials = CredentialPair.model_validate(envelope.data or {})
        except ValidationError:
            raise RequestError("Login response missing tokens", envelope.status or 200) from None

        await self.tokens.save_credentials(credentials)
        logger.info("Logged in")
        return envelope

    async def logout(self) -> None:
        """Forget all persisted credentials."""
        await self._store.clear()
        logger.info("Logged out")

    async def is_authenticated(self) -> bool:
        return await self.tokens.get_access_token() is not None

    async def _on_reconnect(self) -> None:
        """Back online: renew the access token if it lapsed while offline."""
        token = await self.tokens.get_access_token()
        if not token:
            return
        remaining = seconds_until_expiry(token)
        if remaining is not None and remaining < self._config.proactive_refresh_threshold_s:
            logger.info("Access token expired while offline, refreshing")
            await self.refresher.refresh()

    def get_status(self) -> dict[str, Any]:
        """Get combined status for observability."""
        return {
            "connectivity": self.monitor.get_status(),
            "throttle": self.throttle.get_status(),
            "refreshing": self.refresher.is_refreshing,
            "inflight_requests": self.client.inflight_count,
        }
